import datetime
import logging
import os
import sys
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, ValidationError, ConfigDict
from pydantic_settings import BaseSettings

from .constants import DEFAULT_MAX_UPLOAD_BYTES, MAX_CODE_GENERATION_ATTEMPTS, QUARANTINE_HOURS

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_ignore_empty=False,
        case_sensitive=False  # Make env vars case-insensitive
    )

    logging_level: str = "INFO"
    timezone: str = "UTC"

    # Comma separated; every key is a member of the rotation pool
    google_genai_api_keys: str | None = None
    google_genai_model: str = "gemini-1.5-flash"
    key_state_file: str = "/data/key_state.json"
    key_quarantine_hours: int = QUARANTINE_HOURS

    database_url: str = "sqlite:////data/humorizer.db"

    webdav_url: str | None = None
    webdav_username: str | None = None
    webdav_password: str | None = None
    webdav_path: str = "/photos"
    public_base_url: str = "http://localhost:8000/files"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    max_code_generation_attempts: int = MAX_CODE_GENERATION_ATTEMPTS
    require_login_to_create: bool = False

    # Google sign-in
    oidc_enabled: bool = False
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_redirect_uri: str | None = None
    oidc_scopes: str = "openid profile email"
    oidc_authorize_url: str = GOOGLE_AUTHORIZE_URL
    oidc_token_url: str = GOOGLE_TOKEN_URL
    oidc_userinfo_url: str = GOOGLE_USERINFO_URL
    oidc_verify_ssl: bool = True

    # Signs the pseudo-identity cookie
    jwt_secret: str | None = None
    jwt_expiry_days: int = 365
    session_expiry_seconds: int = 86400

    debug_mode: bool = False

    @field_validator("key_quarantine_hours")
    @classmethod
    def validate_quarantine_hours(cls, v):
        if int(v) < 1:
            raise ValueError("key_quarantine_hours must be >= 1")
        if int(v) > 168:
            raise ValueError("key_quarantine_hours must be <= 168")
        return int(v)

    @field_validator("max_code_generation_attempts")
    @classmethod
    def validate_code_attempts(cls, v):
        if int(v) < 1:
            raise ValueError("max_code_generation_attempts must be >= 1")
        if int(v) > 20:
            raise ValueError("max_code_generation_attempts must be <= 20")
        return int(v)

    @field_validator("max_upload_bytes")
    @classmethod
    def validate_max_upload(cls, v):
        if int(v) < 1024:
            raise ValueError("max_upload_bytes must be >= 1024")
        return int(v)

    @field_validator("jwt_expiry_days")
    @classmethod
    def validate_jwt_expiry(cls, v):
        if int(v) < 1:
            raise ValueError("jwt_expiry_days must be >= 1")
        if int(v) > 3650:
            raise ValueError("jwt_expiry_days must be <= 3650")
        return int(v)

    def model_post_init(self, __context):
        """Check OIDC configuration after all fields are loaded."""
        if not self.oidc_enabled:
            return

        required_fields = [
            ('oidc_client_id', self.oidc_client_id),
            ('oidc_client_secret', self.oidc_client_secret),
            ('oidc_redirect_uri', self.oidc_redirect_uri),
        ]

        missing = [name for name, value in required_fields if not value]

        if missing:
            logger.warning("OIDC enabled but missing settings: %s", missing)
        else:
            logger.info("OIDC Configuration:")
            logger.info("  Client ID: %s...", str(self.oidc_client_id)[:30])
            logger.info("  Redirect URI: %s", self.oidc_redirect_uri)
            logger.info("  Scopes: %s", self.oidc_scopes)

    @field_validator("google_genai_api_keys", "webdav_url", "webdav_username", "webdav_password", "oidc_client_secret", "jwt_secret", mode="before")
    @classmethod
    def _prefer_docker_secret(cls, v, info):
        """
        Prefer Docker secrets mounted at /run/secrets/<NAME> over environment variables.
        Tries secret files with the field name upper-cased and as-is.
        """
        secret = None
        try:
            candidates = [info.field_name.upper(), info.field_name]
            for name in candidates:
                path = f"/run/secrets/{name}"
                if os.path.isfile(path):
                    with open(path, "r", encoding="utf-8") as f:
                        data = f.read().strip()
                    if data:
                        secret = data
                        break
        except OSError:
            secret = None
        if secret:
            logger.debug("Using docker secret for %s", info.field_name)
            return secret
        return v

    def api_keys(self) -> List[str]:
        """Configured Gemini keys in declaration order, trimmed and de-duplicated."""
        keys: List[str] = []
        for raw in (self.google_genai_api_keys or "").replace("\n", ",").split(","):
            key = raw.strip()
            if key and key not in keys:
                keys.append(key)
        return keys


def load_settings() -> Settings:
    try:
        settings = Settings()
        return settings
    except ValidationError as e:
        logger.error("Configuration error:")
        for err in e.errors():
            logger.error(" - %s: %s", err.get('loc'), err.get('msg'))
        sys.exit(1)


class LocalISOFormatter(logging.Formatter):
    def __init__(self, fmt=None, datefmt=None, tz_name: str | None = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._tz = None
        self._tz_name = tz_name
        if tz_name:
            try:
                self._tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError:
                self._tz = None

    def formatTime(self, record, datefmt=None):
        if self._tz is not None:
            dt = datetime.datetime.fromtimestamp(record.created, tz=self._tz)
        else:
            dt = datetime.datetime.fromtimestamp(record.created).astimezone()
        return dt.isoformat(timespec='milliseconds')


def configure_logging(settings: Settings | None = None):
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        tzname = getattr(settings, 'timezone', None) if settings is not None else None
        formatter = LocalISOFormatter('%(asctime)s %(levelname)s %(name)s %(message)s', tz_name=tzname)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    if settings is not None:
        lvl = str(getattr(settings, 'logging_level', 'INFO')).strip().upper()
        numeric = getattr(logging, lvl, None)
        if not isinstance(numeric, int):
            root.setLevel(logging.INFO)
        else:
            root.setLevel(numeric)
    else:
        root.setLevel(logging.INFO)

    logger.info("Logging configured; root level=%s", logging.getLevelName(root.level))

    noisy = ['httpx', 'httpcore', 'webdav4', 'urllib3']
    for n in noisy:
        logging.getLogger(n).setLevel(logging.WARNING)

    for logger_name in ['uvicorn', 'uvicorn.error']:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    if root.level <= logging.DEBUG:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)
        logging.getLogger('google_genai').setLevel(logging.DEBUG)
        logging.getLogger('google_genai.models').setLevel(logging.DEBUG)
    else:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
        logging.getLogger('google_genai').setLevel(logging.INFO)
        logging.getLogger('google_genai.models').setLevel(logging.WARNING)
