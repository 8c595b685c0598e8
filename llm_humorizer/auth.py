"""
Identity for gallery actors.

Supports:
- Google sign-in (OAuth2 authorization code flow with PKCE)
- Signed pseudo-identity tokens for actors without a Google session
- Server-side sessions holding the signed-in user and the active gallery
"""

import base64
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

PKCE_STATE_TTL = timedelta(minutes=10)


class OIDCClient:
    """Google OAuth2/OIDC sign-in.

    Supports PKCE (Proof Key for Code Exchange) for enhanced security.
    """

    def __init__(self, settings):
        self.client_id = settings.oidc_client_id
        self.client_secret = settings.oidc_client_secret
        self.redirect_uri = settings.oidc_redirect_uri
        self.scopes = settings.oidc_scopes
        self.authorize_url = settings.oidc_authorize_url
        self.token_url = settings.oidc_token_url
        self.userinfo_url = settings.oidc_userinfo_url
        self.verify_ssl = settings.oidc_verify_ssl

        # state -> PKCE pair plus creation time; abandoned logins expire after PKCE_STATE_TTL
        self.pkce_states: Dict[str, Dict[str, Any]] = {}

    def _generate_pkce_pair(self) -> Dict[str, str]:
        """Generate PKCE code_verifier and code_challenge for S256."""
        code_verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode('utf-8').rstrip('=')

        code_challenge = base64.urlsafe_b64encode(
            hashlib.sha256(code_verifier.encode('utf-8')).digest()
        ).decode('utf-8').rstrip('=')

        return {
            'code_verifier': code_verifier,
            'code_challenge': code_challenge
        }

    def _prune_pkce_states(self) -> None:
        cutoff = datetime.now(timezone.utc) - PKCE_STATE_TTL
        stale = [s for s, entry in self.pkce_states.items() if entry['created_at'] < cutoff]
        for s in stale:
            del self.pkce_states[s]
        if stale:
            logger.debug("Dropped %d abandoned login states", len(stale))

    def get_authorization_url(self, state: str) -> str:
        """Authorization URL for the provider; stores the PKCE verifier under `state`."""
        self._prune_pkce_states()
        pkce = self._generate_pkce_pair()
        self.pkce_states[state] = {**pkce, 'created_at': datetime.now(timezone.utc)}

        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': self.scopes,
            'state': state,
            'code_challenge': pkce['code_challenge'],
            'code_challenge_method': 'S256',
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, state: str) -> Dict[str, Any]:
        """Exchange authorization code for tokens (backend call)."""
        self._prune_pkce_states()
        if state not in self.pkce_states:
            raise ValueError("Invalid state - PKCE verifier not found")

        code_verifier = self.pkce_states.pop(state)['code_verifier']

        async with AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            verify=self.verify_ssl,
        ) as client:
            token = await client.fetch_token(
                self.token_url,
                code=code,
                redirect_uri=self.redirect_uri,
                code_verifier=code_verifier,
            )
            return token

    async def get_userinfo(self, access_token: str) -> Dict[str, Any]:
        """Stable subject id, email and display name of the signed-in user."""
        async with AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token={'access_token': access_token, 'token_type': 'Bearer'},
            verify=self.verify_ssl,
        ) as client:
            userinfo = await client.get(self.userinfo_url)
            userinfo.raise_for_status()
            data = userinfo.json()
        return {
            'sub': data.get('sub'),
            'email': data.get('email') or '',
            'name': data.get('name') or data.get('given_name'),
        }


class ActorTokenManager:
    """Issues and verifies signed tokens carrying an actor's pseudo-identity."""

    def __init__(self, secret: str, expiry_days: int = 365):
        self.secret = secret
        self.expiry_days = expiry_days
        self.algorithm = "HS256"

    def new_identifier(self) -> str:
        return str(uuid.uuid4())

    def create_token(self, owner_identifier: str) -> str:
        payload = {
            'sub': owner_identifier,
            'typ': 'actor',
            'iat': datetime.now(timezone.utc),
            'exp': datetime.now(timezone.utc) + timedelta(days=self.expiry_days),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: Optional[str]) -> Optional[str]:
        """Owner identifier from a valid token, None otherwise."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug("Actor token verification failed: %s", e)
            return None
        if payload.get('typ') != 'actor':
            return None
        return payload.get('sub') or None


class SessionManager:
    """Session state (signed-in user, active gallery) kept in application memory."""

    def __init__(self, expiry_seconds: int = 86400):
        self.expiry_seconds = expiry_seconds
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def create_session(self, user_info: Optional[Dict[str, Any]] = None) -> str:
        """Create a new session, return session ID."""
        self.cleanup_expired()
        session_id = secrets.token_urlsafe(32)
        self._sessions[session_id] = {
            'user_info': user_info,
            'gallery_id': None,
            'admin_code': None,
            'created_at': datetime.now(timezone.utc),
            'last_activity': datetime.now(timezone.utc),
        }
        logger.debug("Session created: %s", session_id[:8])
        return session_id

    def get_session(self, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Get session data, return None if missing or expired."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if not session:
            return None

        created = session['created_at']
        if datetime.now(timezone.utc) - created > timedelta(seconds=self.expiry_seconds):
            del self._sessions[session_id]
            logger.debug("Session expired: %s", session_id[:8])
            return None

        session['last_activity'] = datetime.now(timezone.utc)
        return session

    def set_user(self, session_id: str, user_info: Optional[Dict[str, Any]]) -> None:
        session = self.get_session(session_id)
        if session is not None:
            session['user_info'] = user_info

    def set_active_gallery(self, session_id: str, gallery_id: str, admin_code: Optional[str] = None) -> None:
        """Remember the joined gallery; `admin_code` is kept only after it was verified at join."""
        session = self.get_session(session_id)
        if session is not None:
            session['gallery_id'] = gallery_id
            session['admin_code'] = admin_code

    def clear_active_gallery(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is not None:
            session['gallery_id'] = None
            session['admin_code'] = None

    def cleanup_expired(self):
        """Remove all expired sessions; runs whenever a session is created."""
        now = datetime.now(timezone.utc)
        expired = [
            sid for sid, session in self._sessions.items()
            if now - session['created_at'] > timedelta(seconds=self.expiry_seconds)
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug("Cleaned up %d expired sessions", len(expired))


def generate_state_token() -> str:
    """Generate CSRF state token for the OAuth flow."""
    return secrets.token_urlsafe(32)
