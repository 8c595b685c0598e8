"""GenAI client cache and the captioning client with key rotation.

One google.genai Client is created per API key and reused for all calls made
with that key. `CaptionClient.describe` picks keys from a `KeyPool`, moving on
to the next key when the provider rejects one for quota or auth reasons.
"""
import logging
from typing import Any, Callable, Dict, Optional, Set

from google import genai as _genai
from google.genai import types

from .errors import AllCredentialsExhausted, EmptyResponse, ServiceError
from .key_rotation import KeyPool, mask_key
from .prompts import GallerySettings, build_prompt

logger = logging.getLogger(__name__)

_clients: Dict[str, Any] = {}

QUOTA_STATUS_CODES = {401, 403, 429}
QUOTA_MARKERS = (
    'rate limit',
    'ratelimit',
    'quota',
    'resource_exhausted',
    'resource exhausted',
    'too many requests',
    'forbidden',
    'permission_denied',
    'permission denied',
    'api key not valid',
    'api_key_invalid',
    'unauthenticated',
)
INVALID_KEY_MARKERS = ('api key not valid', 'api_key_invalid')


def get_client(api_key: Optional[str]):
    """Return the cached google.genai client for `api_key` (None if falsy)."""
    if not api_key:
        return None
    client = _clients.get(api_key)
    if client is None:
        try:
            client = _genai.Client(api_key=api_key)
        except Exception as e:
            logger.error("Failed to create GenAI client for key %s: %s", mask_key(api_key), e)
            return None
        _clients[api_key] = client
        logger.debug("Created GenAI client for key %s", mask_key(api_key))
    return client


def clear_clients():
    """Drop all cached clients (mainly for testing)."""
    _clients.clear()
    logger.debug("Cleared GenAI client cache")


def is_quota_error(exc: BaseException) -> bool:
    """True for rate-limit, quota and forbidden/auth rejections.

    An integer HTTP `code` decides on its own; a 400 only counts when the
    provider says the API key itself is invalid. Message text is consulted
    for errors that carry no code.
    """
    code = getattr(exc, 'code', None)
    status = str(getattr(exc, 'status', '') or '').lower()
    text = f"{status} {exc}".lower()
    if isinstance(code, int) and not isinstance(code, bool):
        if code in QUOTA_STATUS_CODES:
            return True
        if code == 400:
            return any(marker in text for marker in INVALID_KEY_MARKERS)
        return False
    return any(marker in text for marker in QUOTA_MARKERS)


def _response_text(response: Any) -> str:
    try:
        text = getattr(response, 'text', None)
    except ValueError:
        # the SDK raises when the candidate was blocked or has no parts
        text = None
    if text is None and isinstance(response, str):
        text = response
    return (text or '').strip()


class CaptionClient:
    """Humorous photo descriptions from Gemini, routed around exhausted keys."""

    def __init__(
        self,
        pool: KeyPool,
        model: str = "gemini-1.5-flash",
        client_factory: Callable[[str], Any] = get_client,
    ):
        self.pool = pool
        self.model = model
        self.client_factory = client_factory

    def describe(
        self,
        image: bytes,
        mime_type: str = "image/png",
        settings: Optional[GallerySettings] = None,
        prompt: Optional[str] = None,
    ) -> str:
        """Caption `image`, trying each configured key at most once.

        Raises AllCredentialsExhausted when no key is usable (without calling
        the provider), ServiceError on non-quota failures and EmptyResponse
        when the model returns no text.
        """
        prompt_text = prompt or build_prompt(settings)
        tried: Set[str] = set()

        while len(tried) < len(self.pool):
            api_key = self.pool.acquire(exclude=tried)
            if api_key is None:
                break
            tried.add(api_key)
            try:
                response = self._generate(api_key, image, mime_type, prompt_text)
            except ServiceError:
                raise
            except Exception as exc:
                if is_quota_error(exc):
                    self.pool.quarantine(api_key, reason=str(exc)[:200])
                    logger.info("Key %s rejected, rotating (%d/%d tried)", mask_key(api_key), len(tried), len(self.pool))
                    continue
                logger.error("GenAI request failed with key %s: %s", mask_key(api_key), exc)
                raise ServiceError(f"Caption service error: {exc}", provider_message=str(exc)) from exc

            text = _response_text(response)
            if not text:
                logger.warning("GenAI returned an empty caption (key %s)", mask_key(api_key))
                raise EmptyResponse("The model returned an empty response.")
            return text

        if tried:
            raise AllCredentialsExhausted("All API credentials are exhausted, retry later.")
        raise AllCredentialsExhausted("No usable API credentials right now, retry later.")

    def _generate(self, api_key: str, image: bytes, mime_type: str, prompt_text: str):
        client = self.client_factory(api_key)
        if client is None:
            raise ServiceError("GenAI client is not configured")
        part = types.Part.from_bytes(data=image, mime_type=mime_type)
        return client.models.generate_content(
            model=self.model,
            contents=[prompt_text, part],
        )
