"""Exception taxonomy surfaced by the gallery and caption services."""


class HumorizerError(Exception):
    """Base class for all domain errors."""


class NotAuthorized(HumorizerError):
    """The actor may not perform the requested mutation. Never retried."""


class ResourceNotFound(HumorizerError):
    """A gallery or photo looked up by code, id or username does not exist."""


class CodeGenerationFailed(HumorizerError):
    """Could not find unused share/admin codes within the attempt budget."""


class RecordDeleteFailed(HumorizerError):
    """Database record removal failed. Storage objects already removed are not restored."""


class CaptionError(HumorizerError):
    """Base class for caption service failures."""


class AllCredentialsExhausted(CaptionError):
    """Every configured API key is quarantined or was rejected; retry later."""


class ServiceError(CaptionError):
    """Non-quota failure from the captioning provider; retry now."""

    def __init__(self, message: str, provider_message: str | None = None):
        super().__init__(message)
        self.provider_message = provider_message


class EmptyResponse(CaptionError):
    """The provider answered but returned no text."""
