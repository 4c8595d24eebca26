"""Error taxonomy surfaced by the gateway.

Callers only ever see these kinds; vendor HTTP statuses and httpx
exceptions are translated at the provider boundary.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base for all gateway errors."""

    code = "gateway_error"

    def __init__(self, message: str, provider_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "provider_id": self.provider_id}


class InvalidModelError(GatewayError):
    """Requested (or default) model is not recognized by the resolved provider."""

    code = "invalid_model"

    def __init__(self, model: str | None, provider_id: str | None = None):
        super().__init__(f"Model {model!r} is not served by provider {provider_id!r}", provider_id)
        self.model = model


class TransientBackendError(GatewayError):
    """Rate limiting, 5xx or a network failure. Retried with the next key."""

    code = "transient_backend"

    def __init__(self, message: str, provider_id: str | None = None, status_code: int = 0):
        super().__init__(message, provider_id)
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429


class CredentialRejectedError(GatewayError):
    """Backend refused the key itself (401/402/403)."""

    code = "credential_rejected"

    def __init__(self, message: str, provider_id: str | None = None, status_code: int = 0):
        super().__init__(message, provider_id)
        self.status_code = status_code


class CredentialsExhaustedError(GatewayError):
    """Every key of a provider was tried and failed. Never retried on that provider."""

    code = "credentials_exhausted"

    def __init__(self, provider_id: str, attempts: int = 0):
        super().__init__(f"All {provider_id} API keys exhausted after {attempts} attempt(s)", provider_id)
        self.attempts = attempts


class UnsupportedInputShapeError(GatewayError):
    """Provider serves the capability but not for this input (e.g. file vs microphone)."""

    code = "unsupported_input_shape"


class BackendRequestError(GatewayError):
    """Non-retryable rejection of the request (other 4xx, or an error response)."""

    code = "backend_request"

    def __init__(self, message: str, provider_id: str | None = None, status_code: int = 0):
        super().__init__(message, provider_id)
        self.status_code = status_code


class MalformedResponseError(GatewayError):
    """Backend content could not be parsed into the expected shape."""

    code = "malformed_response"

    def __init__(self, message: str, raw_text: str = "", provider_id: str | None = None):
        super().__init__(message, provider_id)
        self.raw_text = raw_text


class CacheIOError(GatewayError):
    """Cache read/write failure. Never fatal for a request."""

    code = "cache_io"


class UnknownProviderError(GatewayError):
    code = "unknown_provider"

    def __init__(self, provider_id: str):
        super().__init__(f"No provider registered under id {provider_id!r}", provider_id)


class NoProviderAvailableError(GatewayError):
    """No candidate provider could serve the capability."""

    code = "no_provider_available"
