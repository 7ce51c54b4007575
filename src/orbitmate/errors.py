from __future__ import annotations

from typing import Any, Dict, Optional


class OrbitmateError(Exception):
    """Base class for errors surfaced to API clients with a stable code."""

    code = "SERVER_ERROR"
    status_code = 500
    public_message = "An internal error occurred. Please try again later."

    def __init__(self, message: str = "", *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        if code:
            self.code = code
        self.details: Dict[str, Any] = dict(details or {})

    @property
    def exposes_detail(self) -> bool:
        return self.status_code < 500

    def to_payload(self) -> Dict[str, str]:
        message = self.message if self.exposes_detail else self.public_message
        return {"code": self.code, "message": message}


class ValidationError(OrbitmateError):
    code = "INVALID_INPUT"
    status_code = 400


class PermissionDeniedError(OrbitmateError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(OrbitmateError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404


class PersistenceError(OrbitmateError):
    code = "DATABASE_ERROR"
    status_code = 500
    public_message = "The message store is currently unavailable."


class EncodingError(OrbitmateError):
    code = "ENCODING_ERROR"
    status_code = 500
    public_message = "The response could not be encoded."


class ProviderError(OrbitmateError):
    """An AI backend failed; ``provider_code`` keeps the provider's own reason."""

    code = "AI_SERVICE_ERROR"
    status_code = 503
    public_message = "The AI service failed to produce a response."

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        provider_code: Optional[str] = None,
        retryable: bool = False,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.provider = provider
        self.provider_code = provider_code or "unknown"
        self.retryable = retryable


class ProviderTimeoutError(ProviderError):
    code = "AI_TIMEOUT"
    status_code = 504
    public_message = "The AI service did not respond in time."

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        kwargs.setdefault("provider_code", "timeout")
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


def error_body(error: OrbitmateError) -> Dict[str, Any]:
    return {"status": "error", "error": error.to_payload()}
