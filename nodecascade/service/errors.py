from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - configuration_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a stale version (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Deployment is missing something the engine needs (500)."""
    error_code = "configuration_error"


class MissingCredentialsError(ConfigurationError):
    """An outbound provider key is not configured."""

    def __init__(self, key_name: str) -> None:
        super().__init__(f"{key_name} not configured", detail={"key": key_name})
        self.key_name = key_name


class ProviderError(Exception):
    """Completion provider answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "", *, model: str = "") -> None:
        super().__init__(f"provider returned {status_code}")
        self.status_code = status_code
        self.body = body
        self.model = model


class ModelUnavailableError(ProviderError):
    """Provider reports the requested model as missing, retired or invalid."""

    @staticmethod
    def matches(status_code: int, body: str) -> bool:
        if status_code in (404, 410):
            return True
        return status_code == 400 and "model" in (body or "").lower()


class WebRetrievalError(Exception):
    """Web-retrieval collaborator failed or rejected the request."""


class CrawlTimeoutError(WebRetrievalError):
    """An asynchronous crawl job did not finish within the bound."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "MissingCredentialsError",
    "ProviderError",
    "ModelUnavailableError",
    "WebRetrievalError",
    "CrawlTimeoutError",
]
