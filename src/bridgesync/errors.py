"""Exception hierarchy and error classification."""

from __future__ import annotations

import enum
from typing import Any

import httpx


class BridgeSyncError(Exception):
    """Base class for every error raised by bridgesync."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        endpoint: str | None = None,
        method: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.endpoint = endpoint
        self.method = method
        self.details = details or {}

    @property
    def transient(self) -> bool:
        return False

    def __str__(self) -> str:
        text = self.message
        if self.status is not None:
            text += f" (status {self.status})"
        if self.endpoint:
            where = f"{self.method} {self.endpoint}" if self.method else self.endpoint
            text += f" [{where}]"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "endpoint": self.endpoint,
            "method": self.method,
            "details": self.details,
        }


# --- Transport ---


class TransportError(BridgeSyncError):
    """No complete response was observed (timeout, refused connection, reset)."""

    @property
    def transient(self) -> bool:
        return True


class RequestTimeoutError(TransportError):
    pass


class ConnectionFailedError(TransportError):
    pass


# --- HTTP status ---


class HTTPStatusError(BridgeSyncError):
    pass


class AuthorizationError(HTTPStatusError):
    """Credentials are missing, expired or lack permission; re-authenticate."""


class UnauthorizedError(AuthorizationError):
    pass


class ForbiddenError(AuthorizationError):
    pass


class NotFoundError(HTTPStatusError):
    pass


class RequestRejectedError(HTTPStatusError):
    """400/422: the backend refused the request as invalid."""


class ConflictStatusError(HTTPStatusError):
    pass


class RateLimitedError(HTTPStatusError):
    pass


class ServerError(HTTPStatusError):
    @property
    def transient(self) -> bool:
        return self.status in (503, 504)


# --- Schema / fallback ---


class InvalidFieldError(BridgeSyncError):
    """The backend rejected part of a requested field list."""

    def __init__(self, message: str, *, entity_type: str, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.entity_type = entity_type
        self.field = field


class FallbackExhaustedError(BridgeSyncError):
    """Every field fallback level failed; terminal for the query chain."""

    def __init__(
        self,
        entity_type: str,
        invalid_fields: list[str],
        original: BaseException | None = None,
        *,
        level: int | None = None,
    ) -> None:
        fields = ", ".join(invalid_fields) or "none"
        super().__init__(
            f"Field fallback strategy exhausted for {entity_type}. Invalid fields: {fields}",
            code="FALLBACK_EXHAUSTED",
            details={"entity_type": entity_type, "invalid_fields": list(invalid_fields), "level": level},
        )
        self.entity_type = entity_type
        self.invalid_fields = list(invalid_fields)
        self.original = original
        self.level = level


# ---------------------------------------------------------------------------
# Response -> exception mapping
# ---------------------------------------------------------------------------

_STATUS_ERRORS: dict[int, type[HTTPStatusError]] = {
    400: RequestRejectedError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictStatusError,
    422: RequestRejectedError,
    429: RateLimitedError,
}


def extract_error_message(body: Any) -> tuple[str | None, str | None]:
    """Pull ``(code, message)`` out of the error body shapes the backend uses."""
    if not isinstance(body, dict):
        return None, None
    detail = body.get("detail")
    if isinstance(detail, dict):
        return extract_error_message(detail)
    if isinstance(detail, str):
        return None, detail
    error = body.get("error")
    if isinstance(error, dict):
        # JSON-RPC style errors carry the useful text under data.message
        data = error.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return error.get("code"), data["message"]
        return error.get("code"), error.get("message")
    if isinstance(error, str):
        return None, error
    message = body.get("message")
    if isinstance(message, str):
        return body.get("code"), message
    return None, None


def error_from_response(response: httpx.Response) -> HTTPStatusError:
    try:
        body = response.json()
    except ValueError:
        body = None
    code, message = extract_error_message(body)
    if message is None:
        message = response.text or response.reason_phrase or "Request failed"

    status = response.status_code
    cls = _STATUS_ERRORS.get(status)
    if cls is None:
        cls = ServerError if status >= 500 else HTTPStatusError
    return cls(
        message,
        status=status,
        code=str(code) if code is not None else None,
        endpoint=response.request.url.path,
        method=response.request.method,
        details=body if isinstance(body, dict) else {},
    )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"
    PERMANENT = "permanent"
    CONFLICT = "conflict"
    SCHEMA_MISMATCH = "schema_mismatch"
    EXHAUSTED = "exhausted"
    UNKNOWN = "unknown"


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, FallbackExhaustedError):
        return ErrorKind.EXHAUSTED
    if isinstance(exc, InvalidFieldError):
        return ErrorKind.SCHEMA_MISMATCH
    if isinstance(exc, AuthorizationError):
        return ErrorKind.AUTHORIZATION
    if isinstance(exc, ConflictStatusError):
        return ErrorKind.CONFLICT
    if isinstance(exc, BridgeSyncError):
        if exc.transient:
            return ErrorKind.TRANSIENT
        if isinstance(exc, (RequestRejectedError, NotFoundError)):
            return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN
