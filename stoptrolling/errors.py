"""Error taxonomy shared across StopTrolling services."""

from __future__ import annotations

from typing import Any, Optional


class StopTrollingError(RuntimeError):
    """Base class for every domain error raised by StopTrolling."""


class InvalidDate(StopTrollingError, ValueError):
    """Raised when a ledger date key is not a well-formed YYYY-MM-DD string."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid date (YYYY-MM-DD): {value!r}")
        self.value = value


# region Remote store
class RemoteWriteFailed(StopTrollingError):
    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Remote write failed during {operation}: {cause}")
        self.operation = operation
        self.cause = cause


class RemoteReadFailed(StopTrollingError):
    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Remote read failed during {operation}: {cause}")
        self.operation = operation
        self.cause = cause


# endregion


class ClassificationTransportError(StopTrollingError):
    """Raised when the classification endpoint answers with a non-success status."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"Classification request failed ({status_code}): {detail}")
        self.detail = detail
        self.status_code = status_code


class EnvironmentUnsupported(StopTrollingError):
    """Raised when no secure random source is available for PKCE values."""


# region OAuth callback
class OAuthCallbackError(StopTrollingError):
    """Terminal failure of the callback pipeline; ``marker`` is shown to the caller."""

    marker = "oauth_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.marker)


class UnexpectedState(OAuthCallbackError):
    marker = "unexpected_state"


class OAuthExchangeError(OAuthCallbackError):
    marker = "oauth_error"


class LoginRequired(OAuthCallbackError):
    marker = "login_required"


class MissingExpiry(OAuthCallbackError):
    marker = "missing_expiry"


class TokenStoreFailed(OAuthCallbackError):
    marker = "token_store_failed"


# endregion


# region Posting
class PostingError(StopTrollingError):
    """Failure of an authenticated posting action, mapped onto an HTTP status."""

    status_code = 502
    error = "posting_failed"

    def __init__(self, message: str = "", detail: Any = None) -> None:
        super().__init__(message or self.error)
        self.detail = detail


class AuthRequired(PostingError):
    status_code = 401
    error = "auth_required"


class TokensMissing(PostingError):
    status_code = 409
    error = "tokens_missing"


class RefreshUnavailable(PostingError):
    status_code = 401
    error = "refresh_unavailable"


class RefreshFailed(PostingError):
    status_code = 401
    error = "refresh_failed"


class XApiError(PostingError):
    """Raised when the posting endpoint rejects a request."""

    def __init__(self, error: str, status_code: int, detail: Any = None) -> None:
        super().__init__(f"X API error {status_code}: {error}", detail)
        self.error = error
        self.upstream_status = status_code
        self.status_code = 401 if status_code == 401 else 502


# endregion


__all__ = [
    "StopTrollingError",
    "InvalidDate",
    "RemoteWriteFailed",
    "RemoteReadFailed",
    "ClassificationTransportError",
    "EnvironmentUnsupported",
    "OAuthCallbackError",
    "UnexpectedState",
    "OAuthExchangeError",
    "LoginRequired",
    "MissingExpiry",
    "TokenStoreFailed",
    "PostingError",
    "AuthRequired",
    "TokensMissing",
    "RefreshUnavailable",
    "RefreshFailed",
    "XApiError",
]
