"""Exception types raised by the data layer and request handlers."""

from __future__ import annotations

from typing import Any

from .error_messages import get_error_message


class GachaError(ValueError):
    """A request that cannot be satisfied, with the HTTP status to report."""

    status = 400

    def __init__(self, error_type: str, *, status: int | None = None, **context: Any) -> None:
        self.error_type = error_type
        self.context = context
        if status is not None:
            self.status = status
        super().__init__(get_error_message(error_type, **context))

    @property
    def message(self) -> str:
        return str(self)


class AuthError(GachaError):
    status = 401


class ForbiddenError(GachaError):
    status = 403


class NotFoundError(GachaError):
    status = 404


class ConflictError(GachaError):
    status = 409


class RateLimitedError(GachaError):
    status = 429

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__("rate_limited", retry_after=retry_after)
