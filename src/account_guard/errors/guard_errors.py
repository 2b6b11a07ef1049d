"""GuardError — base exception class for all account-guard errors."""

from __future__ import annotations


class GuardError(Exception):
    """Base error for account-guard operations.

    Raised only for caller misuse and at the HTTP boundary; expected
    business-rule outcomes are returned as result objects instead.

    Attributes:
        message: Human-readable error description.
        status_code: Suggested HTTP status code.
        code: Machine-readable error code string.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        code: str = "guard-error",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
