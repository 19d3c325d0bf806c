"""Error taxonomy for the ingestion pipeline."""

from __future__ import annotations


class TrustStarsError(Exception):
    """Base exception for ingestion failures."""

    default_user_message = "Something went wrong while syncing the repository."

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.status_code = status_code


class NotFoundError(TrustStarsError):
    """Raised when a repository does not exist or is private beyond the credential's reach."""

    default_user_message = "Failed to fetch repo details. Make sure the URL is correct and the repo is public."


class RateLimitedError(TrustStarsError):
    """Raised when the upstream service enforces a rate limit."""

    default_user_message = "GitHub API rate limit exceeded. Please try again later or sign in with GitHub."

    def __init__(
        self,
        message: str,
        *,
        retry_after: int | float | None = None,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message, status_code=status_code)
        self.retry_after = retry_after


class UnauthorizedError(TrustStarsError):
    """Raised when every credential in the plan was rejected."""

    default_user_message = "Bad credentials"


class TransientError(TrustStarsError):
    """Raised for network failures and 5xx responses; safe to retry on the next trigger."""

    default_user_message = "GitHub is temporarily unavailable. Please try again later."


class ValidationError(TrustStarsError):
    """Raised for malformed repository references."""

    default_user_message = "Invalid GitHub URL format"


class PersistenceError(TrustStarsError):
    """Raised when the store rejects a write."""

    default_user_message = "Failed to save the repository."
