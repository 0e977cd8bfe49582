"""Exception types shared across the cross-reference services."""

from __future__ import annotations


class TitleXrefError(Exception):
    """Base class for all errors raised by this package."""


class InvalidArgumentError(TitleXrefError, ValueError):
    """Malformed caller input. Never retried."""


class ProviderError(TitleXrefError):
    """An external provider call did not produce a usable payload."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class NotFoundError(ProviderError):
    """The provider confirmed the requested entity does not exist."""


class RateLimitedError(ProviderError):
    """The provider rejected the call because of a quota or rate limit."""


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the allotted time."""


class NetworkError(ProviderError):
    """Transport failure or unexpected provider response."""


class ConflictError(TitleXrefError):
    """A store write collided with a uniqueness constraint."""


class UnresolvedConflictError(ConflictError):
    """A uniqueness violation occurred but no conflicting record could be found."""
