"""Exception hierarchy for the bridge.

Authentication failures, validation failures, retryable and terminal
external failures are kept apart so callers (HTTP layer, CLI, scheduled
retries) can tell "needs re-authorization" from "try again later".
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from posse_bridge.sync_log import SyncLogEntry


class BridgeError(Exception):
    """Base class for every error raised by posse_bridge."""


class ValidationError(BridgeError, ValueError):
    """Malformed trigger, article or argument. No side effects happened."""


class UnauthorizedError(BridgeError):
    """Inbound webhook signature missing or wrong."""


class NotFoundError(BridgeError):
    """A record addressed by id does not exist."""


class AuthError(BridgeError):
    """The linked account cannot be used until the user re-authorizes."""

    def __init__(self, account_id: str, message: str) -> None:
        self.account_id = account_id
        super().__init__(message)


class NoGrantError(AuthError):
    def __init__(self, account_id: str) -> None:
        super().__init__(account_id, f"No auth grant linked for account {account_id!r}")


class RefreshFailedError(AuthError):
    """Refresh token rejected by the authorization server; grant deleted."""

    def __init__(self, account_id: str, reason: str) -> None:
        self.reason = reason
        super().__init__(account_id, f"Token refresh failed for {account_id!r}: {reason}")


class RefreshUnavailableError(AuthError):
    """Refresh could not complete for a reason other than a rejected token.

    Misconfigured or missing token endpoint, a 404, an unreadable token
    response. The grant is kept; an operator has to look at it.
    """

    def __init__(self, account_id: str, reason: str) -> None:
        self.reason = reason
        super().__init__(account_id, f"Token refresh unavailable for {account_id!r}: {reason}")


class TransientError(BridgeError):
    """Timeout, connection failure, 5xx or rate limit. Safe to retry later."""

    def __init__(self, message: str, status: int | None = None, retry_after: float | None = None) -> None:
        self.status = status
        self.retry_after = retry_after
        super().__init__(message)


class ProtocolError(BridgeError):
    """The remote service rejected the request for good (4xx other than 429)."""

    def __init__(self, status: int, body: str, error: str = "") -> None:
        self.status = status
        self.body = body
        self.error = error
        super().__init__(f"HTTP {status}: {error or body[:200]}")


class PublishInProgressError(BridgeError):
    """Another invocation currently holds the publish claim for this source id."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Publish already in progress for {source_id!r}")


class RetryablePublishError(BridgeError):
    """A publish attempt failed transiently; the error entry was logged."""

    def __init__(self, entry: SyncLogEntry) -> None:
        self.entry = entry
        super().__init__(f"Retryable publish failure for {entry.source_id!r}: {entry.error}")


class ModerationError(BridgeError):
    """Illegal moderation transition (e.g. approving a rejected record)."""
