"""
Exception hierarchy for inbox-tally.

Every failure that can end a sync run maps onto one of these classes so the
orchestrator can decide between retrying, skipping an item and aborting.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inbox_tally.agent.sync import SyncSummary  # noqa: F401


# ============================================================================
# Base
# ============================================================================


class InboxTallyError(Exception):
    """Base exception for all inbox-tally errors."""
    pass


# ============================================================================
# Authentication
# ============================================================================


class AuthFailure(InboxTallyError):
    """
    Raised when a credential cannot be acquired, refreshed or is rejected.

    Fatal to the run: the operator has to re-authorize.
    """
    pass


# ============================================================================
# Gmail API
# ============================================================================


class GmailAPIError(InboxTallyError):
    """Base exception for Gmail API errors."""
    pass


class TransientApiError(GmailAPIError):
    """Raised on rate limiting, 5xx responses and network failures."""
    pass


class FatalApiError(GmailAPIError):
    """Raised on malformed responses and permanent 4xx rejections."""
    pass


class MessageNotFoundError(FatalApiError):
    """Raised when a listed message no longer exists."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


# ============================================================================
# Local store
# ============================================================================


class StoreError(InboxTallyError):
    """Raised when a write to the local database fails."""
    pass


# ============================================================================
# Sync run
# ============================================================================


class SyncIncomplete(InboxTallyError):
    """
    Raised by SyncSummary.raise_for_status() for runs that did not complete.

    Attributes:
        summary: The SyncSummary of the run
    """

    def __init__(self, summary: "SyncSummary"):
        super().__init__(
            f"Sync run {summary.status}: {summary.error or 'stopped before completion'}"
        )
        self.summary = summary
