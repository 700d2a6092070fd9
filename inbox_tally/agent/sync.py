"""
Sync orchestrator for inbox-tally.

This module drives one incremental sync run:
- Credential acquisition
- Cursor pagination over the message listing
- Dedup check for every listed message
- Metadata fetch for new messages
- One transaction per message covering the seen record and the sender count
- Run bookkeeping in the sync_runs table

No resumption cursor is stored. An aborted run is resumed by starting over:
already counted messages are skipped by the dedup check, so the only cost
is listing the early pages again.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_tally.config import settings
from inbox_tally.credentials import CredentialManager
from inbox_tally.errors import (
    AuthFailure,
    GmailAPIError,
    MessageNotFoundError,
    StoreError,
    SyncIncomplete,
)
from inbox_tally.gmail_client import GmailClient, ListingEntry, ListingPage
from inbox_tally.models import SyncRun
from inbox_tally.stores import AggregateStore, DedupStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Run statuses
RUNNING = "running"
COMPLETED = "completed"
INCOMPLETE = "incomplete"  # aborted after committing progress, safe to resume
FAILED = "failed"  # aborted before anything was committed
CANCELLED = "cancelled"  # stop() honoured between messages


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class SyncSummary:
    """Statistics and outcome of one sync run."""
    status: str = RUNNING
    run_id: Optional[int] = None
    pages_listed: int = 0
    messages_listed: int = 0
    messages_new: int = 0
    messages_skipped: int = 0
    item_errors: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def progressed(self) -> bool:
        """Whether at least one message was committed."""
        return self.messages_new > 0

    def raise_for_status(self) -> None:
        """
        Raise if the run did not complete.

        Raises:
            SyncIncomplete: For incomplete, failed and cancelled runs
        """
        if self.status != COMPLETED:
            raise SyncIncomplete(self)


# ============================================================================
# Sync Agent
# ============================================================================


class SyncAgent:
    """
    Orchestrates one sync run over the Gmail listing.

    The agent is the only writer to the session. With a fetch concurrency
    above one, metadata requests for a page run in parallel but commits
    still happen one message at a time in listing order.

    Attributes:
        db: AsyncSession shared by both stores
        gmail_client: GmailClient for listing and metadata calls
        credential_manager: CredentialManager used to (re)acquire tokens
        dedup: DedupStore over the session
        aggregates: AggregateStore over the session
    """

    def __init__(
        self,
        db: AsyncSession,
        gmail_client: GmailClient,
        credential_manager: Optional[CredentialManager] = None,
        fetch_concurrency: Optional[int] = None,
        record_runs: bool = True,
    ):
        """
        Initialize the sync agent.

        Args:
            db: Async database session
            gmail_client: Gmail client
            credential_manager: Defaults to the client's credential manager
            fetch_concurrency: Parallel metadata requests (default:
                SYNC_FETCH_CONCURRENCY, 1 means strictly sequential)
            record_runs: Write a SyncRun row for the run
        """
        self.db = db
        self.gmail_client = gmail_client
        self.credential_manager = credential_manager or gmail_client.credential_manager
        self.fetch_concurrency = max(1, fetch_concurrency or settings.SYNC_FETCH_CONCURRENCY)
        self.record_runs = record_runs

        self.dedup = DedupStore(db)
        self.aggregates = AggregateStore(db)
        self._should_stop = False

    def stop(self) -> None:
        """Request the run to stop before the next message."""
        logger.info("Stop requested, finishing current message")
        self._should_stop = True

    async def run(self) -> SyncSummary:
        """
        Execute one sync run.

        Workflow:
        1. Record the run as "running"
        2. Acquire credentials
        3. For each listing page: skip seen messages, fetch and commit new ones
        4. Stop when no cursor remains, a stop is requested or an error aborts

        The sync_runs row is committed before credentials are acquired, so
        a run that fails authorization still leaves a "failed" run record.
        The seen and sender tables are untouched in that case.

        Returns:
            SyncSummary; its status tells completed runs apart from runs
            that aborted with or without committed progress
        """
        summary = SyncSummary(started_at=datetime.utcnow())

        try:
            summary.run_id = await self._start_run(summary)
            logger.info(f"Starting sync run {summary.run_id}")

            await asyncio.to_thread(self.credential_manager.acquire)

            cursor: Optional[str] = None
            while True:
                page = await self._with_reauth(self.gmail_client.list_page, cursor)
                summary.pages_listed += 1
                summary.messages_listed += len(page.entries)

                await self._process_page(page, summary)

                if self._should_stop:
                    summary.status = CANCELLED
                    break

                cursor = page.next_cursor
                if not cursor:
                    summary.status = COMPLETED
                    break

        except (AuthFailure, GmailAPIError, StoreError) as e:
            summary.status = INCOMPLETE if summary.progressed else FAILED
            summary.error = f"{type(e).__name__}: {str(e)}"
            logger.error(f"Sync run {summary.run_id} aborted: {summary.error}")

        finally:
            if summary.status == RUNNING:
                # Interrupted by something outside the error taxonomy
                summary.status = INCOMPLETE if summary.progressed else FAILED
                summary.error = summary.error or "interrupted"
            summary.finished_at = datetime.utcnow()
            await self._finish_run(summary)

        logger.info(
            f"Sync run {summary.run_id} {summary.status}: "
            f"{summary.pages_listed} pages, {summary.messages_listed} listed, "
            f"{summary.messages_new} new, {summary.messages_skipped} skipped, "
            f"{summary.item_errors} errors"
        )
        return summary

    # ------------------------------------------------------------------------
    # Page processing
    # ------------------------------------------------------------------------

    async def _process_page(self, page: ListingPage, summary: SyncSummary) -> None:
        """Process every entry of a page in listing order."""
        if self.fetch_concurrency > 1:
            await self._process_page_concurrently(page, summary)
            return

        for entry in page.entries:
            if self._should_stop:
                return

            if await self.dedup.has(entry.id):
                summary.messages_skipped += 1
                continue

            try:
                metadata = await self._with_reauth(self.gmail_client.get_metadata, entry.id)
            except MessageNotFoundError as e:
                logger.warning(f"Skipping message: {str(e)}")
                summary.item_errors += 1
                continue

            await self._commit(entry.id, metadata.sender, summary)

    async def _process_page_concurrently(self, page: ListingPage, summary: SyncSummary) -> None:
        """
        Fetch metadata for the page's new messages in parallel, then commit
        them one by one in listing order.
        """
        candidates: List[ListingEntry] = []
        queued = set()
        for entry in page.entries:
            if entry.id in queued or await self.dedup.has(entry.id):
                summary.messages_skipped += 1
                continue
            queued.add(entry.id)
            candidates.append(entry)

        semaphore = asyncio.Semaphore(self.fetch_concurrency)

        async def fetch(entry: ListingEntry):
            async with semaphore:
                return await self._with_reauth(self.gmail_client.get_metadata, entry.id)

        results = await asyncio.gather(
            *(fetch(entry) for entry in candidates),
            return_exceptions=True,
        )

        for entry, result in zip(candidates, results):
            if self._should_stop:
                return
            if isinstance(result, MessageNotFoundError):
                logger.warning(f"Skipping message: {str(result)}")
                summary.item_errors += 1
                continue
            if isinstance(result, BaseException):
                raise result
            await self._commit(entry.id, result.sender, summary)

    async def _commit(self, message_id: str, sender: str, summary: SyncSummary) -> None:
        """
        Record the message as seen and count it for its sender in a single
        transaction.

        Raises:
            StoreError: If the transaction fails; it is rolled back first
        """
        try:
            inserted = await self.dedup.mark_seen(message_id, sender)
            if inserted:
                await self.aggregates.increment(sender)
            await self.db.commit()
        except StoreError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to commit message {message_id}: {str(e)}") from e

        if inserted:
            summary.messages_new += 1
            logger.debug(f"Counted message {message_id} for {sender!r}")
        else:
            # Recorded by someone else since the dedup check
            summary.messages_skipped += 1

    async def _with_reauth(self, func: Callable[..., Awaitable[T]], *args) -> T:
        """
        Call the Gmail client, refreshing credentials and retrying once if
        they are rejected.
        """
        try:
            return await func(*args)
        except AuthFailure as e:
            logger.warning(f"Credentials rejected ({str(e)}), refreshing and retrying once")
            await asyncio.to_thread(self.credential_manager.acquire, True)
            self.gmail_client.reset_service()
            return await func(*args)

    # ------------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------------

    async def _start_run(self, summary: SyncSummary) -> Optional[int]:
        """Insert the SyncRun row for this run and return its id."""
        if not self.record_runs:
            return None

        run = SyncRun(status=RUNNING, started_at=summary.started_at)
        self.db.add(run)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to record sync run: {str(e)}") from e
        return run.id

    async def _finish_run(self, summary: SyncSummary) -> None:
        """Store the final statistics on the SyncRun row."""
        if summary.run_id is None:
            return

        stmt = (
            update(SyncRun)
            .where(SyncRun.id == summary.run_id)
            .values(
                status=summary.status,
                finished_at=summary.finished_at,
                pages_listed=summary.pages_listed,
                messages_listed=summary.messages_listed,
                messages_new=summary.messages_new,
                messages_skipped=summary.messages_skipped,
                item_errors=summary.item_errors,
                error_message=summary.error,
            )
        )
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to record outcome of sync run {summary.run_id}: {str(e)}")


async def run_sync(
    db: AsyncSession,
    credential_manager: Optional[CredentialManager] = None,
    gmail_client: Optional[GmailClient] = None,
) -> SyncSummary:
    """
    Run one sync with components built from settings.

    Args:
        db: Async database session
        credential_manager: Optional pre-built credential manager
        gmail_client: Optional pre-built Gmail client

    Returns:
        SyncSummary of the run
    """
    credential_manager = credential_manager or CredentialManager()
    gmail_client = gmail_client or GmailClient(credential_manager)
    agent = SyncAgent(db, gmail_client, credential_manager)
    return await agent.run()
