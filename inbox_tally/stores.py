"""
Durable stores backing the sync.

- DedupStore: message ids that have already been counted
- AggregateStore: message count per sender

Neither store commits. Both operate on the session they are given so the
orchestrator can commit a message's seen record and its sender increment
in one transaction.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_tally.errors import StoreError
from inbox_tally.models import SeenMail, SenderTally

logger = logging.getLogger(__name__)


class DedupStore:
    """Set of message ids already processed, backed by the seen_mails table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def has(self, message_id: str) -> bool:
        """Check whether a message id has been recorded."""
        try:
            result = await self.db.execute(
                select(SeenMail.mail_id).where(SeenMail.mail_id == message_id)
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to look up message {message_id}: {str(e)}") from e
        return result.scalar_one_or_none() is not None

    async def mark_seen(self, message_id: str, sender: Optional[str] = None) -> bool:
        """
        Record a message id. Recording an id twice is a no-op.

        Args:
            message_id: Gmail message ID
            sender: Sender the message is counted for

        Returns:
            True if the id was newly recorded, False if it was already present
        """
        stmt = (
            insert(SeenMail)
            .values(mail_id=message_id, sender=sender)
            .on_conflict_do_nothing(index_elements=[SeenMail.mail_id])
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to mark message {message_id} as seen: {str(e)}") from e
        return result.rowcount == 1

    async def count(self) -> int:
        """Total number of distinct seen messages."""
        try:
            result = await self.db.execute(select(func.count()).select_from(SeenMail))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count seen messages: {str(e)}") from e
        return result.scalar_one()


class AggregateStore:
    """Per-sender message counts, backed by the senders table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def increment(self, sender: str) -> None:
        """
        Add one to the sender's count, creating the row with 1 if absent.

        The increment is unconditional: callers must invoke it exactly once
        per newly seen message.
        """
        stmt = insert(SenderTally).values(sender=sender, mails_sent=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SenderTally.sender],
            set_={"mails_sent": SenderTally.mails_sent + 1},
        )
        try:
            await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to increment count for {sender!r}: {str(e)}") from e

    async def get(self, sender: str) -> int:
        """Count for one sender, 0 if the sender was never seen."""
        try:
            result = await self.db.execute(
                select(SenderTally.mails_sent).where(SenderTally.sender == sender)
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read count for {sender!r}: {str(e)}") from e
        return result.scalar_one_or_none() or 0

    async def snapshot(self, descending: bool = False, limit: Optional[int] = None) -> List[Tuple[str, int]]:
        """
        Return (sender, count) pairs ordered by count.

        Args:
            descending: Largest counts first (default: ascending)
            limit: Maximum number of rows

        Returns:
            List of (sender, count) tuples, ties ordered by sender
        """
        order = SenderTally.mails_sent.desc() if descending else SenderTally.mails_sent.asc()
        stmt = select(SenderTally.sender, SenderTally.mails_sent).order_by(order, SenderTally.sender)
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read sender counts: {str(e)}") from e
        return [(row.sender, row.mails_sent) for row in result]

    async def total(self) -> int:
        """Sum of all sender counts."""
        try:
            result = await self.db.execute(select(func.coalesce(func.sum(SenderTally.mails_sent), 0)))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to sum sender counts: {str(e)}") from e
        return int(result.scalar_one())

    async def find_inconsistencies(self) -> List[Tuple[str, int, int]]:
        """
        Compare each sender's count with the seen records attributed to it.

        Seen records written without a sender are ignored.

        Returns:
            List of (sender, counted, seen) for senders where the two differ
        """
        seen_counts = (
            select(SeenMail.sender.label("sender"), func.count().label("seen"))
            .where(SeenMail.sender.is_not(None))
            .group_by(SeenMail.sender)
            .subquery()
        )
        try:
            tallies = {
                row.sender: row.mails_sent
                for row in await self.db.execute(select(SenderTally.sender, SenderTally.mails_sent))
            }
            seen = {
                row.sender: row.seen
                for row in await self.db.execute(select(seen_counts.c.sender, seen_counts.c.seen))
            }
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to compare sender counts: {str(e)}") from e

        mismatches = []
        for sender in sorted(set(tallies) | set(seen)):
            counted = tallies.get(sender, 0)
            recorded = seen.get(sender, 0)
            if counted != recorded:
                mismatches.append((sender, counted, recorded))

        if mismatches:
            logger.warning(f"Found {len(mismatches)} senders with inconsistent counts")
        return mismatches
