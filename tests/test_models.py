"""
Tests for database models.
Tests SeenMail, SenderTally and SyncRun models.
"""

from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_tally.models import SeenMail, SenderTally, SyncRun


# ============================================================================
# SeenMail Model Tests
# ============================================================================


class TestSeenMailModel:
    """Tests for SeenMail model."""

    @pytest.mark.asyncio
    async def test_create_seen_mail(self, test_db: AsyncSession):
        """Test creating a seen record."""
        seen = SeenMail(mail_id="18c2a1f0e3b4d5a6", sender="news@example.com")
        test_db.add(seen)
        await test_db.commit()
        await test_db.refresh(seen)

        assert seen.seen_at is not None
        assert seen.seen_at <= datetime.utcnow()

    @pytest.mark.asyncio
    async def test_seen_mail_unique_id(self, test_db: AsyncSession):
        """Test that a message id can only be recorded once."""
        test_db.add(SeenMail(mail_id="msg1"))
        await test_db.commit()
        test_db.expunge_all()

        test_db.add(SeenMail(mail_id="msg1"))
        with pytest.raises(IntegrityError):
            await test_db.commit()
        await test_db.rollback()

    @pytest.mark.asyncio
    async def test_seen_mail_without_sender(self, test_db: AsyncSession):
        """Test that sender is optional."""
        test_db.add(SeenMail(mail_id="msg1"))
        await test_db.commit()

        seen = await test_db.get(SeenMail, "msg1")
        assert seen.sender is None


# ============================================================================
# SenderTally Model Tests
# ============================================================================


class TestSenderTallyModel:
    """Tests for SenderTally model."""

    @pytest.mark.asyncio
    async def test_default_count(self, test_db: AsyncSession):
        """Test that a new sender starts at zero."""
        tally = SenderTally(sender="a@example.com")
        test_db.add(tally)
        await test_db.commit()
        await test_db.refresh(tally)

        assert tally.mails_sent == 0

    @pytest.mark.asyncio
    async def test_empty_sender_is_a_key(self, test_db: AsyncSession):
        """Test that messages without a sender share the empty key."""
        test_db.add(SenderTally(sender="", mails_sent=2))
        await test_db.commit()

        result = await test_db.execute(select(SenderTally).where(SenderTally.sender == ""))
        assert result.scalar_one().mails_sent == 2


# ============================================================================
# SyncRun Model Tests
# ============================================================================


class TestSyncRunModel:
    """Tests for SyncRun model."""

    @pytest.mark.asyncio
    async def test_create_sync_run(self, test_db: AsyncSession):
        """Test creating a new sync run."""
        run = SyncRun()
        test_db.add(run)
        await test_db.commit()
        await test_db.refresh(run)

        assert run.id is not None
        assert run.status == "running"
        assert run.started_at is not None
        assert run.finished_at is None
        assert run.messages_new == 0
        assert run.item_errors == 0

    @pytest.mark.asyncio
    async def test_sync_run_with_error(self, test_db: AsyncSession):
        """Test recording a failed run."""
        run = SyncRun(status="failed", error_message="Token refresh rejected")
        test_db.add(run)
        await test_db.commit()
        await test_db.refresh(run)

        assert run.status == "failed"
        assert run.error_message == "Token refresh rejected"

    @pytest.mark.asyncio
    async def test_query_latest_run(self, test_db: AsyncSession):
        """Test ordering runs by id."""
        test_db.add_all([SyncRun(status="completed"), SyncRun(status="incomplete")])
        await test_db.commit()

        result = await test_db.execute(select(SyncRun).order_by(SyncRun.id.desc()).limit(1))
        assert result.scalar_one().status == "incomplete"
