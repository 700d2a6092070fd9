"""
Tests for the command line interface.
"""

from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FakeGmailClient, StubCredentialManager
from inbox_tally import main as cli
from inbox_tally.agent.sync import SyncAgent
from inbox_tally.errors import AuthFailure, TransientApiError
from inbox_tally.models import SeenMail, SenderTally


@pytest.fixture
def patched_session(test_db: AsyncSession):
    """Point the CLI at the test database."""
    @asynccontextmanager
    async def session():
        yield test_db

    with patch.object(cli, "get_session", session):
        yield test_db


@pytest.mark.asyncio
async def test_report_descending(patched_session, capsys):
    patched_session.add_all([
        SenderTally(sender="a@example.com", mails_sent=1),
        SenderTally(sender="b@example.com", mails_sent=3),
        SenderTally(sender="", mails_sent=2),
        SeenMail(mail_id="m1"),
    ])
    await patched_session.commit()

    assert await cli._report(limit=2, descending=True) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[2].split() == ["b@example.com", "3"]
    assert lines[3].split() == ["(no", "sender)", "2"]
    assert "2 senders shown, 1 messages seen" in lines[-1]


@pytest.mark.asyncio
async def test_verify_consistent(patched_session, capsys):
    patched_session.add_all([
        SeenMail(mail_id="m1", sender="a@example.com"),
        SenderTally(sender="a@example.com", mails_sent=1),
    ])
    await patched_session.commit()

    assert await cli._verify() == 0
    assert "match" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_verify_mismatch(patched_session, capsys):
    patched_session.add(SenderTally(sender="a@example.com", mails_sent=2))
    await patched_session.commit()

    assert await cli._verify() == 1
    assert "a@example.com: counted 2, seen 0" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()


def test_errors_exit_with_failure():
    with patch.object(cli, "cmd_auth", side_effect=AuthFailure("revoked")):
        assert cli.main(["auth"]) == 1


def test_report_arguments():
    with patch.object(cli, "cmd_report", return_value=0) as cmd_report:
        assert cli.main(["report", "--limit", "5", "--desc"]) == 0

    args = cmd_report.call_args.args[0]
    assert args.limit == 5
    assert args.desc is True


# ============================================================================
# sync command
# ============================================================================


class StoppedAgent(SyncAgent):
    """Agent whose stop was requested before the first message."""

    async def run(self):
        self.stop()
        return await super().run()


class TestSyncCommand:
    """Tests for the exit codes and output of the sync command."""

    async def _run_sync(self, gmail: FakeGmailClient, agent_cls=SyncAgent) -> int:
        with patch.object(cli, "CredentialManager", return_value=gmail.credential_manager), \
             patch.object(cli, "GmailClient", return_value=gmail), \
             patch.object(cli, "SyncAgent", agent_cls):
            return await cli._sync()

    @pytest.mark.asyncio
    async def test_completed_exits_zero(self, patched_session, fake_gmail, capsys):
        """Test that a completed run exits 0."""
        assert await self._run_sync(fake_gmail) == 0

        out = capsys.readouterr().out
        assert ": completed" in out
        assert "Total seen:        5" in out
        assert "run sync again" not in out

    @pytest.mark.asyncio
    async def test_failed_exits_one(self, patched_session, sample_messages, capsys):
        """Test that a run aborted before any commit exits 1."""
        gmail = FakeGmailClient(
            sample_messages,
            credential_manager=StubCredentialManager(error=AuthFailure("consent revoked")),
        )

        assert await self._run_sync(gmail) == 1

        out = capsys.readouterr().out
        assert ": failed" in out
        assert "AuthFailure: consent revoked" in out
        assert "run sync again" not in out

    @pytest.mark.asyncio
    async def test_incomplete_exits_two(self, patched_session, fake_gmail, capsys):
        """Test that an abort after progress exits 2 and asks for a rerun."""
        fake_gmail.fail(("list", "2"), TransientApiError("rate limited"))

        assert await self._run_sync(fake_gmail) == 2

        out = capsys.readouterr().out
        assert ": incomplete" in out
        assert "Progress was saved; run sync again to resume." in out

    @pytest.mark.asyncio
    async def test_cancelled_exits_two(self, patched_session, fake_gmail, capsys):
        """Test that a stopped run exits 2 and asks for a rerun."""
        assert await self._run_sync(fake_gmail, StoppedAgent) == 2

        out = capsys.readouterr().out
        assert ": cancelled" in out
        assert "run sync again to resume" in out
