"""
inbox-tally - Command Line Interface

Usage:
    python -m inbox_tally init-db
    python -m inbox_tally auth
    python -m inbox_tally sync
    python -m inbox_tally report --limit 20 --desc
    python -m inbox_tally verify
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from inbox_tally.agent.sync import COMPLETED, FAILED, SyncAgent  # noqa: E402
from inbox_tally.config import settings  # noqa: E402
from inbox_tally.credentials import CredentialManager  # noqa: E402
from inbox_tally.db import get_session, init_db  # noqa: E402
from inbox_tally.errors import InboxTallyError  # noqa: E402
from inbox_tally.gmail_client import GmailClient  # noqa: E402
from inbox_tally.stores import AggregateStore, DedupStore  # noqa: E402

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False):
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # googleapiclient logs every discovery lookup at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def cmd_init_db(args) -> int:
    """Create the database tables."""
    asyncio.run(init_db())
    print(f"Database ready at {settings.DATABASE_URL}")
    return 0


def cmd_auth(args) -> int:
    """Authorize (or refresh) Gmail access and show the token details."""
    creds = CredentialManager().acquire()
    print(f"Token file: {settings.TOKEN_FILE}")
    print(f"Scopes: {', '.join(creds.scopes or [])}")
    print(f"Expires: {creds.expiry} UTC")
    return 0


async def _sync() -> int:
    credential_manager = CredentialManager()
    gmail_client = GmailClient(credential_manager)

    async with get_session() as db:
        agent = SyncAgent(db, gmail_client, credential_manager)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, agent.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

        summary = await agent.run()
        seen_total = await DedupStore(db).count()

    print("=" * 60)
    print(f"Sync run {summary.run_id}: {summary.status}")
    print(f"  Pages listed:      {summary.pages_listed}")
    print(f"  Messages listed:   {summary.messages_listed}")
    print(f"  New messages:      {summary.messages_new}")
    print(f"  Already seen:      {summary.messages_skipped}")
    print(f"  Item errors:       {summary.item_errors}")
    print(f"  Total seen:        {seen_total}")
    if summary.error:
        print(f"  Error:             {summary.error}")
    if summary.status not in (COMPLETED, FAILED):
        print("Progress was saved; run sync again to resume.")

    if summary.status == COMPLETED:
        return 0
    if summary.status == FAILED:
        return 1
    return 2


def cmd_sync(args) -> int:
    """Run one incremental sync."""
    return asyncio.run(_sync())


async def _report(limit, descending) -> int:
    async with get_session() as db:
        rows = await AggregateStore(db).snapshot(descending=descending, limit=limit)
        seen_total = await DedupStore(db).count()

    width = max([len(sender or "(no sender)") for sender, _ in rows] + [len("Sender")])
    print(f"{'Sender':<{width}}  {'Messages':>8}")
    print("-" * (width + 10))
    for sender, count in rows:
        print(f"{sender or '(no sender)':<{width}}  {count:>8}")
    print(f"\n{len(rows)} senders shown, {seen_total} messages seen")
    return 0


def cmd_report(args) -> int:
    """Print the per-sender message counts."""
    return asyncio.run(_report(args.limit, args.desc))


async def _verify() -> int:
    async with get_session() as db:
        mismatches = await AggregateStore(db).find_inconsistencies()

    if not mismatches:
        print("Sender counts match the seen messages")
        return 0

    for sender, counted, seen in mismatches:
        print(f"{sender}: counted {counted}, seen {seen}")
    return 1


def cmd_verify(args) -> int:
    """Compare sender counts with seen messages."""
    return asyncio.run(_verify())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="inbox-tally - count Gmail messages per sender")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create the database tables")
    subparsers.add_parser("auth", help="Authorize Gmail access")
    subparsers.add_parser("sync", help="Count new messages")

    report_parser = subparsers.add_parser("report", help="Show message counts per sender")
    report_parser.add_argument("--limit", type=int, default=None, help="Maximum number of senders")
    report_parser.add_argument("--desc", action="store_true", help="Largest counts first")

    subparsers.add_parser("verify", help="Check sender counts against seen messages")

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    commands = {
        "init-db": cmd_init_db,
        "auth": cmd_auth,
        "sync": cmd_sync,
        "report": cmd_report,
        "verify": cmd_verify,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 0

    try:
        return command(args)
    except InboxTallyError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
