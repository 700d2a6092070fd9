"""
SQLAlchemy database models for inbox-tally.
Defines the seen-message index, the per-sender counters and the run log.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inbox_tally.db import Base


class SeenMail(Base):
    """
    A Gmail message that has already been counted.
    Rows are append-only: created once per message id, never updated.
    """
    __tablename__ = "seen_mails"

    mail_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    # Sender the message was attributed to, used for consistency checks
    sender: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SeenMail(mail_id={self.mail_id}, sender={self.sender})>"


Index("idx_seen_mail_sender", SeenMail.sender)


class SenderTally(Base):
    """
    Running count of messages received from one sender address.
    """
    __tablename__ = "senders"

    sender: Mapped[str] = mapped_column(String(255), primary_key=True)
    mails_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SenderTally(sender={self.sender}, mails_sent={self.mails_sent})>"


Index("idx_sender_mails_sent", SenderTally.mails_sent)


class SyncRun(Base):
    """
    Represents one sync run.
    Tracks progress and statistics so an operator can see how runs ended.
    """
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="running"
        # Valid values: running, completed, incomplete, failed, cancelled
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Progress tracking
    pages_listed: Mapped[int] = mapped_column(Integer, default=0)
    messages_listed: Mapped[int] = mapped_column(Integer, default=0)
    messages_new: Mapped[int] = mapped_column(Integer, default=0)
    messages_skipped: Mapped[int] = mapped_column(Integer, default=0)
    item_errors: Mapped[int] = mapped_column(Integer, default=0)

    # Error tracking
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncRun(id={self.id}, status={self.status}, messages_new={self.messages_new})>"
