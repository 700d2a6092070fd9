"""
inbox-tally Agent Module

This module contains the sync orchestration that keeps the per-sender
message counts up to date.
"""

from inbox_tally.agent.sync import (
    CANCELLED,
    COMPLETED,
    FAILED,
    INCOMPLETE,
    SyncAgent,
    SyncSummary,
    run_sync,
)

__all__ = [
    "SyncAgent",
    "SyncSummary",
    "run_sync",
    "COMPLETED",
    "INCOMPLETE",
    "FAILED",
    "CANCELLED",
]
