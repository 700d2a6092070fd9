"""
inbox-tally: incremental per-sender message counts for a Gmail mailbox.
"""

__version__ = "1.0.0"
