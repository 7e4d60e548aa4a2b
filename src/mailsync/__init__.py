"""mailsync: incremental IMAP mailbox synchronization."""

__version__ = "0.1.0"
