"""Persistence layer: relational state and object storage."""

from .connections import Connection, ConnectionSource, TlsMode
from .content_store import ContentStore, FilesystemContentStore, S3ContentStore, open_content_store
from .cursor import CursorTracker, ResumePlan, SyncCursor
from .database import Database, open_database
from .metadata import MessageMetadata, MetadataPersister, UpsertResult

__all__ = [
    "Connection",
    "ConnectionSource",
    "ContentStore",
    "CursorTracker",
    "Database",
    "FilesystemContentStore",
    "MessageMetadata",
    "MetadataPersister",
    "ResumePlan",
    "S3ContentStore",
    "SyncCursor",
    "TlsMode",
    "UpsertResult",
    "open_content_store",
    "open_database",
]
