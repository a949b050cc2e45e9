"""Persistence adapters: SQLite for metadata, S3 for bodies and attachments."""

from .blob import S3BlobStore, attachment_path, email_body_path
from .sqlite import SqliteMailRepository

__all__ = [
    "S3BlobStore",
    "SqliteMailRepository",
    "attachment_path",
    "email_body_path",
]
