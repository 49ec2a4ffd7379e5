"""promptkeep storage layer."""

from promptkeep.storage.archive_store import ArchiveStore, PartitionKey
from promptkeep.storage.path_resolver import StoragePathResolver, get_default_resolver
from promptkeep.storage.retention import CleanupStats, RetentionScheduler

__all__ = [
    "ArchiveStore",
    "CleanupStats",
    "PartitionKey",
    "RetentionScheduler",
    "StoragePathResolver",
    "get_default_resolver",
]
