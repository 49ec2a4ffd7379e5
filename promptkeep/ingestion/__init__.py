"""Ingestion module.

Tails the source tool's interaction log and archives every new entry.
"""

from .pipeline import IngestionPipeline, parse_raw_line
from .tail import TailEvent, TailWatcher
from .worker import IngestionWorker

__all__ = [
    "IngestionPipeline",
    "IngestionWorker",
    "TailEvent",
    "TailWatcher",
    "parse_raw_line",
]
