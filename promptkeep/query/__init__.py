"""Query layer: session views reconstructed from the archive."""

from promptkeep.query.sessions import SessionQuery, natural_sort_key

__all__ = ["SessionQuery", "natural_sort_key"]
