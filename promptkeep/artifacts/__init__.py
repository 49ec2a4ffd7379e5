"""Artifact resolution: pasted text blobs and inline images."""

from promptkeep.artifacts.images import ImageResolver, find_image_markers
from promptkeep.artifacts.paste_cache import PasteCache

__all__ = [
    "ImageResolver",
    "PasteCache",
    "find_image_markers",
]
