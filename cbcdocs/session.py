"""
Diagram Session
===============
The only mutable state of the diagram pipeline, owned by the caller.

    session = DiagramSession()
    session.reset_document("doc-42")       # start of a (re)generation
    ... placement passes ...
    session.discard_document("doc-42")     # when the document is done

The used-image registry is keyed by document identifier; the remote result
cache is keyed by search parameters and shared across documents.
"""

from __future__ import annotations

import logging
from typing import Optional

from .models import ImageResult

logger = logging.getLogger(__name__)


class UsedImageRegistry:
    """Per-document sets of image URLs already placed."""

    def __init__(self):
        self._used: dict[str, set[str]] = {}

    def is_used(self, document_id: str, url: str) -> bool:
        return url in self._used.get(document_id, ())

    def mark_used(self, document_id: str, url: str):
        self._used.setdefault(document_id, set()).add(url)

    def used(self, document_id: str) -> frozenset[str]:
        return frozenset(self._used.get(document_id, ()))

    def reset(self, document_id: str):
        self._used[document_id] = set()

    def discard(self, document_id: str):
        self._used.pop(document_id, None)

    def clear(self):
        self._used.clear()

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._used


class DiagramSession:
    """Registry plus (subject, topic, grade) → result cache."""

    def __init__(self):
        self.registry = UsedImageRegistry()
        self._results: dict[str, ImageResult] = {}

    def reset_document(self, document_id: str):
        """Forget placed images of a document before regenerating it."""
        self.registry.reset(document_id)
        logger.info(f"Reset used images for document: {document_id}")

    def discard_document(self, document_id: str):
        self.registry.discard(document_id)
        logger.debug(f"Discarded used images for document: {document_id}")

    def cached_result(self, key: str) -> Optional[ImageResult]:
        return self._results.get(key)

    def cache_result(self, key: str, result: ImageResult):
        self._results[key] = result

    def clear_cache(self):
        """Drop cached remote results and every document registry."""
        self._results.clear()
        self.registry.clear()
        logger.info("Diagram session caches cleared")
