"""
Infrastructure layer for storage clients.
"""
from typing import Optional

import structlog

from ..config import get_settings
from .document_store import DocumentStore
from .firestore import FirestoreService
from .memory import InMemoryDocumentStore

logger = structlog.get_logger()

# Global document store instance
_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get the global document store for the configured backend."""
    global _document_store
    if _document_store is None:
        settings = get_settings()
        if settings.storage_backend == "memory":
            _document_store = InMemoryDocumentStore(batch_size=settings.batch_size)
        else:
            _document_store = FirestoreService(settings)
        logger.info("Document store initialized", backend=settings.storage_backend)
    return _document_store


def set_document_store(store: Optional[DocumentStore]) -> None:
    """Replace the global document store."""
    global _document_store
    _document_store = store


async def cleanup_document_store() -> None:
    """Close storage connections."""
    global _document_store
    if _document_store is not None:
        await _document_store.close()
        _document_store = None
        logger.info("Document store closed")


__all__ = [
    "DocumentStore",
    "FirestoreService",
    "InMemoryDocumentStore",
    "get_document_store",
    "set_document_store",
    "cleanup_document_store",
]
