"""
In-process document store used for tests and local runs.
"""
import asyncio
import copy
import operator
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import structlog
from pydantic import BaseModel

from ..utils.exceptions import ConcurrencyConflictError, ConflictError, ValidationError
from .document_store import SUPPORTED_OPERATORS, DocumentStore, T, WhereClause, to_storage_value

logger = structlog.get_logger()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda field_value, values: field_value in values,
    "array_contains": lambda field_value, value: isinstance(field_value, list) and value in field_value,
}


class InMemoryDocumentStore(DocumentStore):
    """Document store backed by nested dictionaries, guarded by an asyncio lock."""

    def __init__(self, batch_size: int = 25):
        super().__init__(batch_size=batch_size)
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.batches_committed = 0

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def create_document(self, collection: str, document_id: str, data: BaseModel) -> str:
        async with self._lock:
            docs = self._collection(collection)
            if document_id in docs:
                raise ConflictError(
                    message=f"Document {document_id} already exists",
                    details=[f"Collection: {collection}"]
                )
            docs[document_id] = self._serialize_model(data)
        return document_id

    async def get_document(self, collection: str, document_id: str, model_class: Type[T]) -> Optional[T]:
        async with self._lock:
            doc = self._collection(collection).get(document_id)
            doc = copy.deepcopy(doc)
        if doc is None:
            return None
        return self._deserialize_document(doc, model_class)

    async def set_document(self, collection: str, document_id: str, data: BaseModel) -> None:
        async with self._lock:
            self._collection(collection)[document_id] = self._serialize_model(data)

    async def compare_and_set(
        self,
        collection: str,
        document_id: str,
        data: BaseModel,
        expected_version: int
    ) -> int:
        async with self._lock:
            docs = self._collection(collection)
            current = docs.get(document_id, {}).get("version", 0)
            if current != expected_version:
                raise ConcurrencyConflictError(
                    message=f"Document {document_id} was modified concurrently",
                    resource_type=collection,
                    expected_version=expected_version,
                    actual_version=current
                )
            payload = self._serialize_model(data)
            payload["version"] = expected_version + 1
            docs[document_id] = payload
        return expected_version + 1

    async def delete_document(self, collection: str, document_id: str) -> bool:
        async with self._lock:
            return self._collection(collection).pop(document_id, None) is not None

    async def query_documents(
        self,
        collection: str,
        model_class: Type[T],
        where_clauses: Optional[List[WhereClause]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[T]:
        filters = []
        for field, op, value in where_clauses or []:
            if op not in SUPPORTED_OPERATORS:
                raise ValidationError(message=f"Unsupported query operator: {op}")
            filters.append((field, _OPERATORS[op], to_storage_value(value)))

        async with self._lock:
            docs = [copy.deepcopy(doc) for doc in self._collection(collection).values()]

        matched = [
            doc for doc in docs
            if all(field in doc and compare(doc[field], value) for field, compare, value in filters)
        ]

        if order_by:
            field = order_by.lstrip("-")
            # Firestore drops documents missing the ordered field
            matched = [doc for doc in matched if doc.get(field) is not None]
            matched.sort(key=lambda doc: doc[field], reverse=order_by.startswith("-"))

        if limit:
            matched = matched[:limit]

        return [self._deserialize_document(doc, model_class) for doc in matched]

    async def list_document_ids(self, collection: str) -> List[str]:
        async with self._lock:
            return list(self._collection(collection))

    async def batch_set(self, collection: str, documents: Sequence[Tuple[str, BaseModel]]) -> int:
        written = 0
        for chunk in self._chunks(documents):
            async with self._lock:
                docs = self._collection(collection)
                for doc_id, data in chunk:
                    docs[doc_id] = self._serialize_model(data)
            self.batches_committed += 1
            written += len(chunk)
        return written

    async def clear(self) -> None:
        """Drop every collection."""
        async with self._lock:
            self._collections.clear()
        logger.debug("In-memory store cleared")
