"""
Document store interface shared by the Firestore and in-memory backends.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from ..utils.exceptions import DatabaseError

T = TypeVar("T", bound=BaseModel)

WhereClause = Tuple[str, str, Any]

SUPPORTED_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")

logger = structlog.get_logger()


def to_storage_value(value: Any) -> Any:
    """Convert a Python value to the JSON form documents are stored in."""
    return to_jsonable_python(value)


class DocumentStore(ABC):
    """
    Minimal document database API used by the stores.

    Documents are stored in their JSON form, so dates compare as ISO strings
    and decimals round-trip exactly.
    """

    def __init__(self, batch_size: int = 25):
        self.batch_size = batch_size

    def _serialize_model(self, model: BaseModel) -> Dict[str, Any]:
        """Serialize Pydantic model to a stored document."""
        return model.model_dump(mode="json")

    def _deserialize_document(self, doc_data: Dict[str, Any], model_class: Type[T]) -> T:
        """Deserialize a stored document to a Pydantic model."""
        try:
            return model_class.model_validate(doc_data)
        except PydanticValidationError as e:
            logger.error(
                "Failed to deserialize document",
                model_class=model_class.__name__,
                error=str(e)
            )
            raise DatabaseError(
                message=f"Stored document is not a valid {model_class.__name__}",
                code="DESERIALIZATION_ERROR",
                details=[str(e)]
            )

    def _chunks(self, items: Sequence[Any]) -> List[Sequence[Any]]:
        return [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    @abstractmethod
    async def create_document(self, collection: str, document_id: str, data: BaseModel) -> str:
        """Insert a document. Raises ConflictError when it already exists."""

    @abstractmethod
    async def get_document(self, collection: str, document_id: str, model_class: Type[T]) -> Optional[T]:
        """Get a document by ID, or None."""

    @abstractmethod
    async def set_document(self, collection: str, document_id: str, data: BaseModel) -> None:
        """Create or overwrite a document."""

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        document_id: str,
        data: BaseModel,
        expected_version: int
    ) -> int:
        """
        Write ``data`` only if the stored ``version`` equals ``expected_version``.

        A missing document counts as version 0. Returns the new version and
        raises ConcurrencyConflictError on mismatch.
        """

    @abstractmethod
    async def delete_document(self, collection: str, document_id: str) -> bool:
        """Delete a document. Returns False when it did not exist."""

    @abstractmethod
    async def query_documents(
        self,
        collection: str,
        model_class: Type[T],
        where_clauses: Optional[List[WhereClause]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[T]:
        """Query documents. ``order_by`` prefixed with ``-`` sorts descending."""

    @abstractmethod
    async def list_document_ids(self, collection: str) -> List[str]:
        """IDs of every document in a collection."""

    @abstractmethod
    async def batch_set(self, collection: str, documents: Sequence[Tuple[str, BaseModel]]) -> int:
        """Write documents in batches of at most ``batch_size``. Returns the count written."""

    async def close(self) -> None:
        """Release backend resources."""
