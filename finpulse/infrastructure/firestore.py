"""
Firestore client implementation with connection management and error handling.
"""
import os
from typing import List, Optional, Sequence, Tuple, Type

import structlog
from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.cloud.firestore import Client as FirestoreClient
from google.cloud.firestore import FieldFilter, Query
from pydantic import BaseModel

from ..config import Settings, get_settings
from ..utils.exceptions import AppException, ConcurrencyConflictError, ConflictError, DatabaseError
from .document_store import DocumentStore, T, WhereClause, to_storage_value

logger = structlog.get_logger()


class FirestoreService(DocumentStore):
    """
    Firestore-backed document store.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Lazily connect on first use."""
        self._settings = settings or get_settings()
        super().__init__(batch_size=self._settings.batch_size)
        self._client: Optional[FirestoreClient] = None

    @property
    def client(self) -> FirestoreClient:
        """Firestore client, created on first access."""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _create_client(self) -> FirestoreClient:
        """Connect to the emulator or to the configured project."""
        try:
            if self._settings.use_firestore_emulator:
                os.environ["FIRESTORE_EMULATOR_HOST"] = self._settings.firestore_emulator_host
                client = firestore.Client(
                    project=self._settings.firestore_project_id,
                    database=self._settings.firestore_database
                )
                logger.info(
                    "Connected to Firestore emulator",
                    host=self._settings.firestore_emulator_host,
                    project=self._settings.firestore_project_id
                )
            else:
                if self._settings.google_credentials_path:
                    os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = self._settings.google_credentials_path

                client = firestore.Client(
                    project=self._settings.firestore_project_id,
                    database=self._settings.firestore_database
                )
                logger.info(
                    "Connected to Firestore",
                    project=self._settings.firestore_project_id
                )

            return client

        except gcp_exceptions.GoogleAPIError as e:
            logger.error("Failed to create Firestore client", error=str(e))
            raise DatabaseError(
                message="Document store unavailable",
                code="FIRESTORE_CONNECTION_ERROR",
                details=[str(e)]
            )

    async def create_document(self, collection: str, document_id: str, data: BaseModel) -> str:
        """Create a document, failing with ConflictError if the ID is taken."""
        try:
            doc_ref = self.client.collection(collection).document(document_id)
            doc_ref.create(self._serialize_model(data))

            logger.debug("Document created", collection=collection, document_id=document_id)
            return document_id

        except gcp_exceptions.AlreadyExists:
            raise ConflictError(
                message=f"Document {document_id} already exists",
                details=[f"Collection: {collection}"]
            )
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(
                "Failed to create document",
                collection=collection,
                document_id=document_id,
                error=str(e)
            )
            raise DatabaseError(
                message="Failed to create document",
                code="CREATE_DOCUMENT_ERROR",
                details=[str(e)]
            )

    async def get_document(self, collection: str, document_id: str, model_class: Type[T]) -> Optional[T]:
        """Fetch one document, or None when absent."""
        try:
            doc = self.client.collection(collection).document(document_id).get()
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(
                "Failed to get document",
                collection=collection,
                document_id=document_id,
                error=str(e)
            )
            raise DatabaseError(
                message="Failed to retrieve document",
                code="GET_DOCUMENT_ERROR",
                details=[str(e)]
            )

        if not doc.exists:
            return None
        return self._deserialize_document(doc.to_dict(), model_class)

    async def set_document(self, collection: str, document_id: str, data: BaseModel) -> None:
        """Create or overwrite a document."""
        try:
            self.client.collection(collection).document(document_id).set(self._serialize_model(data))
            logger.debug("Document written", collection=collection, document_id=document_id)
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(
                "Failed to write document",
                collection=collection,
                document_id=document_id,
                error=str(e)
            )
            raise DatabaseError(
                message="Failed to write document",
                code="SET_DOCUMENT_ERROR",
                details=[str(e)]
            )

    async def compare_and_set(
        self,
        collection: str,
        document_id: str,
        data: BaseModel,
        expected_version: int
    ) -> int:
        """Versioned write inside a Firestore transaction."""
        doc_ref = self.client.collection(collection).document(document_id)
        payload = self._serialize_model(data)
        new_version = expected_version + 1
        payload["version"] = new_version

        @firestore.transactional
        def write_in_transaction(transaction):
            snapshot = doc_ref.get(transaction=transaction)
            current = (snapshot.to_dict() or {}).get("version", 0) if snapshot.exists else 0
            if current != expected_version:
                raise ConcurrencyConflictError(
                    message=f"Document {document_id} was modified concurrently",
                    resource_type=collection,
                    expected_version=expected_version,
                    actual_version=current
                )
            transaction.set(doc_ref, payload)

        try:
            write_in_transaction(self.client.transaction())
        except AppException:
            raise
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(
                "Failed to perform versioned write",
                collection=collection,
                document_id=document_id,
                error=str(e)
            )
            raise DatabaseError(
                message="Failed to perform versioned write",
                code="TRANSACTION_UPDATE_ERROR",
                details=[str(e)]
            )

        logger.debug(
            "Versioned document written",
            collection=collection,
            document_id=document_id,
            version=new_version
        )
        return new_version

    async def delete_document(self, collection: str, document_id: str) -> bool:
        """Delete a document."""
        try:
            doc_ref = self.client.collection(collection).document(document_id)
            if not doc_ref.get().exists:
                return False
            doc_ref.delete()
            logger.debug("Document deleted", collection=collection, document_id=document_id)
            return True
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(
                "Failed to delete document",
                collection=collection,
                document_id=document_id,
                error=str(e)
            )
            raise DatabaseError(
                message="Failed to delete document",
                code="DELETE_DOCUMENT_ERROR",
                details=[str(e)]
            )

    async def query_documents(
        self,
        collection: str,
        model_class: Type[T],
        where_clauses: Optional[List[WhereClause]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[T]:
        """Query documents with filters and ordering."""
        try:
            query = self.client.collection(collection)

            for field, operator, value in where_clauses or []:
                query = query.where(filter=FieldFilter(field, operator, to_storage_value(value)))

            if order_by:
                direction = Query.DESCENDING if order_by.startswith("-") else Query.ASCENDING
                query = query.order_by(order_by.lstrip("-"), direction=direction)

            if limit:
                query = query.limit(limit)

            docs = list(query.stream())

        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to query documents", collection=collection, error=str(e))
            raise DatabaseError(
                message="Failed to query documents",
                code="QUERY_DOCUMENTS_ERROR",
                details=[str(e)]
            )

        results = [self._deserialize_document(doc.to_dict(), model_class) for doc in docs]
        logger.debug(
            "Documents queried",
            collection=collection,
            count=len(results),
            filters=where_clauses,
            order_by=order_by,
            limit=limit
        )
        return results

    async def list_document_ids(self, collection: str) -> List[str]:
        """IDs of every document in a collection."""
        try:
            return [doc_ref.id for doc_ref in self.client.collection(collection).list_documents()]
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to list documents", collection=collection, error=str(e))
            raise DatabaseError(
                message="Failed to list documents",
                code="LIST_DOCUMENTS_ERROR",
                details=[str(e)]
            )

    async def batch_set(self, collection: str, documents: Sequence[Tuple[str, BaseModel]]) -> int:
        """Write documents in bounded batches."""
        written = 0
        for chunk in self._chunks(documents):
            try:
                batch = self.client.batch()
                for doc_id, data in chunk:
                    batch.set(self.client.collection(collection).document(doc_id), self._serialize_model(data))
                batch.commit()
                written += len(chunk)
            except gcp_exceptions.GoogleAPICallError as e:
                logger.error(
                    "Failed to commit batch",
                    collection=collection,
                    written=written,
                    batch_size=len(chunk),
                    error=str(e)
                )
                raise DatabaseError(
                    message="Failed to batch write documents",
                    code="BATCH_WRITE_ERROR",
                    details=[str(e), f"Documents written before failure: {written}"]
                )

        logger.debug("Batch write completed", collection=collection, count=written)
        return written

    async def close(self) -> None:
        """Close the Firestore client."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Firestore client closed")
