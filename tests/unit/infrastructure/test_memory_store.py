"""
Tests for the in-memory document store.
"""
from datetime import date
from decimal import Decimal

import pytest

from finpulse.infrastructure.memory import InMemoryDocumentStore
from finpulse.models.preferences import UserPreferences
from finpulse.utils.exceptions import ConcurrencyConflictError, ConflictError, ValidationError
from tests.factories.financial_factory import make_transaction

COLLECTION = "transactions/user_123/user_transactions"


@pytest.fixture
def store():
    return InMemoryDocumentStore(batch_size=2)


@pytest.mark.unit
class TestInMemoryDocumentStore:
    """Test InMemoryDocumentStore."""

    async def test_create_and_get(self, store):
        """Test documents round-trip through the JSON representation."""
        tx = make_transaction(amount=Decimal("12.34"), date=date(2024, 6, 1))
        await store.create_document(COLLECTION, tx.id, tx)

        loaded = await store.get_document(COLLECTION, tx.id, type(tx))

        assert loaded.amount == Decimal("12.34")
        assert loaded.date == date(2024, 6, 1)

    async def test_create_existing_conflicts(self, store):
        """Test create refuses to overwrite."""
        tx = make_transaction()
        await store.create_document(COLLECTION, tx.id, tx)

        with pytest.raises(ConflictError):
            await store.create_document(COLLECTION, tx.id, tx)

    async def test_get_missing(self, store):
        """Test missing documents return None."""
        assert await store.get_document(COLLECTION, "nope", UserPreferences) is None

    async def test_compare_and_set(self, store):
        """Test versions advance by one and stale writers are rejected."""
        prefs = UserPreferences(user_id="user_123")

        assert await store.compare_and_set("preferences", "user_123", prefs, expected_version=0) == 1
        assert await store.compare_and_set("preferences", "user_123", prefs, expected_version=1) == 2

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await store.compare_and_set("preferences", "user_123", prefs, expected_version=1)
        assert exc_info.value.actual_version == 2

        stored = await store.get_document("preferences", "user_123", UserPreferences)
        assert stored.version == 2

    async def test_query_filters_order_and_limit(self, store):
        """Test where clauses, descending order and limit."""
        for day in (1, 5, 9, 12):
            tx = make_transaction(date=date(2024, 6, day))
            await store.set_document(COLLECTION, tx.id, tx)

        results = await store.query_documents(
            COLLECTION,
            type(tx),
            where_clauses=[("date", ">=", date(2024, 6, 5))],
            order_by="-date",
            limit=2
        )

        assert [r.date for r in results] == [date(2024, 6, 12), date(2024, 6, 9)]

    async def test_unsupported_operator(self, store):
        """Test unknown operators are rejected."""
        with pytest.raises(ValidationError):
            await store.query_documents(COLLECTION, UserPreferences, where_clauses=[("date", "~", 1)])

    async def test_batch_set_chunks_writes(self, store):
        """Test batch writes are committed in chunks of the configured size."""
        transactions = [make_transaction() for _ in range(5)]

        written = await store.batch_set(COLLECTION, [(tx.id, tx) for tx in transactions])

        assert written == 5
        assert store.batches_committed == 3
        assert sorted(await store.list_document_ids(COLLECTION)) == sorted(tx.id for tx in transactions)

    async def test_delete(self, store):
        """Test delete reports whether anything was removed."""
        tx = make_transaction()
        await store.set_document(COLLECTION, tx.id, tx)

        assert await store.delete_document(COLLECTION, tx.id) is True
        assert await store.delete_document(COLLECTION, tx.id) is False
