"""
Typed stores over the document store, one per aggregate.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel, Field

from ..models.anomaly import AnomalyStatus, DetectedAnomaly, MerchantBaseline, SaveResult
from ..models.financial import (
    CASH_ACCOUNT_TYPES,
    Account,
    RecurringPattern,
    RecurringSuggestion,
    SuggestionStatus,
    SuppressionEntry,
    SuppressionList,
    Transaction,
)
from ..models.forecast import ForecastSnapshot, LearningRecord
from ..models.preferences import UserPreferences
from ..utils.exceptions import ConcurrencyConflictError, ConflictError
from .document_store import DocumentStore

logger = structlog.get_logger()

SUPPRESSION_WRITE_ATTEMPTS = 3


class Collections:
    """Document paths."""

    @staticmethod
    def transactions(user_id: str) -> str:
        return f"transactions/{user_id}/user_transactions"

    @staticmethod
    def accounts(user_id: str) -> str:
        return f"accounts/{user_id}/bank_accounts"

    @staticmethod
    def patterns(user_id: str) -> str:
        return f"recurring_patterns/{user_id}/user_patterns"

    @staticmethod
    def suggestions(user_id: str) -> str:
        return f"recurring_suggestions/{user_id}/user_suggestions"

    SUPPRESSION_LISTS = "suppression_lists"

    @staticmethod
    def baselines(user_id: str) -> str:
        return f"merchant_baselines/{user_id}/user_baselines"

    @staticmethod
    def anomalies(user_id: str) -> str:
        return f"detected_anomalies/{user_id}/user_anomalies"

    @staticmethod
    def snapshots(user_id: str) -> str:
        return f"forecast_snapshots/{user_id}/user_snapshots"

    @staticmethod
    def learning_records(user_id: str) -> str:
        return f"learning_records/{user_id}/user_records"

    PREFERENCES = "preferences"
    KNOWN_USERS = "known_users"


class KnownUser(BaseModel):
    """A user the periodic learning cycle should visit."""

    user_id: str
    registered_at: datetime = Field(default_factory=datetime.utcnow)


class UserRegistry:
    """Tracks users with analytics state."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def register(self, user_id: str) -> None:
        existing = await self.db.get_document(Collections.KNOWN_USERS, user_id, KnownUser)
        if existing is None:
            await self.db.set_document(Collections.KNOWN_USERS, user_id, KnownUser(user_id=user_id))

    async def list_users(self) -> List[str]:
        return sorted(await self.db.list_document_ids(Collections.KNOWN_USERS))


class TransactionFeed:
    """Read access to synced transactions and account balances."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def fetch_transactions(
        self,
        user_id: str,
        since: date,
        until: Optional[date] = None,
        exclude_exceptional: bool = False,
        exclude_ignored: bool = True
    ) -> List[Transaction]:
        """Transactions dated on or after ``since`` (and on or before ``until``), oldest first."""
        where = [("date", ">=", since)]
        if until is not None:
            where.append(("date", "<=", until))

        transactions = await self.db.query_documents(
            collection=Collections.transactions(user_id),
            model_class=Transaction,
            where_clauses=where,
            order_by="date"
        )
        return [
            tx for tx in transactions
            if not (exclude_exceptional and tx.is_exceptional)
            and not (exclude_ignored and tx.ignored)
        ]

    async def get_cash_balance(self, user_id: str) -> Decimal:
        """Sum of balances across active checking, savings and cash accounts."""
        accounts = await self.db.query_documents(
            collection=Collections.accounts(user_id),
            model_class=Account,
            where_clauses=[("is_active", "==", True)]
        )
        return sum(
            (account.balance for account in accounts if account.account_type in CASH_ACCOUNT_TYPES),
            Decimal("0.00")
        )

    async def save_transactions(self, user_id: str, transactions: Iterable[Transaction]) -> int:
        return await self.db.batch_set(
            Collections.transactions(user_id),
            [(tx.id, tx) for tx in transactions]
        )

    async def save_accounts(self, user_id: str, accounts: Iterable[Account]) -> int:
        return await self.db.batch_set(
            Collections.accounts(user_id),
            [(account.id, account) for account in accounts]
        )


class PatternStore:
    """Active recurring patterns and the suppression list."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def get_active_patterns(self, user_id: str) -> List[RecurringPattern]:
        return await self.db.query_documents(
            collection=Collections.patterns(user_id),
            model_class=RecurringPattern,
            order_by="display_name"
        )

    async def get_pattern(self, user_id: str, pattern_id: str) -> Optional[RecurringPattern]:
        return await self.db.get_document(Collections.patterns(user_id), pattern_id, RecurringPattern)

    async def find_by_key(self, user_id: str, key: str) -> Optional[RecurringPattern]:
        matches = await self.db.query_documents(
            collection=Collections.patterns(user_id),
            model_class=RecurringPattern,
            where_clauses=[("normalized_merchant_key", "==", key)],
            limit=1
        )
        return matches[0] if matches else None

    async def upsert_pattern(self, pattern: RecurringPattern) -> RecurringPattern:
        """Compare-and-set on ``pattern.version``; returns the stored pattern."""
        pattern.update_timestamp()
        new_version = await self.db.compare_and_set(
            Collections.patterns(pattern.user_id), pattern.id, pattern, expected_version=pattern.version
        )
        return pattern.model_copy(update={"version": new_version})

    async def delete_pattern(self, user_id: str, pattern_id: str) -> bool:
        return await self.db.delete_document(Collections.patterns(user_id), pattern_id)

    async def get_suppression_list(self, user_id: str) -> SuppressionList:
        stored = await self.db.get_document(Collections.SUPPRESSION_LISTS, user_id, SuppressionList)
        return stored or SuppressionList(user_id=user_id)

    async def save_suppression_list(self, suppression: SuppressionList) -> SuppressionList:
        new_version = await self.db.compare_and_set(
            Collections.SUPPRESSION_LISTS, suppression.user_id, suppression, expected_version=suppression.version
        )
        return suppression.model_copy(update={"version": new_version})

    async def add_to_suppression_list(
        self,
        user_id: str,
        key: str,
        reason: str,
        original_name: Optional[str] = None
    ) -> SuppressionList:
        """Add a key, retrying when another writer bumps the version first."""
        for attempt in range(1, SUPPRESSION_WRITE_ATTEMPTS + 1):
            suppression = await self.get_suppression_list(user_id)
            if key in suppression.entries:
                return suppression
            suppression.entries[key] = SuppressionEntry(reason=reason, original_name=original_name)
            try:
                saved = await self.save_suppression_list(suppression)
                logger.info("Merchant suppressed", user_id=user_id, key=key, reason=reason)
                return saved
            except ConcurrencyConflictError:
                if attempt == SUPPRESSION_WRITE_ATTEMPTS:
                    raise
                logger.warning("Suppression list changed concurrently, retrying", user_id=user_id, attempt=attempt)
        raise AssertionError("unreachable")

    async def remove_from_suppression_list(self, user_id: str, keys: Optional[List[str]] = None) -> int:
        """Remove the given keys, or every key when ``keys`` is None. Returns the count removed."""
        for attempt in range(1, SUPPRESSION_WRITE_ATTEMPTS + 1):
            suppression = await self.get_suppression_list(user_id)
            targets = list(suppression.entries) if keys is None else [k for k in keys if k in suppression.entries]
            if not targets:
                return 0
            for key in targets:
                del suppression.entries[key]
            try:
                await self.save_suppression_list(suppression)
                logger.info("Suppression entries removed", user_id=user_id, count=len(targets))
                return len(targets)
            except ConcurrencyConflictError:
                if attempt == SUPPRESSION_WRITE_ATTEMPTS:
                    raise
                logger.warning("Suppression list changed concurrently, retrying", user_id=user_id, attempt=attempt)
        raise AssertionError("unreachable")


class SuggestionStore:
    """Pending and reviewed recurring suggestions."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def list_pending(self, user_id: str) -> List[RecurringSuggestion]:
        return await self.db.query_documents(
            collection=Collections.suggestions(user_id),
            model_class=RecurringSuggestion,
            where_clauses=[("status", "==", SuggestionStatus.PENDING)]
        )

    async def get(self, user_id: str, suggestion_id: str) -> Optional[RecurringSuggestion]:
        return await self.db.get_document(Collections.suggestions(user_id), suggestion_id, RecurringSuggestion)

    async def save(self, suggestion: RecurringSuggestion) -> None:
        suggestion.update_timestamp()
        await self.db.set_document(Collections.suggestions(suggestion.user_id), suggestion.id, suggestion)

    async def supersede_pending(self, user_id: str, key: str, keep_id: Optional[str] = None) -> int:
        """Mark older pending suggestions for ``key`` as superseded."""
        pending = await self.db.query_documents(
            collection=Collections.suggestions(user_id),
            model_class=RecurringSuggestion,
            where_clauses=[
                ("status", "==", SuggestionStatus.PENDING),
                ("normalized_merchant_key", "==", key),
            ]
        )
        superseded = 0
        for suggestion in pending:
            if suggestion.id == keep_id:
                continue
            suggestion.status = SuggestionStatus.SUPERSEDED
            await self.save(suggestion)
            superseded += 1
        return superseded

    async def list_by_key(self, user_id: str, key: str, status: SuggestionStatus) -> List[RecurringSuggestion]:
        return await self.db.query_documents(
            collection=Collections.suggestions(user_id),
            model_class=RecurringSuggestion,
            where_clauses=[
                ("status", "==", status),
                ("normalized_merchant_key", "==", key),
            ]
        )

    async def delete_pending(self, user_id: str) -> int:
        pending = await self.list_pending(user_id)
        for suggestion in pending:
            await self.db.delete_document(Collections.suggestions(user_id), suggestion.id)
        return len(pending)


def baseline_document_id(key: str) -> str:
    return key.replace(" ", "-")


class BaselineStore:
    """Per-merchant spending baselines."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def get_baselines(self, user_id: str) -> Dict[str, MerchantBaseline]:
        baselines = await self.db.query_documents(Collections.baselines(user_id), MerchantBaseline)
        return {baseline.normalized_merchant_key: baseline for baseline in baselines}

    async def save_baselines(self, user_id: str, baselines: List[MerchantBaseline]) -> int:
        """Replace the user's baselines. Stale merchants are removed after the new set is written."""
        written = await self.db.batch_set(
            Collections.baselines(user_id),
            [(baseline_document_id(b.normalized_merchant_key), b) for b in baselines]
        )
        keep = {baseline_document_id(b.normalized_merchant_key) for b in baselines}
        for doc_id in await self.db.list_document_ids(Collections.baselines(user_id)):
            if doc_id not in keep:
                await self.db.delete_document(Collections.baselines(user_id), doc_id)
        return written

    async def record_false_positive(self, user_id: str, key: str) -> Optional[MerchantBaseline]:
        doc_id = baseline_document_id(key)
        baseline = await self.db.get_document(Collections.baselines(user_id), doc_id, MerchantBaseline)
        if baseline is None:
            return None
        baseline.false_positive_count += 1
        await self.db.set_document(Collections.baselines(user_id), doc_id, baseline)
        return baseline


class AnomalyStore:
    """Detected anomalies keyed by their dedup key."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def save_anomalies(self, anomalies: List[DetectedAnomaly]) -> SaveResult:
        result = SaveResult()
        for anomaly in anomalies:
            try:
                await self.db.create_document(Collections.anomalies(anomaly.user_id), anomaly.dedup_key, anomaly)
                result.saved += 1
            except ConflictError:
                result.duplicates += 1
        return result

    async def get_anomaly(self, user_id: str, anomaly_id: str) -> Optional[DetectedAnomaly]:
        return await self.db.get_document(Collections.anomalies(user_id), anomaly_id, DetectedAnomaly)

    async def update_anomaly(self, anomaly: DetectedAnomaly) -> None:
        anomaly.update_timestamp()
        await self.db.set_document(Collections.anomalies(anomaly.user_id), anomaly.id, anomaly)

    async def list_anomalies(
        self,
        user_id: str,
        status: Optional[AnomalyStatus] = None,
        limit: Optional[int] = None
    ) -> List[DetectedAnomaly]:
        where = [("status", "==", status)] if status else None
        return await self.db.query_documents(
            collection=Collections.anomalies(user_id),
            model_class=DetectedAnomaly,
            where_clauses=where,
            order_by="-detected_at",
            limit=limit
        )


class ForecastStore:
    """Stored forecast snapshots."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def save_snapshot(self, snapshot: ForecastSnapshot) -> None:
        await self.db.create_document(Collections.snapshots(snapshot.user_id), snapshot.id, snapshot)

    async def get_past_snapshots(self, user_id: str, before: date) -> List[ForecastSnapshot]:
        """Snapshots whose whole horizon ended before ``before``, oldest first."""
        snapshots = await self.db.query_documents(
            collection=Collections.snapshots(user_id),
            model_class=ForecastSnapshot,
            where_clauses=[("start_date", "<", before)],
            order_by="start_date"
        )
        return [snapshot for snapshot in snapshots if snapshot.end_date < before]

    async def save_comparisons(self, user_id: str, snapshots: List[ForecastSnapshot]) -> int:
        return await self.db.batch_set(
            Collections.snapshots(user_id),
            [(snapshot.id, snapshot) for snapshot in snapshots]
        )


class LearningRecordStore:
    """Append-only learning history."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def append_learning_record(self, record: LearningRecord) -> None:
        await self.db.create_document(Collections.learning_records(record.user_id), record.id, record)

    async def list_records(self, user_id: str, limit: int = 10) -> List[LearningRecord]:
        return await self.db.query_documents(
            collection=Collections.learning_records(user_id),
            model_class=LearningRecord,
            order_by="-analyzed_at",
            limit=limit
        )

    async def get_latest_multiplier(self, user_id: str) -> float:
        latest = await self.list_records(user_id, limit=1)
        return latest[0].accuracy_adjustment_multiplier if latest else 1.0


class PreferencesStore:
    """Per-user preferences."""

    def __init__(self, db: DocumentStore):
        self.db = db

    async def get_preferences(self, user_id: str) -> UserPreferences:
        stored = await self.db.get_document(Collections.PREFERENCES, user_id, UserPreferences)
        return stored or UserPreferences(user_id=user_id)

    async def save_preferences(self, preferences: UserPreferences) -> UserPreferences:
        new_version = await self.db.compare_and_set(
            Collections.PREFERENCES, preferences.user_id, preferences, expected_version=preferences.version
        )
        return preferences.model_copy(update={"version": new_version})
