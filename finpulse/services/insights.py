"""
Optional collaborators for model-assisted steps.

The deterministic pipeline never depends on these: when none is configured
merchant categories stay as synced and forecast error analysis is skipped.
"""
from typing import List, Optional, Protocol

from ..models.financial import Transaction
from ..models.forecast import DayComparison, LearningRecord


class TransactionClassifier(Protocol):
    """Assigns a spending category to a transaction."""

    async def classify(self, transaction: Transaction) -> Optional[str]:
        ...


class ErrorExplainer(Protocol):
    """Turns forecast errors into human-readable notes."""

    async def explain_errors(
        self,
        user_id: str,
        comparisons: List[DayComparison],
        records: List[LearningRecord]
    ) -> List[str]:
        ...
