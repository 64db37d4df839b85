"""
Financial domain models: Account, Transaction, recurring patterns and suggestions.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .base import UserOwnedModel, VersionedModel


class AccountType(str, Enum):
    """Types of financial accounts."""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"
    CASH = "cash"
    INVESTMENT = "investment"
    LOAN = "loan"
    OTHER = "other"


CASH_ACCOUNT_TYPES = (AccountType.CHECKING, AccountType.SAVINGS, AccountType.CASH)


class RecurringFrequency(str, Enum):
    """Frequency of a recurring series."""
    WEEKLY = "weekly"
    BIWEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PatternConfidence(str, Enum):
    """Confidence that a series is really recurring."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


CONFIDENCE_RANK: Dict[PatternConfidence, int] = {
    PatternConfidence.LOW: 0,
    PatternConfidence.MEDIUM: 1,
    PatternConfidence.HIGH: 2,
}


class PatternSource(str, Enum):
    """Where an active recurring pattern came from."""
    DETECTED = "detected"
    CONFIRMED = "confirmed"
    USER_DECLARED = "user_declared"


class BillType(str, Enum):
    """Coarse classification of a recurring series."""
    SUBSCRIPTION = "subscription"
    UTILITY = "utility"
    HOUSING = "housing"
    INSURANCE = "insurance"
    LOAN = "loan"
    INCOME = "income"
    BILL = "bill"


class SuggestionStatus(str, Enum):
    """Lifecycle of a recurring suggestion."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    SUPERSEDED = "superseded"


class DenialReason(str, Enum):
    """Why the user rejected a suggestion."""
    NOT_RECURRING = "not_recurring"
    ONE_TIME = "one_time"
    SHOPPING = "shopping"
    WRONG_AMOUNT = "wrong_amount"
    OTHER = "other"


class ReviewAction(str, Enum):
    """Bulk review actions."""
    CONFIRM = "confirm"
    DENY = "deny"


class Account(UserOwnedModel):
    """Financial account model."""

    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType
    balance: Decimal = Field(default=Decimal("0.00"))
    currency: str = Field(default="USD", min_length=3, max_length=3)
    is_active: bool = Field(default=True)


class Transaction(BaseModel):
    """A synced transaction. Positive amounts are expenses, negative amounts income."""

    id: str
    user_id: str
    account_id: Optional[str] = None
    date: date
    amount: Decimal
    name: str = ""
    merchant_name: Optional[str] = None
    display_name: Optional[str] = None
    category: Optional[str] = None
    is_income: bool = False
    is_exceptional: bool = False
    ignored: bool = False

    @property
    def label(self) -> str:
        """Best available human-readable merchant description."""
        return self.display_name or self.merchant_name or self.name

    @property
    def is_inflow(self) -> bool:
        """Money coming in, either flagged as income or carrying a negative amount."""
        return self.is_income or self.amount < 0

    @property
    def cash_effect(self) -> Decimal:
        """Signed change to the account balance."""
        return abs(self.amount) if self.is_inflow else -abs(self.amount)


class PatternAttributes(BaseModel):
    """Fields shared by active patterns and pending suggestions."""

    normalized_merchant_key: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1, max_length=200)
    frequency: RecurringFrequency
    average_amount: Decimal = Field(..., ge=0)
    next_expected_date: date
    last_seen_date: Optional[date] = None
    first_seen_date: Optional[date] = None
    typical_day: Optional[int] = Field(None, ge=1, le=31)
    is_income: bool = False
    category: Optional[str] = None
    confidence: PatternConfidence
    occurrence_count: int = Field(default=0, ge=0)
    source_transaction_ids: List[str] = Field(default_factory=list)


PATTERN_FIELDS = frozenset(PatternAttributes.model_fields)


class RecurringPattern(VersionedModel, PatternAttributes):
    """An active recurring income or expense."""

    source: PatternSource = Field(default=PatternSource.DETECTED)
    bill_type: Optional[BillType] = None
    has_manual_override: bool = Field(default=False)

    @property
    def is_protected(self) -> bool:
        """Patterns that detection runs must not rewrite without re-confirmation."""
        return self.source == PatternSource.USER_DECLARED or self.has_manual_override


class RecurringSuggestion(UserOwnedModel, PatternAttributes):
    """A detected series awaiting user confirmation."""

    detection_reason: str
    bill_type: Optional[BillType] = None
    status: SuggestionStatus = Field(default=SuggestionStatus.PENDING)
    replaces_pattern_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    denial_reason: Optional[DenialReason] = None


class SuppressionEntry(BaseModel):
    """A merchant key excluded from detection."""

    reason: str
    original_name: Optional[str] = None
    added_at: datetime = Field(default_factory=datetime.utcnow)


class SuppressionList(BaseModel):
    """Per-user set of suppressed merchant keys, versioned for compare-and-set."""

    user_id: str
    version: int = Field(default=0, ge=0)
    entries: Dict[str, SuppressionEntry] = Field(default_factory=dict)

    @property
    def keys(self) -> List[str]:
        return sorted(self.entries)


# Request and response DTOs

class ManualPatternRequest(BaseModel):
    """Request to declare a recurring item by hand."""

    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    frequency: RecurringFrequency
    is_income: bool = False
    next_date: Optional[date] = None
    category: Optional[str] = Field(None, max_length=100)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Name must contain at least one letter or digit."""
        if not any(ch.isalnum() for ch in v):
            raise ValueError("Name must contain at least one letter or digit")
        return v.strip()


class PatternUpdateRequest(BaseModel):
    """User override of a pattern. Any field set marks the pattern as overridden."""

    frequency: Optional[RecurringFrequency] = None
    next_expected_date: Optional[date] = None
    display_name: Optional[str] = Field(None, min_length=1, max_length=200)
    average_amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)


class ReviewRequest(BaseModel):
    """Bulk confirm or deny of suggestions."""

    ids: List[str] = Field(..., min_length=1, max_length=200)
    action: ReviewAction
    reason: Optional[DenialReason] = None


class ReviewResult(BaseModel):
    """Per-item outcome counts of a bulk review."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class DetectionSummary(BaseModel):
    """Outcome of a detection run."""

    patterns_created: int = 0
    patterns_refreshed: int = 0
    suggestions_created: int = 0
    suggestions_superseded: int = 0
    reconfirmations_requested: int = 0
    groups_considered: int = 0
    suppressed_skipped: int = 0


class RecurringOverview(BaseModel):
    """Active patterns split by direction."""

    income: List[RecurringPattern] = Field(default_factory=list)
    expenses: List[RecurringPattern] = Field(default_factory=list)
    monthly_income: Decimal = Decimal("0.00")
    monthly_expenses: Decimal = Decimal("0.00")
