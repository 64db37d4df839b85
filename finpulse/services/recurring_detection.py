"""
Recurring series detection over a transaction history.

Pure functions: the detection service feeds them transactions and the
suppression list and persists what they return.
"""
import calendar
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..models.financial import (
    BillType,
    PatternAttributes,
    PatternConfidence,
    RecurringFrequency,
    Transaction,
)
from .merchant import merchant_key_for

CENTS = Decimal("0.01")

# Inclusive bounds on the median gap, in days
FREQUENCY_GAP_RANGES: Tuple[Tuple[RecurringFrequency, float, float], ...] = (
    (RecurringFrequency.WEEKLY, 5, 10),
    (RecurringFrequency.BIWEEKLY, 12, 18),
    (RecurringFrequency.MONTHLY, 25, 35),
    (RecurringFrequency.QUARTERLY, 80, 100),
    (RecurringFrequency.YEARLY, 350, 380),
)

# Step size of each frequency: (days, months). Exactly one is non-zero.
FREQUENCY_STEP: Dict[RecurringFrequency, Tuple[int, int]] = {
    RecurringFrequency.WEEKLY: (7, 0),
    RecurringFrequency.BIWEEKLY: (14, 0),
    RecurringFrequency.MONTHLY: (0, 1),
    RecurringFrequency.QUARTERLY: (0, 3),
    RecurringFrequency.YEARLY: (0, 12),
}

# Occurrences per year, for normalising amounts to a monthly figure
OCCURRENCES_PER_YEAR: Dict[RecurringFrequency, int] = {
    RecurringFrequency.WEEKLY: 52,
    RecurringFrequency.BIWEEKLY: 26,
    RecurringFrequency.MONTHLY: 12,
    RecurringFrequency.QUARTERLY: 4,
    RecurringFrequency.YEARLY: 1,
}

HIGH_MIN_OCCURRENCES = 4
HIGH_MAX_GAP_DISPERSION = 0.15
MEDIUM_MIN_OCCURRENCES = 3
MEDIUM_MAX_GAP_DISPERSION = 0.35

DEFAULT_AMOUNT_TOLERANCE = 0.15

_BILL_TYPE_KEYWORDS: Tuple[Tuple[BillType, Tuple[str, ...]], ...] = (
    (BillType.HOUSING, ("rent", "mortgage", "housing")),
    (BillType.UTILITY, ("utilit", "electric", "water", "internet", "phone", "telecom")),
    (BillType.INSURANCE, ("insurance",)),
    (BillType.LOAN, ("loan", "credit card payment")),
    (BillType.SUBSCRIPTION, ("entertainment", "subscription", "streaming", "software", "gym", "fitness")),
)


class DetectedSeries(PatternAttributes):
    """A recurring series found in the history, before it is persisted."""

    bill_type: BillType
    detection_reason: str
    amounts_similar: bool
    gap_dispersion: float


@dataclass
class DetectionResult:
    """Series split by whether they clear the auto-confirm bar."""

    patterns: List[DetectedSeries] = field(default_factory=list)
    suggestions: List[DetectedSeries] = field(default_factory=list)
    groups_considered: int = 0
    suppressed_skipped: int = 0

    @property
    def income(self) -> List[DetectedSeries]:
        return [s for s in self.patterns + self.suggestions if s.is_income]

    @property
    def expenses(self) -> List[DetectedSeries]:
        return [s for s in self.patterns + self.suggestions if not s.is_income]


def add_months(start: date, months: int) -> date:
    """Shift by calendar months, clamping to the last day of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start: date, frequency: RecurringFrequency, steps: int = 1) -> date:
    """Date ``steps`` intervals after ``start``."""
    days, months = FREQUENCY_STEP[frequency]
    if months:
        return add_months(start, months * steps)
    return start + timedelta(days=days * steps)


def roll_forward(last: date, frequency: RecurringFrequency, today: date) -> date:
    """First occurrence after ``last`` that is on or after ``today``."""
    steps = 1
    candidate = advance(last, frequency, steps)
    while candidate < today:
        steps += 1
        candidate = advance(last, frequency, steps)
    return candidate


def occurrences_between(
    anchor: date,
    frequency: RecurringFrequency,
    start: date,
    end: date
) -> List[date]:
    """Occurrences of a series anchored at ``anchor`` falling in ``[start, end]``."""
    dates = []
    steps = 0
    current = anchor
    while current <= end:
        if current >= start:
            dates.append(current)
        steps += 1
        current = advance(anchor, frequency, steps)
    return dates


def monthly_equivalent(amount: Decimal, frequency: RecurringFrequency) -> Decimal:
    return (amount * OCCURRENCES_PER_YEAR[frequency] / 12).quantize(CENTS, rounding=ROUND_HALF_UP)


def infer_frequency(dates: Sequence[date]) -> Tuple[Optional[RecurringFrequency], float]:
    """
    Frequency from the median gap between consecutive dates.

    Returns ``(None, median_gap)`` when the gap matches no known frequency.
    Raises ValueError when fewer than two dates are given.
    """
    if len(dates) < 2:
        raise ValueError("At least two dates are required to infer a frequency")

    ordered = sorted(dates)
    gaps = np.diff([d.toordinal() for d in ordered])
    median_gap = float(np.median(gaps))
    for frequency, low, high in FREQUENCY_GAP_RANGES:
        if low <= median_gap <= high:
            return frequency, median_gap
    return None, median_gap


def gap_dispersion(dates: Sequence[date]) -> float:
    """Population standard deviation of the gaps relative to the median gap."""
    gaps = np.diff(sorted(d.toordinal() for d in dates))
    median_gap = float(np.median(gaps))
    if median_gap <= 0:
        return float("inf")
    return float(np.std(gaps)) / median_gap


def score_confidence(occurrences: int, dispersion: float, amounts_similar: bool = True) -> PatternConfidence:
    """
    Confidence from occurrence count and timing regularity.

    ``high`` needs 4+ occurrences with gaps within 15% of the median gap,
    ``medium`` 3+ occurrences within 35%. Irregular amounts cost one level.
    For a fixed dispersion the result never drops as occurrences grow.
    """
    if occurrences >= HIGH_MIN_OCCURRENCES and dispersion <= HIGH_MAX_GAP_DISPERSION:
        confidence = PatternConfidence.HIGH
    elif occurrences >= MEDIUM_MIN_OCCURRENCES and dispersion <= MEDIUM_MAX_GAP_DISPERSION:
        confidence = PatternConfidence.MEDIUM
    else:
        confidence = PatternConfidence.LOW

    if not amounts_similar:
        if confidence == PatternConfidence.HIGH:
            return PatternConfidence.MEDIUM
        return PatternConfidence.LOW
    return confidence


def amounts_are_similar(amounts: Sequence[Decimal], tolerance: float) -> bool:
    """Every amount lies within ``tolerance`` of the average."""
    values = np.array([float(a) for a in amounts])
    mean = values.mean()
    if mean == 0:
        return bool(np.all(values == 0))
    return bool(np.all(np.abs(values - mean) / mean <= tolerance))


def classify_bill_type(category: Optional[str], name: str, is_income: bool) -> BillType:
    if is_income:
        return BillType.INCOME
    haystack = f"{category or ''} {name}".lower().replace("_", " ")
    for bill_type, keywords in _BILL_TYPE_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return bill_type
    return BillType.BILL


def group_by_merchant(
    transactions: Iterable[Transaction],
    suppressed: Set[str]
) -> Tuple[Dict[str, List[Transaction]], int]:
    """Group by merchant key, dropping suppressed keys. Returns groups and the suppressed count."""
    groups: Dict[str, List[Transaction]] = defaultdict(list)
    skipped_keys = set()
    for tx in transactions:
        if tx.ignored:
            continue
        key = merchant_key_for(tx)
        if not key:
            continue
        if key in suppressed:
            skipped_keys.add(key)
            continue
        groups[key].append(tx)
    return dict(groups), len(skipped_keys)


def _dominant_direction(transactions: List[Transaction]) -> Tuple[bool, List[Transaction]]:
    inflows = [tx for tx in transactions if tx.is_inflow]
    outflows = [tx for tx in transactions if not tx.is_inflow]
    if len(inflows) > len(outflows):
        return True, inflows
    return False, outflows


def analyze_group(
    key: str,
    transactions: List[Transaction],
    today: date,
    amount_tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
    require_similar_amounts: bool = False
) -> Optional[DetectedSeries]:
    """Turn one merchant group into a series, or None when it is not recurring."""
    is_income, members = _dominant_direction(transactions)
    if len(members) < 2:
        return None

    members = sorted(members, key=lambda tx: (tx.date, tx.id))
    dates = [tx.date for tx in members]
    if len(set(dates)) < 2:
        return None

    amounts = [abs(tx.amount) for tx in members]
    similar = amounts_are_similar(amounts, amount_tolerance)
    if require_similar_amounts and not similar:
        return None

    frequency, median_gap = infer_frequency(dates)
    if frequency is None:
        return None

    dispersion = gap_dispersion(dates)
    confidence = score_confidence(len(members), dispersion, similar)

    average = (sum(amounts, Decimal("0")) / len(amounts)).quantize(CENTS, rounding=ROUND_HALF_UP)
    latest = members[-1]
    categories = Counter(tx.category for tx in members if tx.category)
    category = categories.most_common(1)[0][0] if categories else None
    typical_day = None
    if FREQUENCY_STEP[frequency][1]:
        typical_day = Counter(d.day for d in dates).most_common(1)[0][0]

    reason = (
        f"Seen {len(members)} times, {frequency.value} "
        f"(median gap {median_gap:g} days)"
    )
    if not similar:
        reason += ", amounts vary"

    return DetectedSeries(
        normalized_merchant_key=key,
        display_name=latest.label or key,
        frequency=frequency,
        average_amount=average,
        next_expected_date=roll_forward(dates[-1], frequency, today),
        last_seen_date=dates[-1],
        first_seen_date=dates[0],
        typical_day=typical_day,
        is_income=is_income,
        category=category,
        confidence=confidence,
        occurrence_count=len(members),
        source_transaction_ids=[tx.id for tx in members],
        bill_type=classify_bill_type(category, latest.label, is_income),
        detection_reason=reason,
        amounts_similar=similar,
        gap_dispersion=dispersion,
    )


def detect_recurring(
    transactions: Iterable[Transaction],
    today: date,
    suppressed: Optional[Set[str]] = None,
    amount_tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
    require_similar_amounts: bool = False
) -> DetectionResult:
    """
    Find recurring series in a transaction history.

    High-confidence series are returned as patterns, everything else as
    suggestions for review. Output is ordered by merchant key so repeated
    runs over the same input are identical.
    """
    groups, suppressed_count = group_by_merchant(transactions, suppressed or set())
    result = DetectionResult(groups_considered=len(groups), suppressed_skipped=suppressed_count)

    for key in sorted(groups):
        series = analyze_group(
            key,
            groups[key],
            today,
            amount_tolerance=amount_tolerance,
            require_similar_amounts=require_similar_amounts
        )
        if series is None:
            continue
        if series.confidence == PatternConfidence.HIGH:
            result.patterns.append(series)
        else:
            result.suggestions.append(series)

    return result
