"""
Merchant baselines and anomaly detection.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from ..config import get_settings
from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import AnomalyStore, BaselineStore, PatternStore, PreferencesStore, TransactionFeed
from ..models.anomaly import (
    AnomalyDetectionReport,
    AnomalyFeedback,
    AnomalySeverity,
    AnomalyStatus,
    AnomalyStatusUpdate,
    AnomalyType,
    BaselineSummary,
    DetectedAnomaly,
    MerchantBaseline,
)
from ..models.financial import RecurringPattern, Transaction
from ..models.preferences import AnomalyPreferences
from ..utils.exceptions import NotFoundError
from .locks import UserLockRegistry, get_lock_registry
from .merchant import merchant_key_for

logger = structlog.get_logger()

BASELINE_JOB = "anomaly_baselines"

# Each confirmed false positive widens the merchant's band by this many std devs
FALSE_POSITIVE_WIDENING = 0.5
MAX_FALSE_POSITIVE_WIDENING = 2.0

# Charges within this many days, counted against the baseline rate
SPIKE_WINDOW_DAYS = 7
SPIKE_MIN_CHARGES = 3

# New-merchant charges this many times over the threshold are critical
NEW_MERCHANT_CRITICAL_MULTIPLE = 5

# Zero-variance baselines: relative difference above which a change is critical
ZERO_VARIANCE_CRITICAL_RATIO = 1.0


@dataclass(frozen=True)
class OutlierVerdict:
    severity: AnomalySeverity
    deviation: Optional[float]


def _average_gap(dates: pd.Series) -> float:
    gaps = pd.to_datetime(dates).diff().dt.days.dropna()
    return float(gaps.mean()) if len(gaps) else np.nan


def _spending(transactions: Iterable[Transaction]) -> List[Transaction]:
    return [
        tx for tx in transactions
        if not tx.is_exceptional and not tx.ignored and not tx.is_inflow
    ]


def build_baselines(
    user_id: str,
    transactions: Iterable[Transaction],
    false_positive_counts: Optional[Dict[str, int]] = None
) -> List[MerchantBaseline]:
    """
    Per-merchant statistics over outgoing, non-exceptional, non-ignored spend.

    Standard deviation is the population one, so a merchant seen once has a
    zero-variance baseline and no average gap between charges.
    """
    spend = _spending(transactions)
    if not spend:
        return []

    df = pd.DataFrame([
        {
            "key": merchant_key_for(tx),
            "label": tx.label,
            "amount": float(tx.amount),
            "date": tx.date,
            "category": tx.category,
        }
        for tx in spend
    ])
    df = df[df["key"] != ""].sort_values(["key", "date"])
    if df.empty:
        return []

    stats = df.groupby("key").agg(
        mean_amount=("amount", "mean"),
        std_dev_amount=("amount", lambda s: float(np.std(s.to_numpy()))),
        min_amount=("amount", "min"),
        max_amount=("amount", "max"),
        median_amount=("amount", "median"),
        transaction_count=("amount", "count"),
        first_transaction_date=("date", "min"),
        last_transaction_date=("date", "max"),
        merchant_name=("label", "last"),
    )
    categories = df.dropna(subset=["category"]).groupby("key")["category"].agg(
        lambda s: s.value_counts().index[0]
    )

    gaps = df.groupby("key")["date"].agg(_average_gap)

    counts = false_positive_counts or {}
    now = datetime.utcnow()
    baselines = []
    for key, row in stats.iterrows():
        gap = gaps.get(key)
        baselines.append(MerchantBaseline(
            user_id=user_id,
            normalized_merchant_key=key,
            merchant_name=row["merchant_name"] or key,
            mean_amount=round(float(row["mean_amount"]), 4),
            std_dev_amount=round(float(row["std_dev_amount"]), 4),
            min_amount=float(row["min_amount"]),
            max_amount=float(row["max_amount"]),
            median_amount=float(row["median_amount"]),
            transaction_count=int(row["transaction_count"]),
            typical_category=categories.get(key),
            first_transaction_date=row["first_transaction_date"],
            last_transaction_date=row["last_transaction_date"],
            average_days_between=round(float(gap), 2) if gap is not None and gap > 0 else None,
            last_calculated=now,
            false_positive_count=counts.get(key, 0),
        ))
    return baselines


def widened_thresholds(baseline: MerchantBaseline, preferences: AnomalyPreferences) -> Tuple[float, float]:
    """Warning and critical multiples after false-positive feedback."""
    widening = min(baseline.false_positive_count * FALSE_POSITIVE_WIDENING, MAX_FALSE_POSITIVE_WIDENING)
    return preferences.sensitivity + widening, preferences.critical_multiple + widening


def evaluate_outlier(
    amount: float,
    baseline: MerchantBaseline,
    preferences: AnomalyPreferences
) -> Optional[OutlierVerdict]:
    """
    Judge an amount against a baseline.

    With spread, an amount is an outlier beyond ``k`` standard deviations and
    critical beyond the critical multiple. A zero-variance baseline treats
    any different amount as an outlier.
    """
    deviation = abs(amount - baseline.mean_amount)
    warning_k, critical_k = widened_thresholds(baseline, preferences)

    if baseline.std_dev_amount > 0:
        sigmas = deviation / baseline.std_dev_amount
        if sigmas <= warning_k:
            return None
        severity = AnomalySeverity.CRITICAL if sigmas > critical_k else AnomalySeverity.WARNING
        return OutlierVerdict(severity=severity, deviation=round(sigmas, 2))

    if round(deviation, 2) == 0:
        return None
    ratio = deviation / baseline.mean_amount if baseline.mean_amount else float("inf")
    severity = AnomalySeverity.CRITICAL if ratio > ZERO_VARIANCE_CRITICAL_RATIO else AnomalySeverity.WARNING
    return OutlierVerdict(severity=severity, deviation=None)


def _money(value: float) -> Decimal:
    return Decimal(str(round(value, 2)))


def detect_anomalies(
    user_id: str,
    recent: List[Transaction],
    baselines: Dict[str, MerchantBaseline],
    patterns: List[RecurringPattern],
    history: List[Transaction],
    today: date,
    preferences: AnomalyPreferences
) -> List[DetectedAnomaly]:
    """
    Flag recent transactions and overdue recurring charges.

    ``recent`` is the window under inspection, ``history`` everything fetched
    (used to find the payment that satisfies a recurring pattern).
    """
    anomalies: List[DetectedAnomaly] = []
    patterns_by_key = {p.normalized_merchant_key: p for p in patterns if not p.is_income}
    candidates = sorted(_spending(recent), key=lambda tx: (tx.date, tx.id))

    for index, tx in enumerate(candidates):
        key = merchant_key_for(tx)
        if not key:
            continue
        amount = float(tx.amount)
        baseline = baselines.get(key)

        if baseline is None:
            if preferences.detect_new_merchants and amount >= preferences.new_merchant_amount_threshold:
                large = (
                    preferences.new_merchant_amount_threshold > 0
                    and amount >= preferences.new_merchant_amount_threshold * NEW_MERCHANT_CRITICAL_MULTIPLE
                )
                anomalies.append(DetectedAnomaly(
                    user_id=user_id,
                    transaction_id=tx.id,
                    anomaly_type=AnomalyType.NEW_MERCHANT,
                    severity=AnomalySeverity.CRITICAL if large else AnomalySeverity.WARNING,
                    merchant_key=key,
                    merchant_name=tx.label,
                    amount=tx.amount,
                    title=f"First purchase at {tx.label}",
                    description=f"This ${amount:.2f} charge is your first at this merchant in the baseline window.",
                ))
        elif preferences.detect_amount_outliers:
            verdict = evaluate_outlier(amount, baseline, preferences)
            if verdict is not None:
                direction = "higher" if amount > baseline.mean_amount else "lower"
                anomalies.append(DetectedAnomaly(
                    user_id=user_id,
                    transaction_id=tx.id,
                    anomaly_type=AnomalyType.AMOUNT_OUTLIER,
                    severity=verdict.severity,
                    merchant_key=key,
                    merchant_name=tx.label,
                    amount=tx.amount,
                    expected_amount=_money(baseline.mean_amount),
                    deviation=verdict.deviation,
                    title=f"Unusual charge from {tx.label}",
                    description=(
                        f"This ${amount:.2f} charge is {direction} than your typical "
                        f"${baseline.mean_amount:.2f} at this merchant."
                    ),
                ))

        if preferences.detect_duplicates:
            window = timedelta(days=preferences.duplicate_window_days)
            twins = [
                other for other in candidates[:index]
                if other.amount == tx.amount
                and merchant_key_for(other) == key
                and tx.date - other.date <= window
            ]
            if twins:
                anomalies.append(DetectedAnomaly(
                    user_id=user_id,
                    transaction_id=tx.id,
                    anomaly_type=AnomalyType.DUPLICATE_CHARGE,
                    severity=AnomalySeverity.WARNING,
                    merchant_key=key,
                    merchant_name=tx.label,
                    amount=tx.amount,
                    title=f"Possible duplicate charge from {tx.label}",
                    description=(
                        f"Found {len(twins) + 1} identical charges of ${amount:.2f} "
                        f"within {preferences.duplicate_window_days} days."
                    ),
                ))

        pattern = patterns_by_key.get(key)
        if preferences.detect_price_increases and pattern is not None and pattern.average_amount > 0:
            increase = float(tx.amount / pattern.average_amount) - 1
            if increase > preferences.price_increase_threshold:
                anomalies.append(DetectedAnomaly(
                    user_id=user_id,
                    transaction_id=tx.id,
                    pattern_id=pattern.id,
                    anomaly_type=AnomalyType.PRICE_INCREASE,
                    severity=AnomalySeverity.WARNING,
                    merchant_key=key,
                    merchant_name=pattern.display_name,
                    amount=tx.amount,
                    expected_amount=pattern.average_amount,
                    deviation=round(increase, 4),
                    title=f"{pattern.display_name} went up",
                    description=(
                        f"Charged ${amount:.2f} against a usual ${pattern.average_amount:.2f} "
                        f"({increase * 100:.0f}% increase)."
                    ),
                ))

    if preferences.detect_frequency_spikes:
        anomalies.extend(detect_frequency_spikes(user_id, history, baselines, today, preferences))

    if preferences.detect_missed_recurring:
        anomalies.extend(detect_missed_recurring(user_id, patterns, history, today, preferences))

    return anomalies


def detect_frequency_spikes(
    user_id: str,
    history: List[Transaction],
    baselines: Dict[str, MerchantBaseline],
    today: date,
    preferences: AnomalyPreferences
) -> List[DetectedAnomaly]:
    """
    Merchants charged at least three times in the last week at a multiple of
    their usual rate. One anomaly per merchant, anchored on the earliest charge.
    """
    window_start = today - timedelta(days=SPIKE_WINDOW_DAYS - 1)
    by_key: Dict[str, List[Transaction]] = {}
    for tx in _spending(history):
        key = merchant_key_for(tx)
        if key and window_start <= tx.date <= today:
            by_key.setdefault(key, []).append(tx)

    spikes = []
    for key, charges in sorted(by_key.items()):
        baseline = baselines.get(key)
        if baseline is None or not baseline.average_days_between or len(charges) < SPIKE_MIN_CHARGES:
            continue
        expected_per_week = SPIKE_WINDOW_DAYS / baseline.average_days_between
        ratio = len(charges) / expected_per_week
        if ratio < preferences.frequency_spike_ratio:
            continue

        charges.sort(key=lambda tx: (tx.date, tx.id))
        total = sum((tx.amount for tx in charges), Decimal("0"))
        spikes.append(DetectedAnomaly(
            user_id=user_id,
            transaction_id=charges[0].id,
            anomaly_type=AnomalyType.FREQUENCY_SPIKE,
            severity=(
                AnomalySeverity.CRITICAL if ratio >= preferences.frequency_spike_ratio * 2
                else AnomalySeverity.WARNING
            ),
            merchant_key=key,
            merchant_name=baseline.merchant_name,
            amount=total,
            deviation=round(ratio, 2),
            title=f"Unusual activity at {baseline.merchant_name}",
            description=(
                f"{len(charges)} charges in the past week, {ratio:.1f}x your usual rate. "
                f"Total: ${float(total):.2f}"
            ),
        ))
    return spikes


def detect_missed_recurring(
    user_id: str,
    patterns: List[RecurringPattern],
    history: List[Transaction],
    today: date,
    preferences: AnomalyPreferences
) -> List[DetectedAnomaly]:
    """Active expense patterns whose expected date passed the grace window with no matching payment."""
    grace = timedelta(days=preferences.missed_grace_days)
    seen: Dict[str, List[date]] = {}
    for tx in history:
        if tx.ignored:
            continue
        seen.setdefault(merchant_key_for(tx), []).append(tx.date)

    missed = []
    for pattern in patterns:
        if pattern.is_income:
            continue
        due = pattern.next_expected_date
        if due + grace >= today:
            continue
        dates = seen.get(pattern.normalized_merchant_key, [])
        if any(d >= due - grace for d in dates):
            continue
        missed.append(DetectedAnomaly(
            user_id=user_id,
            pattern_id=pattern.id,
            anomaly_type=AnomalyType.MISSED_RECURRING,
            severity=AnomalySeverity.WARNING,
            merchant_key=pattern.normalized_merchant_key,
            merchant_name=pattern.display_name,
            expected_amount=pattern.average_amount,
            expected_date=due,
            title=f"Expected charge from {pattern.display_name} not seen",
            description=(
                f"A {pattern.frequency.value} charge of ${pattern.average_amount:.2f} "
                f"was expected on {due.isoformat()}."
            ),
        ))
    return missed


class AnomalyService:
    """Baseline recalculation, detection passes and anomaly review."""

    def __init__(self, db: Optional[DocumentStore] = None, locks: Optional[UserLockRegistry] = None):
        self.settings = get_settings()
        self.db = db or get_document_store()
        self.locks = locks or get_lock_registry()
        self.feed = TransactionFeed(self.db)
        self.baselines = BaselineStore(self.db)
        self.anomalies = AnomalyStore(self.db)
        self.patterns = PatternStore(self.db)
        self.preferences = PreferencesStore(self.db)

    def _windows(self, today: date, preferences: AnomalyPreferences) -> Tuple[date, date]:
        recent_start = today - timedelta(days=preferences.recent_window_days - 1)
        baseline_start = recent_start - timedelta(days=self.settings.baseline_window_days)
        return baseline_start, recent_start

    async def recalculate_baselines(self, user_id: str, today: Optional[date] = None) -> BaselineSummary:
        """Rebuild baselines from the window preceding the recent inspection window."""
        today = today or date.today()
        async with self.locks.hold(user_id, BASELINE_JOB):
            preferences = await self.preferences.get_preferences(user_id)
            summary, _, _ = await self._rebuild(user_id, today, preferences.anomaly)
        return summary

    async def _rebuild(
        self,
        user_id: str,
        today: date,
        preferences: AnomalyPreferences,
        persist: bool = True
    ) -> Tuple[BaselineSummary, List[Transaction], List[MerchantBaseline]]:
        baseline_start, recent_start = self._windows(today, preferences)
        history = await self.feed.fetch_transactions(
            user_id, baseline_start, exclude_exceptional=True, exclude_ignored=True
        )
        prior = [tx for tx in history if tx.date < recent_start]

        previous = await self.baselines.get_baselines(user_id)
        carried = {key: b.false_positive_count for key, b in previous.items() if b.false_positive_count}
        baselines = build_baselines(user_id, prior, carried)
        if persist:
            await self.baselines.save_baselines(user_id, baselines)

        logger.info(
            "Merchant baselines recalculated",
            user_id=user_id,
            persisted=persist,
            baselines=len(baselines),
            transactions=len(prior)
        )
        summary = BaselineSummary(
            baselines=len(baselines),
            transactions_used=len(prior),
            window_start=baseline_start,
            window_end=recent_start - timedelta(days=1),
        )
        return summary, history, baselines

    async def run_detection(self, user_id: str, today: Optional[date] = None, save: bool = True) -> AnomalyDetectionReport:
        """
        Refresh baselines, flag recent activity and store new anomalies.

        With ``save`` False nothing is written, baselines included.
        """
        today = today or date.today()
        async with self.locks.hold(user_id, BASELINE_JOB):
            preferences = (await self.preferences.get_preferences(user_id)).anomaly
            _, history, baselines = await self._rebuild(user_id, today, preferences, persist=save)
            _, recent_start = self._windows(today, preferences)
            recent = [tx for tx in history if recent_start <= tx.date <= today]

            detected = detect_anomalies(
                user_id,
                recent=recent,
                baselines={b.normalized_merchant_key: b for b in baselines},
                patterns=await self.patterns.get_active_patterns(user_id),
                history=history,
                today=today,
                preferences=preferences,
            )
            # Stored anomalies are keyed by their dedup key
            found = [anomaly.model_copy(update={"id": anomaly.dedup_key}) for anomaly in detected]

            report = AnomalyDetectionReport(anomalies=found, transactions_checked=len(recent))
            if save and found:
                result = await self.anomalies.save_anomalies(found)
                report.saved = result.saved
                report.duplicates = result.duplicates

        logger.info(
            "Anomaly detection completed",
            user_id=user_id,
            checked=report.transactions_checked,
            found=len(found),
            saved=report.saved,
            duplicates=report.duplicates
        )
        return report

    async def list_anomalies(
        self,
        user_id: str,
        status: Optional[AnomalyStatus] = None,
        limit: Optional[int] = None
    ) -> List[DetectedAnomaly]:
        return await self.anomalies.list_anomalies(user_id, status=status, limit=limit)

    async def update_status(self, user_id: str, anomaly_id: str, update: AnomalyStatusUpdate) -> DetectedAnomaly:
        """
        Record the user's verdict. Dismissing as expected marks a false
        positive and widens that merchant's band on later passes.
        """
        anomaly = await self.anomalies.get_anomaly(user_id, anomaly_id)
        if anomaly is None:
            raise NotFoundError(resource_type="anomaly", resource_id=anomaly_id)

        anomaly.status = update.status
        if update.feedback is not None:
            anomaly.user_feedback = update.feedback
        anomaly.reviewed_at = datetime.utcnow()

        newly_false_positive = (
            update.status == AnomalyStatus.DISMISSED
            and anomaly.user_feedback == AnomalyFeedback.EXPECTED
            and not anomaly.false_positive
        )
        if newly_false_positive:
            anomaly.false_positive = True

        await self.anomalies.update_anomaly(anomaly)

        if newly_false_positive and anomaly.merchant_key:
            await self.baselines.record_false_positive(user_id, anomaly.merchant_key)

        logger.info(
            "Anomaly status updated",
            user_id=user_id,
            anomaly_id=anomaly_id,
            status=anomaly.status.value,
            false_positive=anomaly.false_positive
        )
        return anomaly


def get_anomaly_service() -> AnomalyService:
    """Anomaly service bound to the configured document store."""
    return AnomalyService()
