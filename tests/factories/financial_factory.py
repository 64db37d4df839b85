"""
Factories for financial model testing.
"""

import factory
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence

from faker import Faker

from finpulse.models.financial import (
    Account,
    AccountType,
    PatternConfidence,
    PatternSource,
    RecurringFrequency,
    RecurringPattern,
    Transaction,
)
from finpulse.services.merchant import normalize_merchant

fake = Faker()


class AccountFactory(factory.DictFactory):
    """Factory for Account model."""

    id = factory.Sequence(lambda n: f"acc_{n:06d}")
    user_id = "user_123"
    name = factory.Faker("company")
    account_type = AccountType.CHECKING
    balance = factory.LazyFunction(lambda: Decimal(fake.random_int(min=100, max=10000)))
    currency = "USD"
    is_active = True


class TransactionFactory(factory.DictFactory):
    """Factory for Transaction model. Positive amounts are expenses."""

    id = factory.Sequence(lambda n: f"txn_{n:06d}")
    user_id = "user_123"
    account_id = "acc_000001"
    date = factory.LazyFunction(lambda: date(2024, 6, 15) - timedelta(days=fake.random_int(min=0, max=30)))
    amount = factory.LazyFunction(lambda: Decimal(fake.random_int(min=100, max=20000)) / 100)
    name = factory.Faker("company")
    merchant_name = factory.LazyAttribute(lambda obj: obj.name)
    category = None
    is_income = False
    is_exceptional = False
    ignored = False


class RecurringPatternFactory(factory.DictFactory):
    """Factory for RecurringPattern model."""

    user_id = "user_123"
    display_name = factory.Faker("company")
    normalized_merchant_key = factory.LazyAttribute(lambda obj: normalize_merchant(obj.display_name))
    frequency = RecurringFrequency.MONTHLY
    average_amount = Decimal("50.00")
    next_expected_date = date(2024, 7, 1)
    confidence = PatternConfidence.HIGH
    source = PatternSource.DETECTED
    is_income = False


def make_transaction(**kwargs) -> Transaction:
    return Transaction(**TransactionFactory(**kwargs))


def make_account(**kwargs) -> Account:
    return Account(**AccountFactory(**kwargs))


def make_pattern(**kwargs) -> RecurringPattern:
    return RecurringPattern(**RecurringPatternFactory(**kwargs))


def monthly_series(
    name: str,
    amount: str,
    dates: Sequence[date],
    user_id: str = "user_123",
    is_income: bool = False,
    category: Optional[str] = None
) -> List[Transaction]:
    """Transactions for one merchant on the given dates."""
    value = Decimal(amount)
    return [
        make_transaction(
            user_id=user_id,
            name=name,
            merchant_name=name,
            date=day,
            amount=-value if is_income else value,
            is_income=is_income,
            category=category,
        )
        for day in dates
    ]
