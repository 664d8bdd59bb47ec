from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

ZERO = Decimal("0")

TRANSACTION_TYPES = {"income", "expense", "transfer"}
LEDGER_TYPES = {"fund", "spend", "adjust"}
RESERVING_LEDGER_TYPES = {"fund", "adjust"}

UNCATEGORIZED = "Uncategorized"
OTHER_SUBCATEGORY = "Other"


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class FxRate:
    base: str
    quote: str
    rate: Decimal
    fetched_at: datetime
    expires_at: datetime
    source: str

    def is_fresh(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class Workspace:
    id: int
    name: str
    currency: str


@dataclass(frozen=True)
class Account:
    id: int
    workspace_id: int
    base_currency: str
    opening_balance: Money
    name: str = ""
    is_archived: bool = False
    last_reconciled_at: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionEvent:
    id: int
    workspace_id: int
    account_id: int
    date: date
    type: str
    original_amount: Money
    base_amount: Money
    category: Optional[str] = None
    subcategory: Optional[str] = None
    is_adjustment: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class LedgerEvent:
    id: int
    workspace_id: int
    budget_id: int
    date: date
    type: str
    amount: Money

    @property
    def reserve_sign(self) -> int:
        return 1 if self.type in RESERVING_LEDGER_TYPES else -1


@dataclass
class ReportBucket:
    label: str
    income: Decimal = ZERO
    expenses: Decimal = ZERO
    net: Decimal = ZERO
    balance: Decimal = ZERO
    safe_cash: Decimal = ZERO


@dataclass(frozen=True)
class SubCategoryStat:
    name: str
    value: Decimal


@dataclass(frozen=True)
class CategoryStat:
    name: str
    value: Decimal
    subcategories: list[SubCategoryStat] = field(default_factory=list)


@dataclass(frozen=True)
class ReportSummary:
    total_income: Decimal
    total_expenses: Decimal
    gross_flow: Decimal
    total_funding: Decimal
    net_flow: Decimal


@dataclass(frozen=True)
class Report:
    summary: ReportSummary
    income_breakdown: list[CategoryStat]
    expense_breakdown: list[CategoryStat]
    trends: list[ReportBucket]
    currency: str
    is_daily: bool
    start: date
    end: date


def utcnow() -> datetime:
    """Naive UTC timestamp; the stores persist timestamps without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def locked_through(account: Account) -> Optional[date]:
    """Last calendar day closed by the account's reconciliation watermark."""
    if account.last_reconciled_at is None:
        return None
    return account.last_reconciled_at.date()


def is_locked(account: Account, txn_date: date) -> bool:
    frozen = locked_through(account)
    return frozen is not None and txn_date <= frozen
