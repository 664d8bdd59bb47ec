from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from mizan.currency_conversion import round_money
from mizan.logging_config import get_logger
from mizan.models import ZERO, Account, is_locked, locked_through, utcnow
from mizan.repositories import AccountNotFound, AccountStore, TransactionStore

logger = get_logger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")
ADJUSTMENT_DESCRIPTION = "Reconciliation adjustment"


class PeriodLocked(ValueError):
    """Raised when a write targets a date inside a reconciled period."""

    def __init__(self, account_id: int, txn_date: date, locked_through: date) -> None:
        super().__init__(
            f"This period is locked: account {account_id} is reconciled through "
            f"{locked_through.isoformat()}, cannot write {txn_date.isoformat()}."
        )
        self.account_id = account_id
        self.txn_date = txn_date
        self.locked_through = locked_through


@dataclass(frozen=True)
class ReconciliationResult:
    account_id: int
    adjustment_created: bool
    delta: Decimal
    system_balance: Decimal
    reconciled_at: datetime
    adjustment_id: Optional[int] = None


def ensure_period_open(account: Account, txn_date: date, is_adjustment: bool = False) -> None:
    """Reject a non-adjustment write dated on or before the watermark day."""
    if is_adjustment:
        return
    if is_locked(account, txn_date):
        raise PeriodLocked(account.id, txn_date, locked_through(account))


@dataclass
class ReconciliationEngine:
    accounts: AccountStore
    transactions: TransactionStore
    tolerance: Decimal = DEFAULT_TOLERANCE
    clock: Callable[[], datetime] = field(default=utcnow)

    def system_balance(self, account: Account, through: date) -> Decimal:
        """Opening balance plus every signed transaction through ``through``."""
        movements = self.transactions.list_transactions(
            account.workspace_id, date_lte=through, account_id=account.id
        )
        return account.opening_balance.amount + sum(
            (txn.base_amount.amount for txn in movements), ZERO
        )

    def reconcile(self, account_id: int, asserted_balance: Decimal | int | float | str) -> ReconciliationResult:
        asserted = _coerce_amount(asserted_balance)
        account = self.accounts.get_account(account_id)
        if account.is_archived:
            raise AccountNotFound(f"Account {account_id} is archived.")

        now = self.clock()
        system_balance = self.system_balance(account, now.date())
        delta = asserted - system_balance

        adjustment_id = None
        if abs(delta) > self.tolerance:
            adjustment = self.transactions.create_adjustment_transaction(
                account,
                "income" if delta > 0 else "expense",
                round_money(abs(delta)),
                now.date(),
                ADJUSTMENT_DESCRIPTION,
            )
            adjustment_id = adjustment.id

        watermark = self.accounts.set_reconciled_at(account.id, now)
        logger.info(
            "Account reconciled",
            extra={
                "account_id": account.id,
                "adjustment_created": adjustment_id is not None,
                "reconciled_at": watermark,
            },
        )
        return ReconciliationResult(
            account_id=account.id,
            adjustment_created=adjustment_id is not None,
            delta=delta,
            system_balance=system_balance,
            reconciled_at=watermark,
            adjustment_id=adjustment_id,
        )


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid balance: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError("Balance must be a finite number.")
    return value
