from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from mizan.currency_conversion import FxRateResolver, convert, normalize_currency, round_money
from mizan.models import UNCATEGORIZED, ZERO, Account, TransactionEvent
from mizan.report_windows import balance_history_start, iter_days, month_start
from mizan.repositories import (
    AccountNotFound,
    AccountStore,
    LedgerStore,
    TransactionStore,
    WorkspaceStore,
)


@dataclass(frozen=True)
class AccountBalance:
    account_id: int
    name: str
    currency: str
    balance: Decimal
    last_reconciled_at: Optional[datetime] = None


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    value: Decimal


@dataclass(frozen=True)
class DashboardStats:
    currency: str
    has_accounts: bool
    has_transactions: bool
    total_balance: Decimal
    reserved_total: Decimal
    available_cash: Decimal
    monthly_income: Decimal
    monthly_expenses: Decimal
    expenses_by_category: list[CategoryTotal]
    accounts: list[AccountBalance]


@dataclass(frozen=True)
class BalancePoint:
    date: date
    balance: Decimal


@dataclass(frozen=True)
class BalanceHistory:
    currency: str
    range: str
    points: list[BalancePoint]


@dataclass
class DashboardService:
    workspaces: WorkspaceStore
    accounts: AccountStore
    transactions: TransactionStore
    ledger: LedgerStore
    resolver: FxRateResolver
    today: Callable[[], date] = date.today

    def account_balances(self, workspace_id: int) -> list[AccountBalance]:
        self.workspaces.get_workspace(workspace_id)
        accounts = self.accounts.list_accounts(workspace_id, exclude_archived=True)
        movements = self.transactions.list_transactions(workspace_id, date_lte=date.max)
        return _native_balances(accounts, movements)

    def stats(self, workspace_id: int) -> DashboardStats:
        workspace = self.workspaces.get_workspace(workspace_id)
        currency = normalize_currency(workspace.currency)
        accounts = self.accounts.list_accounts(workspace_id, exclude_archived=True)
        movements = self.transactions.list_transactions(workspace_id, date_lte=date.max)
        ledger_entries = self.ledger.list_ledger_entries(workspace_id)

        currencies = {currency}
        currencies.update(account.base_currency for account in accounts)
        currencies.update(entry.amount.currency for entry in ledger_entries)
        currencies.update(txn.base_amount.currency for txn in movements)
        rates = self.resolver.resolve_many(currencies, currency)

        def to_workspace(amount: Decimal, source_currency: str) -> Decimal:
            return convert(amount, rates[normalize_currency(source_currency)])

        native = _native_totals(accounts, movements)
        total_balance = sum(
            (to_workspace(native[account.id], account.base_currency) for account in accounts), ZERO
        )
        reserved_total = sum(
            (
                to_workspace(entry.amount.amount, entry.amount.currency) * entry.reserve_sign
                for entry in ledger_entries
            ),
            ZERO,
        )

        current_month = month_start(self.today())
        monthly_income = ZERO
        monthly_expenses = ZERO
        by_category: dict[str, Decimal] = {}
        for txn in movements:
            if month_start(txn.date) != current_month:
                continue
            converted = abs(to_workspace(txn.base_amount.amount, txn.base_amount.currency))
            if txn.type == "income":
                monthly_income += converted
            elif txn.type == "expense":
                monthly_expenses += converted
                name = txn.category or UNCATEGORIZED
                by_category[name] = by_category.get(name, ZERO) + converted

        expenses_by_category = sorted(
            (CategoryTotal(name=name, value=round_money(value)) for name, value in by_category.items()),
            key=lambda item: item.value,
            reverse=True,
        )
        return DashboardStats(
            currency=currency,
            has_accounts=bool(accounts),
            has_transactions=bool(movements),
            total_balance=round_money(total_balance),
            reserved_total=round_money(reserved_total),
            available_cash=round_money(total_balance - reserved_total),
            monthly_income=round_money(monthly_income),
            monthly_expenses=round_money(monthly_expenses),
            expenses_by_category=expenses_by_category,
            accounts=_native_balances(accounts, movements),
        )

    def balance_history(
        self,
        workspace_id: int,
        range_key: str = "30d",
        account_id: Optional[int] = None,
    ) -> BalanceHistory:
        """Daily closing balance from the range start through today.

        A single account is reported in its own currency; the workspace-wide
        series is converted into the workspace currency.
        """
        workspace = self.workspaces.get_workspace(workspace_id)
        today = self.today()
        start = balance_history_start(range_key, today)

        if account_id is not None:
            account = self.accounts.get_account(account_id)
            if account.workspace_id != workspace_id:
                raise AccountNotFound(f"Account {account_id} not found.")
            accounts = [account]
            currency = normalize_currency(account.base_currency)
        else:
            accounts = self.accounts.list_accounts(workspace_id, exclude_archived=True)
            currency = normalize_currency(workspace.currency)

        movements = self.transactions.list_transactions(
            workspace_id, date_lte=today, account_id=account_id
        )
        currencies = {currency}
        currencies.update(account.base_currency for account in accounts)
        currencies.update(txn.base_amount.currency for txn in movements)
        rates = self.resolver.resolve_many(currencies, currency)

        def to_series(amount: Decimal, source_currency: str) -> Decimal:
            return convert(amount, rates[normalize_currency(source_currency)])

        running = sum(
            (to_series(account.opening_balance.amount, account.base_currency) for account in accounts),
            ZERO,
        )
        daily_change: dict[date, Decimal] = {}
        for txn in movements:
            amount = to_series(txn.base_amount.amount, txn.base_amount.currency)
            if txn.date < start:
                running += amount
            else:
                daily_change[txn.date] = daily_change.get(txn.date, ZERO) + amount

        points: list[BalancePoint] = []
        for day in iter_days(start, today):
            running += daily_change.get(day, ZERO)
            points.append(BalancePoint(date=day, balance=round_money(running)))
        return BalanceHistory(currency=currency, range=range_key.strip().lower(), points=points)


def _native_totals(
    accounts: list[Account], movements: list[TransactionEvent]
) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = {account.id: account.opening_balance.amount for account in accounts}
    for txn in movements:
        if txn.account_id in totals:
            totals[txn.account_id] += txn.base_amount.amount
    return totals


def _native_balances(
    accounts: list[Account], movements: list[TransactionEvent]
) -> list[AccountBalance]:
    totals = _native_totals(accounts, movements)
    return [
        AccountBalance(
            account_id=account.id,
            name=account.name,
            currency=account.base_currency,
            balance=round_money(totals[account.id]),
            last_reconciled_at=account.last_reconciled_at,
        )
        for account in accounts
    ]
