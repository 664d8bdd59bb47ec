from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from mizan.currency_conversion import FxRateResolver, convert, normalize_currency, round_money
from mizan.logging_config import get_logger
from mizan.models import (
    OTHER_SUBCATEGORY,
    UNCATEGORIZED,
    ZERO,
    CategoryStat,
    LedgerEvent,
    Report,
    ReportBucket,
    ReportSummary,
    SubCategoryStat,
    TransactionEvent,
)
from mizan.report_windows import DEFAULT_EPOCH, ReportWindow, resolve_window
from mizan.repositories import AccountStore, LedgerStore, TransactionStore, WorkspaceStore

logger = get_logger(__name__)


@dataclass
class _CategoryTotals:
    value: Decimal = ZERO
    subcategories: dict[str, Decimal] = field(default_factory=dict)

    def add(self, subcategory: str, amount: Decimal) -> None:
        self.value += amount
        self.subcategories[subcategory] = self.subcategories.get(subcategory, ZERO) + amount


@dataclass
class ReportEngine:
    """Builds the P&L / cash trend report for a workspace."""

    workspaces: WorkspaceStore
    accounts: AccountStore
    transactions: TransactionStore
    ledger: LedgerStore
    resolver: FxRateResolver
    epoch: date = DEFAULT_EPOCH
    today: Callable[[], date] = date.today

    def build_report(
        self,
        workspace_id: int,
        window: ReportWindow | str | None = None,
        reporting_currency: Optional[str] = None,
    ) -> Report:
        workspace = self.workspaces.get_workspace(workspace_id)
        currency = normalize_currency(reporting_currency or workspace.currency)
        if not isinstance(window, ReportWindow):
            window = resolve_window(self.today(), period=window, epoch=self.epoch)

        accounts = self.accounts.list_accounts(workspace_id, exclude_archived=True)
        transactions = self.transactions.list_transactions(workspace_id, date_lte=window.end)
        ledger_entries = self.ledger.list_ledger_entries(workspace_id, date_lte=window.end)

        currencies = {currency}
        currencies.update(account.base_currency for account in accounts)
        currencies.update(entry.amount.currency for entry in ledger_entries)
        currencies.update(txn.base_amount.currency for txn in transactions)
        rates = self.resolver.resolve_many(currencies, currency)

        def to_reporting(amount: Decimal, source_currency: str) -> Decimal:
            return convert(amount, rates[normalize_currency(source_currency)])

        opening_balance = sum(
            (to_reporting(account.opening_balance.amount, account.base_currency) for account in accounts),
            ZERO,
        )
        pre_transactions = [txn for txn in transactions if txn.date < window.start]
        period_transactions = [txn for txn in transactions if txn.date >= window.start]
        pre_ledger = [entry for entry in ledger_entries if entry.date < window.start]
        period_ledger = [entry for entry in ledger_entries if entry.date >= window.start]

        carried_balance = opening_balance + sum(
            (to_reporting(txn.base_amount.amount, txn.base_amount.currency) for txn in pre_transactions),
            ZERO,
        )
        carried_reserved = sum(
            (_reserve_delta(entry, to_reporting) for entry in pre_ledger),
            ZERO,
        )

        buckets = {label: ReportBucket(label=label) for label in window.labels()}
        income_categories: dict[str, _CategoryTotals] = {}
        expense_categories: dict[str, _CategoryTotals] = {}
        _replay_transactions(
            period_transactions,
            window,
            buckets,
            income_categories,
            expense_categories,
            to_reporting,
        )
        reserved_deltas, total_funding = _replay_ledger(period_ledger, window, to_reporting)

        running_balance = carried_balance
        running_reserved = carried_reserved
        ordered = [buckets[label] for label in sorted(buckets)]
        for bucket in ordered:
            running_balance += bucket.net
            running_reserved += reserved_deltas.get(bucket.label, ZERO)
            bucket.balance = running_balance
            bucket.safe_cash = running_balance - running_reserved

        total_income = sum((bucket.income for bucket in ordered), ZERO)
        total_expenses = sum((bucket.expenses for bucket in ordered), ZERO)
        gross_flow = total_income - total_expenses
        net_flow = gross_flow - total_funding

        logger.info(
            "Report built",
            extra={
                "workspace_id": workspace_id,
                "currency": currency,
                "bucket_count": len(ordered),
                "is_daily": window.is_daily,
            },
        )
        return Report(
            summary=ReportSummary(
                total_income=round_money(total_income),
                total_expenses=round_money(total_expenses),
                gross_flow=round_money(gross_flow),
                total_funding=round_money(total_funding),
                net_flow=round_money(net_flow),
            ),
            income_breakdown=_format_breakdown(income_categories),
            expense_breakdown=_format_breakdown(expense_categories),
            trends=[_present_bucket(bucket) for bucket in ordered],
            currency=currency,
            is_daily=window.is_daily,
            start=window.start,
            end=window.end,
        )


def _reserve_delta(entry: LedgerEvent, to_reporting: Callable[[Decimal, str], Decimal]) -> Decimal:
    return to_reporting(entry.amount.amount, entry.amount.currency) * entry.reserve_sign


def _replay_transactions(
    period_transactions: Iterable[TransactionEvent],
    window: ReportWindow,
    buckets: dict[str, ReportBucket],
    income_categories: dict[str, _CategoryTotals],
    expense_categories: dict[str, _CategoryTotals],
    to_reporting: Callable[[Decimal, str], Decimal],
) -> None:
    for txn in sorted(period_transactions, key=lambda item: item.date):
        bucket = buckets.get(window.label_for(txn.date))
        if bucket is None:
            continue
        signed = to_reporting(txn.base_amount.amount, txn.base_amount.currency)
        absolute = abs(signed)
        category = txn.category or UNCATEGORIZED
        subcategory = txn.subcategory or OTHER_SUBCATEGORY

        if txn.type == "income":
            bucket.income += absolute
            income_categories.setdefault(category, _CategoryTotals()).add(subcategory, absolute)
        elif txn.type == "expense":
            bucket.expenses += absolute
            expense_categories.setdefault(category, _CategoryTotals()).add(subcategory, absolute)
        bucket.net += signed


def _replay_ledger(
    period_ledger: Iterable[LedgerEvent],
    window: ReportWindow,
    to_reporting: Callable[[Decimal, str], Decimal],
) -> tuple[dict[str, Decimal], Decimal]:
    deltas: dict[str, Decimal] = {}
    total_funding = ZERO
    for entry in period_ledger:
        label = window.label_for(entry.date)
        amount = to_reporting(entry.amount.amount, entry.amount.currency)
        if entry.type == "fund":
            total_funding += amount
        deltas[label] = deltas.get(label, ZERO) + amount * entry.reserve_sign
    return deltas, total_funding


def _format_breakdown(totals: dict[str, _CategoryTotals]) -> list[CategoryStat]:
    stats = [
        CategoryStat(
            name=name,
            value=round_money(data.value),
            subcategories=sorted(
                (
                    SubCategoryStat(name=sub_name, value=round_money(sub_value))
                    for sub_name, sub_value in data.subcategories.items()
                ),
                key=lambda sub: sub.value,
                reverse=True,
            ),
        )
        for name, data in totals.items()
    ]
    return sorted(stats, key=lambda stat: stat.value, reverse=True)


def _present_bucket(bucket: ReportBucket) -> ReportBucket:
    return ReportBucket(
        label=bucket.label,
        income=round_money(bucket.income),
        expenses=round_money(bucket.expenses),
        net=round_money(bucket.net),
        balance=round_money(bucket.balance),
        safe_cash=round_money(bucket.safe_cash),
    )
