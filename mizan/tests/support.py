from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from mizan.currency_conversion import FxFetchFailed
from mizan.db import build_engine, fx_rates, init_db
from mizan.models import Account, FxRate, Money, TransactionEvent
from mizan.repositories import (
    SqlAccountStore,
    SqlCategoryStore,
    SqlFxCacheStore,
    SqlLedgerStore,
    SqlTransactionStore,
    SqlWorkspaceStore,
    TransactionRecord,
)


class TableRateProvider:
    """Rates keyed by base currency; counts every fetch."""

    source = "test"

    def __init__(self, table: Mapping[str, Mapping[str, Decimal]]) -> None:
        self.table = {base: dict(quotes) for base, quotes in table.items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch_rates(self, base: str) -> Mapping[str, Decimal]:
        with self._lock:
            self.calls.append(base)
        if base not in self.table:
            raise FxFetchFailed(f"No rates for {base}")
        return self.table[base]


class FailingRateProvider:
    source = "test"

    def __init__(self) -> None:
        self.calls = 0

    def fetch_rates(self, base: str) -> Mapping[str, Decimal]:
        self.calls += 1
        raise FxFetchFailed("upstream down")


class MemoryFxCache:
    def __init__(self, *rates: FxRate) -> None:
        self.rates = {(rate.base, rate.quote): rate for rate in rates}
        self.upserts: list[FxRate] = []
        self._lock = threading.Lock()

    def get_rate(self, base: str, quote: str) -> Optional[FxRate]:
        return self.rates.get((base, quote))

    def upsert_rate(self, rate: FxRate) -> None:
        with self._lock:
            self.rates[(rate.base, rate.quote)] = rate
            self.upserts.append(rate)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def today(self) -> date:
        return self.now.date()


@dataclass
class SqlFixture:
    engine: Engine
    workspaces: SqlWorkspaceStore
    accounts: SqlAccountStore
    transactions: SqlTransactionStore
    ledger: SqlLedgerStore
    categories: SqlCategoryStore
    fx_cache: SqlFxCacheStore

    def add_transaction(
        self,
        account: Account,
        txn_type: str,
        amount: str,
        on: date,
        category_id: Optional[int] = None,
        subcategory_id: Optional[int] = None,
        is_adjustment: bool = False,
    ) -> TransactionEvent:
        value = Decimal(amount)
        return self.transactions.create_transaction(
            TransactionRecord(
                workspace_id=account.workspace_id,
                account_id=account.id,
                type=txn_type,
                date=on,
                original_amount=Money(value, account.base_currency),
                base_amount=value if txn_type == "income" else -value,
                category_id=category_id,
                subcategory_id=subcategory_id,
                is_adjustment=is_adjustment,
            )
        )


def count_fx_rates(engine: Engine) -> int:
    with engine.begin() as conn:
        return conn.execute(select(func.count()).select_from(fx_rates)).scalar_one()


def sqlite_fixture() -> SqlFixture:
    engine = build_engine("sqlite://")
    init_db(engine)
    return SqlFixture(
        engine=engine,
        workspaces=SqlWorkspaceStore(engine),
        accounts=SqlAccountStore(engine),
        transactions=SqlTransactionStore(engine),
        ledger=SqlLedgerStore(engine),
        categories=SqlCategoryStore(engine),
        fx_cache=SqlFxCacheStore(engine),
    )
