from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional, Protocol

from sqlalchemy import and_, false, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from mizan.db import (
    accounts,
    budget_ledger,
    budgets,
    categories,
    fx_rates,
    subcategories,
    transactions,
    workspaces,
)
from mizan.models import (
    LEDGER_TYPES,
    Account,
    FxRate,
    LedgerEvent,
    Money,
    TransactionEvent,
    Workspace,
    as_naive_utc,
    is_locked,
)


class WorkspaceNotFound(LookupError):
    """Raised when a workspace id does not resolve."""


class AccountNotFound(LookupError):
    """Raised when an account id does not resolve to an active account."""


class TransactionNotFound(LookupError):
    """Raised when a transaction id does not resolve."""


@dataclass(frozen=True)
class TransactionRecord:
    workspace_id: int
    account_id: int
    type: str
    date: date
    original_amount: Money
    base_amount: Decimal
    fx_rate_used: Optional[Decimal] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    transfer_account_id: Optional[int] = None
    description: Optional[str] = None
    is_adjustment: bool = False


class WorkspaceStore(Protocol):
    def get_workspace(self, workspace_id: int) -> Workspace: ...


class AccountStore(Protocol):
    def list_accounts(self, workspace_id: int, exclude_archived: bool = True) -> list[Account]: ...

    def get_account(self, account_id: int) -> Account: ...

    def set_reconciled_at(self, account_id: int, timestamp: datetime) -> datetime: ...


class TransactionStore(Protocol):
    def list_transactions(
        self,
        workspace_id: int,
        date_lte: date,
        date_gte: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> list[TransactionEvent]: ...

    def get_transaction(self, transaction_id: int) -> TransactionEvent: ...

    def create_transaction(self, record: TransactionRecord) -> TransactionEvent: ...

    def update_transaction(self, transaction_id: int, record: TransactionRecord) -> TransactionEvent: ...

    def create_adjustment_transaction(
        self,
        account: Account,
        txn_type: str,
        amount: Decimal,
        txn_date: date,
        description: str,
    ) -> TransactionEvent: ...

    def is_date_locked(self, account_id: int, txn_date: date) -> bool: ...


class LedgerStore(Protocol):
    def list_ledger_entries(
        self, workspace_id: int, date_lte: Optional[date] = None
    ) -> list[LedgerEvent]: ...


class FxCacheStore(Protocol):
    def get_rate(self, base: str, quote: str) -> Optional[FxRate]: ...

    def upsert_rate(self, rate: FxRate) -> None: ...


class RateProvider(Protocol):
    def fetch_rates(self, base: str) -> Mapping[str, Decimal]: ...


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _account_from_row(row) -> Account:
    return Account(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        base_currency=row["base_currency"],
        opening_balance=Money(_decimal(row["opening_balance"]), row["base_currency"]),
        is_archived=bool(row["is_archived"]),
        last_reconciled_at=(
            as_naive_utc(row["last_reconciled_at"]) if row["last_reconciled_at"] else None
        ),
    )


class SqlWorkspaceStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_workspace(self, workspace_id: int) -> Workspace:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(workspaces.c.id, workspaces.c.name, workspaces.c.currency).where(
                    workspaces.c.id == workspace_id
                )
            ).mappings().first()
        if not row:
            raise WorkspaceNotFound(f"Workspace {workspace_id} not found.")
        return Workspace(id=row["id"], name=row["name"], currency=row["currency"])

    def create_workspace(self, name: str, currency: str) -> Workspace:
        with self.engine.begin() as conn:
            row = conn.execute(
                insert(workspaces)
                .values(name=name, currency=currency)
                .returning(workspaces.c.id, workspaces.c.name, workspaces.c.currency)
            ).mappings().first()
        return Workspace(id=row["id"], name=row["name"], currency=row["currency"])


class SqlAccountStore:
    _columns = (
        accounts.c.id,
        accounts.c.workspace_id,
        accounts.c.name,
        accounts.c.base_currency,
        accounts.c.opening_balance,
        accounts.c.is_archived,
        accounts.c.last_reconciled_at,
    )

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_accounts(self, workspace_id: int, exclude_archived: bool = True) -> list[Account]:
        stmt = select(*self._columns).where(accounts.c.workspace_id == workspace_id)
        if exclude_archived:
            stmt = stmt.where(accounts.c.is_archived == false())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt.order_by(accounts.c.id.asc())).mappings().all()
        return [_account_from_row(row) for row in rows]

    def get_account(self, account_id: int) -> Account:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(*self._columns).where(accounts.c.id == account_id)
            ).mappings().first()
        if not row:
            raise AccountNotFound(f"Account {account_id} not found.")
        return _account_from_row(row)

    def create_account(
        self,
        workspace_id: int,
        name: str,
        base_currency: str,
        opening_balance: Decimal = Decimal("0"),
        account_type: str = "bank",
    ) -> Account:
        with self.engine.begin() as conn:
            row = conn.execute(
                insert(accounts)
                .values(
                    workspace_id=workspace_id,
                    name=name,
                    type=account_type,
                    base_currency=base_currency,
                    opening_balance=opening_balance,
                )
                .returning(*self._columns)
            ).mappings().first()
        return _account_from_row(row)

    def archive_account(self, account_id: int) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(accounts).where(accounts.c.id == account_id).values(is_archived=True)
            )
            if result.rowcount == 0:
                raise AccountNotFound(f"Account {account_id} not found.")

    def set_reconciled_at(self, account_id: int, timestamp: datetime) -> datetime:
        """Advance the watermark; an earlier or equal timestamp leaves it as is."""
        timestamp = as_naive_utc(timestamp)
        with self.engine.begin() as conn:
            conn.execute(
                update(accounts)
                .where(
                    accounts.c.id == account_id,
                    or_(
                        accounts.c.last_reconciled_at.is_(None),
                        accounts.c.last_reconciled_at < timestamp,
                    ),
                )
                .values(last_reconciled_at=timestamp)
            )
            current = conn.execute(
                select(accounts.c.last_reconciled_at).where(accounts.c.id == account_id)
            ).first()
        if not current:
            raise AccountNotFound(f"Account {account_id} not found.")
        return as_naive_utc(current[0])


class SqlTransactionStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _select(self):
        return select(
            transactions.c.id,
            transactions.c.workspace_id,
            transactions.c.account_id,
            transactions.c.type,
            transactions.c.date,
            transactions.c.description,
            transactions.c.original_amount,
            transactions.c.original_currency,
            transactions.c.base_amount,
            transactions.c.is_adjustment,
            accounts.c.base_currency,
            categories.c.name.label("category_name"),
            subcategories.c.name.label("subcategory_name"),
        ).select_from(
            transactions.join(accounts, transactions.c.account_id == accounts.c.id)
            .outerjoin(categories, transactions.c.category_id == categories.c.id)
            .outerjoin(subcategories, transactions.c.subcategory_id == subcategories.c.id)
        )

    @staticmethod
    def _from_row(row) -> TransactionEvent:
        return TransactionEvent(
            id=row["id"],
            workspace_id=row["workspace_id"],
            account_id=row["account_id"],
            date=row["date"],
            type=row["type"],
            original_amount=Money(_decimal(row["original_amount"]), row["original_currency"]),
            base_amount=Money(_decimal(row["base_amount"]), row["base_currency"]),
            category=row["category_name"],
            subcategory=row["subcategory_name"],
            is_adjustment=bool(row["is_adjustment"]),
            description=row["description"],
        )

    def list_transactions(
        self,
        workspace_id: int,
        date_lte: date,
        date_gte: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> list[TransactionEvent]:
        stmt = self._select().where(
            transactions.c.workspace_id == workspace_id,
            transactions.c.date <= date_lte,
        )
        if date_gte is not None:
            stmt = stmt.where(transactions.c.date >= date_gte)
        if account_id is not None:
            stmt = stmt.where(transactions.c.account_id == account_id)
        stmt = stmt.order_by(transactions.c.date.asc(), transactions.c.id.asc())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._from_row(row) for row in rows]

    def get_transaction(self, transaction_id: int) -> TransactionEvent:
        with self.engine.begin() as conn:
            row = conn.execute(
                self._select().where(transactions.c.id == transaction_id)
            ).mappings().first()
        if not row:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return self._from_row(row)

    @staticmethod
    def _values(record: TransactionRecord) -> dict:
        return {
            "workspace_id": record.workspace_id,
            "account_id": record.account_id,
            "type": record.type,
            "date": record.date,
            "description": record.description,
            "category_id": record.category_id,
            "subcategory_id": record.subcategory_id,
            "transfer_account_id": record.transfer_account_id,
            "original_amount": record.original_amount.amount,
            "original_currency": record.original_amount.currency,
            "fx_rate_used": record.fx_rate_used,
            "base_amount": record.base_amount,
            "is_adjustment": record.is_adjustment,
        }

    def create_transaction(self, record: TransactionRecord) -> TransactionEvent:
        with self.engine.begin() as conn:
            new_id = conn.execute(
                insert(transactions).values(**self._values(record)).returning(transactions.c.id)
            ).scalar_one()
        return self.get_transaction(new_id)

    def update_transaction(self, transaction_id: int, record: TransactionRecord) -> TransactionEvent:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(**self._values(record))
            )
            if result.rowcount == 0:
                raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return self.get_transaction(transaction_id)

    def create_adjustment_transaction(
        self,
        account: Account,
        txn_type: str,
        amount: Decimal,
        txn_date: date,
        description: str,
    ) -> TransactionEvent:
        signed = amount if txn_type == "income" else -amount
        return self.create_transaction(
            TransactionRecord(
                workspace_id=account.workspace_id,
                account_id=account.id,
                type=txn_type,
                date=txn_date,
                original_amount=Money(amount, account.base_currency),
                base_amount=signed,
                description=description,
                is_adjustment=True,
            )
        )

    def is_date_locked(self, account_id: int, txn_date: date) -> bool:
        return is_locked(SqlAccountStore(self.engine).get_account(account_id), txn_date)


class SqlLedgerStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_ledger_entries(
        self, workspace_id: int, date_lte: Optional[date] = None
    ) -> list[LedgerEvent]:
        stmt = (
            select(
                budget_ledger.c.id,
                budget_ledger.c.workspace_id,
                budget_ledger.c.budget_id,
                budget_ledger.c.date,
                budget_ledger.c.type,
                budget_ledger.c.amount,
                budgets.c.currency,
            )
            .select_from(budget_ledger.join(budgets, budget_ledger.c.budget_id == budgets.c.id))
            .where(budget_ledger.c.workspace_id == workspace_id)
        )
        if date_lte is not None:
            stmt = stmt.where(budget_ledger.c.date <= date_lte)
        stmt = stmt.order_by(budget_ledger.c.date.asc(), budget_ledger.c.id.asc())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            LedgerEvent(
                id=row["id"],
                workspace_id=row["workspace_id"],
                budget_id=row["budget_id"],
                date=row["date"],
                type=row["type"].strip().lower(),
                amount=Money(_decimal(row["amount"]), row["currency"]),
            )
            for row in rows
        ]

    def create_budget(self, workspace_id: int, name: str, currency: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                insert(budgets)
                .values(workspace_id=workspace_id, name=name, currency=currency)
                .returning(budgets.c.id)
            ).scalar_one()

    def append_entry(
        self, workspace_id: int, budget_id: int, entry_date: date, entry_type: str, amount: Decimal
    ) -> int:
        if entry_type.strip().lower() not in LEDGER_TYPES:
            raise ValueError("Invalid ledger entry type.")
        with self.engine.begin() as conn:
            return conn.execute(
                insert(budget_ledger)
                .values(
                    workspace_id=workspace_id,
                    budget_id=budget_id,
                    date=entry_date,
                    type=entry_type,
                    amount=amount,
                )
                .returning(budget_ledger.c.id)
            ).scalar_one()


class SqlCategoryStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_category(self, workspace_id: int, name: str, category_type: str = "expense") -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                insert(categories)
                .values(workspace_id=workspace_id, name=name, type=category_type)
                .returning(categories.c.id)
            ).scalar_one()

    def create_subcategory(self, category_id: int, name: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                insert(subcategories)
                .values(category_id=category_id, name=name)
                .returning(subcategories.c.id)
            ).scalar_one()


class SqlFxCacheStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_rate(self, base: str, quote: str) -> Optional[FxRate]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(
                    fx_rates.c.base_currency,
                    fx_rates.c.quote_currency,
                    fx_rates.c.rate,
                    fx_rates.c.fetched_at,
                    fx_rates.c.expires_at,
                    fx_rates.c.source,
                )
                .where(
                    and_(
                        fx_rates.c.base_currency == base,
                        fx_rates.c.quote_currency == quote,
                    )
                )
                .order_by(fx_rates.c.expires_at.desc())
                .limit(1)
            ).mappings().first()
        if not row:
            return None
        return FxRate(
            base=row["base_currency"],
            quote=row["quote_currency"],
            rate=_decimal(row["rate"]),
            fetched_at=as_naive_utc(row["fetched_at"]),
            expires_at=as_naive_utc(row["expires_at"]),
            source=row["source"],
        )

    def upsert_rate(self, rate: FxRate) -> None:
        values = {
            "base_currency": rate.base,
            "quote_currency": rate.quote,
            "rate": rate.rate,
            "fetched_at": as_naive_utc(rate.fetched_at),
            "expires_at": as_naive_utc(rate.expires_at),
            "source": rate.source,
        }
        replaced = {key: values[key] for key in ("rate", "fetched_at", "expires_at", "source")}
        dialect = self.engine.dialect.name
        with self.engine.begin() as conn:
            if dialect in {"postgresql", "sqlite"}:
                dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
                stmt = dialect_insert(fx_rates).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["base_currency", "quote_currency"],
                    set_=replaced,
                )
                conn.execute(stmt)
                return
            result = conn.execute(
                update(fx_rates)
                .where(
                    fx_rates.c.base_currency == rate.base,
                    fx_rates.c.quote_currency == rate.quote,
                )
                .values(**replaced)
            )
            if result.rowcount == 0:
                conn.execute(insert(fx_rates).values(**values))
