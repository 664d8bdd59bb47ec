from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    false,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

workspaces = Table(
    "workspaces",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="bank"),
    Column("base_currency", String(3), nullable=False),
    Column("opening_balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("is_archived", Boolean, nullable=False, server_default=false()),
    Column("last_reconciled_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="expense"),
    UniqueConstraint("workspace_id", "name", name="uq_categories_workspace_name"),
)

subcategories = Table(
    "subcategories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("name", String(255), nullable=False),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budget_ledger = Table(
    "budget_ledger",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("date", Date, nullable=False),
    Column("description", String(500)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("subcategory_id", Integer, ForeignKey("subcategories.id")),
    Column("transfer_account_id", Integer, ForeignKey("accounts.id")),
    Column("original_amount", Numeric(14, 2), nullable=False),
    Column("original_currency", String(3), nullable=False),
    Column("fx_rate_used", Numeric(18, 8)),
    Column("base_amount", Numeric(14, 2), nullable=False),
    Column("is_adjustment", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

fx_rates = Table(
    "fx_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("base_currency", String(3), nullable=False),
    Column("quote_currency", String(3), nullable=False),
    Column("rate", Numeric(18, 8), nullable=False),
    Column("fetched_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("source", String(100), nullable=False),
    UniqueConstraint("base_currency", "quote_currency", name="uq_fx_rates_pair"),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
