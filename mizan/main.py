from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy.engine import Engine

from mizan.config import Settings, get_settings
from mizan.currency_conversion import (
    FxRateResolver,
    NoRateAvailable,
    OpenExchangeRateProvider,
    StaticRateProvider,
    normalize_currency,
)
from mizan.dashboard import DashboardService
from mizan.db import build_engine, init_db
from mizan.logging_config import configure_logging, correlation_scope, get_logger
from mizan.models import utcnow
from mizan.reconciliation import PeriodLocked, ReconciliationEngine
from mizan.report_engine import ReportEngine
from mizan.report_windows import resolve_window
from mizan.repositories import (
    RateProvider,
    SqlAccountStore,
    SqlFxCacheStore,
    SqlLedgerStore,
    SqlTransactionStore,
    SqlWorkspaceStore,
)
from mizan.transactions import TransactionDraft, TransactionService

settings = get_settings()
configure_logging(level=settings.log_level, fmt=settings.log_format)
logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    resolver: FxRateResolver
    reports: ReportEngine
    reconciliation: ReconciliationEngine
    transactions: TransactionService
    dashboard: DashboardService


def default_rate_provider(settings: Settings) -> RateProvider:
    if settings.fx_provider == "static":
        return StaticRateProvider()
    return OpenExchangeRateProvider(
        base_url=settings.fx_api_url, timeout_seconds=settings.fx_timeout_seconds
    )


def build_services(
    settings: Settings,
    engine: Engine | None = None,
    rate_provider: RateProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    engine = engine or build_engine(settings.database_url)
    workspace_store = SqlWorkspaceStore(engine)
    account_store = SqlAccountStore(engine)
    transaction_store = SqlTransactionStore(engine)
    ledger_store = SqlLedgerStore(engine)
    resolver = FxRateResolver(
        provider=rate_provider or default_rate_provider(settings),
        cache=SqlFxCacheStore(engine),
        ttl=timedelta(hours=settings.fx_cache_ttl_hours),
        max_workers=settings.fx_max_workers,
        clock=clock,
    )

    def today() -> date:
        return clock().date()

    return Services(
        settings=settings,
        engine=engine,
        resolver=resolver,
        reports=ReportEngine(
            workspaces=workspace_store,
            accounts=account_store,
            transactions=transaction_store,
            ledger=ledger_store,
            resolver=resolver,
            epoch=settings.report_epoch,
            today=today,
        ),
        reconciliation=ReconciliationEngine(
            accounts=account_store,
            transactions=transaction_store,
            tolerance=settings.reconcile_tolerance,
            clock=clock,
        ),
        transactions=TransactionService(
            accounts=account_store,
            transactions=transaction_store,
            resolver=resolver,
        ),
        dashboard=DashboardService(
            workspaces=workspace_store,
            accounts=account_store,
            transactions=transaction_store,
            ledger=ledger_store,
            resolver=resolver,
            today=today,
        ),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(get_settings())


app = FastAPI(title="Mizan reporting")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_correlation_id(request: Request, call_next):
    with correlation_scope(request.headers.get("x-correlation-id")) as correlation_id:
        response = await call_next(request)
    response.headers["x-correlation-id"] = correlation_id
    return response


@app.on_event("startup")
def init_database() -> None:
    services = app.dependency_overrides.get(get_services, get_services)()
    init_db(services.engine)


class SummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_income: Decimal
    total_expenses: Decimal
    gross_flow: Decimal
    total_funding: Decimal
    net_flow: Decimal


class SubCategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    value: Decimal


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    value: Decimal
    subcategories: list[SubCategoryResponse]


class TrendBucketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    income: Decimal
    expenses: Decimal
    net: Decimal
    balance: Decimal
    safe_cash: Decimal


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    summary: SummaryResponse
    income_breakdown: list[CategoryResponse]
    expense_breakdown: list[CategoryResponse]
    trends: list[TrendBucketResponse]
    currency: str
    is_daily: bool
    start: date
    end: date


class AccountBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: int
    name: str
    currency: str
    balance: Decimal
    last_reconciled_at: datetime | None = None


class CategoryTotalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    value: Decimal


class DashboardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    has_accounts: bool
    has_transactions: bool
    total_balance: Decimal
    reserved_total: Decimal
    available_cash: Decimal
    monthly_income: Decimal
    monthly_expenses: Decimal
    expenses_by_category: list[CategoryTotalResponse]
    accounts: list[AccountBalanceResponse]


class BalancePointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    balance: Decimal


class BalanceHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    range: str
    points: list[BalancePointResponse]


class ReconcilePayload(BaseModel):
    actual_balance: Decimal


class ReconcileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: int
    adjustment_created: bool
    delta: Decimal
    system_balance: Decimal
    reconciled_at: datetime
    adjustment_id: int | None = None


class TransactionPayload(BaseModel):
    account_id: int
    type: str
    date: date
    amount: Decimal
    currency: str
    description: str | None = None
    category_id: int | None = None
    subcategory_id: int | None = None
    transfer_account_id: int | None = None
    fx_rate: Decimal | None = None

    def to_draft(self) -> TransactionDraft:
        return TransactionDraft(**self.model_dump())


class TransactionResponse(BaseModel):
    id: int
    workspace_id: int
    account_id: int
    type: str
    date: date
    original_amount: Decimal
    original_currency: str
    base_amount: Decimal
    base_currency: str
    category: str | None = None
    subcategory: str | None = None
    is_adjustment: bool
    description: str | None = None


class FxRateResponse(BaseModel):
    base: str
    quote: str
    rate: Decimal


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PeriodLocked):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NoRateAvailable):
        logger.warning("No exchange rate available", extra={"error": str(exc)})
        return HTTPException(status_code=503, detail="Report unavailable: no exchange rate.")
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def transaction_response(txn) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        workspace_id=txn.workspace_id,
        account_id=txn.account_id,
        type=txn.type,
        date=txn.date,
        original_amount=txn.original_amount.amount,
        original_currency=txn.original_amount.currency,
        base_amount=txn.base_amount.amount,
        base_currency=txn.base_amount.currency,
        category=txn.category,
        subcategory=txn.subcategory,
        is_adjustment=txn.is_adjustment,
        description=txn.description,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/workspaces/{workspace_id}/reports/pnl", response_model=ReportResponse)
def pnl_report(
    workspace_id: int,
    period: str | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    currency: str | None = Query(None),
    services: Services = Depends(get_services),
) -> ReportResponse:
    try:
        window = resolve_window(
            services.reports.today(),
            period=period,
            start_date=start_date,
            end_date=end_date,
            epoch=services.settings.report_epoch,
        )
        report = services.reports.build_report(workspace_id, window, currency)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return ReportResponse.model_validate(report)


@app.get("/workspaces/{workspace_id}/dashboard", response_model=DashboardResponse)
def dashboard_stats(
    workspace_id: int, services: Services = Depends(get_services)
) -> DashboardResponse:
    try:
        stats = services.dashboard.stats(workspace_id)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return DashboardResponse.model_validate(stats)


@app.get("/workspaces/{workspace_id}/balance-history", response_model=BalanceHistoryResponse)
def balance_history(
    workspace_id: int,
    range_key: str = Query("30d", alias="range"),
    account_id: int | None = Query(None),
    services: Services = Depends(get_services),
) -> BalanceHistoryResponse:
    try:
        history = services.dashboard.balance_history(workspace_id, range_key, account_id)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return BalanceHistoryResponse.model_validate(history)


@app.get(
    "/workspaces/{workspace_id}/accounts/balances",
    response_model=list[AccountBalanceResponse],
)
def account_balances(
    workspace_id: int, services: Services = Depends(get_services)
) -> list[AccountBalanceResponse]:
    try:
        balances = services.dashboard.account_balances(workspace_id)
    except LookupError as exc:
        raise http_error(exc) from exc
    return [AccountBalanceResponse.model_validate(balance) for balance in balances]


@app.post("/accounts/{account_id}/reconcile", response_model=ReconcileResponse)
def reconcile_account(
    account_id: int,
    payload: ReconcilePayload,
    services: Services = Depends(get_services),
) -> ReconcileResponse:
    try:
        result = services.reconciliation.reconcile(account_id, payload.actual_balance)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return ReconcileResponse.model_validate(result)


@app.post("/workspaces/{workspace_id}/transactions", response_model=TransactionResponse)
def create_transaction(
    workspace_id: int,
    payload: TransactionPayload,
    services: Services = Depends(get_services),
) -> TransactionResponse:
    try:
        created = services.transactions.create(workspace_id, payload.to_draft())
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return transaction_response(created)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    services: Services = Depends(get_services),
) -> TransactionResponse:
    try:
        updated = services.transactions.update(transaction_id, payload.to_draft())
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return transaction_response(updated)


@app.get("/fx/rate", response_model=FxRateResponse)
def fx_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    services: Services = Depends(get_services),
) -> FxRateResponse:
    try:
        base = normalize_currency(from_currency)
        quote = normalize_currency(to_currency)
        rate = services.resolver.resolve(base, quote)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc
    return FxRateResponse(base=base, quote=quote, rate=rate)
