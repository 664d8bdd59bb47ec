from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Optional

from mizan.currency_conversion import FxRateResolver, convert, normalize_currency, round_money
from mizan.logging_config import get_logger
from mizan.models import TRANSACTION_TYPES, Account, Money, TransactionEvent
from mizan.reconciliation import ensure_period_open
from mizan.repositories import AccountNotFound, AccountStore, TransactionRecord, TransactionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransactionDraft:
    account_id: int
    type: str
    date: date
    amount: Decimal
    currency: str
    description: Optional[str] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    transfer_account_id: Optional[int] = None
    fx_rate: Optional[Decimal] = None


def validate_draft(draft: TransactionDraft) -> TransactionDraft:
    txn_type = draft.type.strip().lower()
    if txn_type not in TRANSACTION_TYPES:
        raise ValueError("Invalid transaction type.")
    if not draft.amount.is_finite() or draft.amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    if draft.fx_rate is not None and (not draft.fx_rate.is_finite() or draft.fx_rate <= 0):
        raise ValueError("FX rate must be greater than zero.")
    if txn_type == "transfer" and draft.transfer_account_id == draft.account_id:
        raise ValueError("Transfer target must differ from the source account.")
    description = draft.description.strip() if draft.description else None
    return replace(
        draft,
        type=txn_type,
        currency=normalize_currency(draft.currency),
        description=description or None,
    )


def signed_amount(txn_type: str, amount: Decimal) -> Decimal:
    return amount if txn_type == "income" else -amount


@dataclass
class TransactionService:
    """Write path for transactions; every write passes the period lock."""

    accounts: AccountStore
    transactions: TransactionStore
    resolver: FxRateResolver

    def create(self, workspace_id: int, draft: TransactionDraft) -> TransactionEvent:
        draft = validate_draft(draft)
        account = self._active_account(workspace_id, draft.account_id)
        ensure_period_open(account, draft.date)
        target = None
        if draft.type == "transfer" and draft.transfer_account_id is not None:
            target = self._transfer_target(workspace_id, draft)

        base_amount, fx_rate = self._to_base(draft, account)
        created = self.transactions.create_transaction(
            self._record(workspace_id, draft, base_amount, fx_rate)
        )
        if target is not None:
            self._mirror_transfer(workspace_id, draft, account, target)

        logger.info(
            "Transaction created",
            extra={"workspace_id": workspace_id, "transaction_id": created.id, "type": draft.type},
        )
        return created

    def update(self, transaction_id: int, draft: TransactionDraft) -> TransactionEvent:
        draft = validate_draft(draft)
        existing = self.transactions.get_transaction(transaction_id)
        if not existing.is_adjustment:
            previous_account = self.accounts.get_account(existing.account_id)
            ensure_period_open(previous_account, existing.date)
        account = self._active_account(existing.workspace_id, draft.account_id)
        ensure_period_open(account, draft.date, is_adjustment=existing.is_adjustment)

        base_amount, fx_rate = self._to_base(draft, account)
        record = replace(
            self._record(existing.workspace_id, draft, base_amount, fx_rate),
            is_adjustment=existing.is_adjustment,
        )
        updated = self.transactions.update_transaction(transaction_id, record)
        logger.info(
            "Transaction updated",
            extra={"workspace_id": existing.workspace_id, "transaction_id": transaction_id},
        )
        return updated

    def _active_account(self, workspace_id: int, account_id: int) -> Account:
        account = self.accounts.get_account(account_id)
        if account.workspace_id != workspace_id or account.is_archived:
            raise AccountNotFound(f"Account {account_id} not found.")
        return account

    def _to_base(self, draft: TransactionDraft, account: Account) -> tuple[Decimal, Optional[Decimal]]:
        if draft.currency == normalize_currency(account.base_currency):
            return draft.amount, draft.fx_rate
        rate = draft.fx_rate or self.resolver.resolve(draft.currency, account.base_currency)
        return round_money(convert(draft.amount, rate)), rate

    def _record(
        self,
        workspace_id: int,
        draft: TransactionDraft,
        base_amount: Decimal,
        fx_rate: Optional[Decimal],
    ) -> TransactionRecord:
        return TransactionRecord(
            workspace_id=workspace_id,
            account_id=draft.account_id,
            type=draft.type,
            date=draft.date,
            original_amount=Money(draft.amount, draft.currency),
            base_amount=signed_amount(draft.type, base_amount),
            fx_rate_used=fx_rate,
            category_id=draft.category_id,
            subcategory_id=draft.subcategory_id,
            transfer_account_id=draft.transfer_account_id,
            description=draft.description,
        )

    def _transfer_target(self, workspace_id: int, draft: TransactionDraft) -> Optional[Account]:
        """Target account that receives the mirrored inflow, if currencies match."""
        target = self._active_account(workspace_id, draft.transfer_account_id)
        if normalize_currency(target.base_currency) != draft.currency:
            logger.warning(
                "Transfer target currency differs; inflow not mirrored",
                extra={"workspace_id": workspace_id, "target_account_id": target.id},
            )
            return None
        ensure_period_open(target, draft.date)
        return target

    def _mirror_transfer(
        self, workspace_id: int, draft: TransactionDraft, source: Account, target: Account
    ) -> None:
        self.transactions.create_transaction(
            TransactionRecord(
                workspace_id=workspace_id,
                account_id=target.id,
                type="transfer",
                date=draft.date,
                original_amount=Money(draft.amount, draft.currency),
                base_amount=draft.amount,
                transfer_account_id=source.id,
                description=f"Transfer from {source.name or source.base_currency} account",
            )
        )
