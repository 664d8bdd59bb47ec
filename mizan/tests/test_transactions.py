import unittest
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from mizan.currency_conversion import FxRateResolver
from mizan.reconciliation import PeriodLocked
from mizan.repositories import AccountNotFound, TransactionNotFound
from mizan.tests.support import FixedClock, MemoryFxCache, TableRateProvider, sqlite_fixture
from mizan.transactions import TransactionDraft, TransactionService, signed_amount, validate_draft

NOW = datetime(2025, 3, 15, 10, 0)


class ValidateDraftTests(unittest.TestCase):
    def setUp(self) -> None:
        self.draft = TransactionDraft(
            account_id=1,
            type=" Expense ",
            date=date(2025, 3, 1),
            amount=Decimal("10"),
            currency="usd",
            description="   ",
        )

    def test_normalizes_type_currency_and_description(self) -> None:
        draft = validate_draft(self.draft)

        self.assertEqual(draft.type, "expense")
        self.assertEqual(draft.currency, "USD")
        self.assertIsNone(draft.description)

    def test_rejects_invalid_drafts(self) -> None:
        invalid = {
            "type": replace(self.draft, type="gift"),
            "zero amount": replace(self.draft, amount=Decimal("0")),
            "negative amount": replace(self.draft, amount=Decimal("-5")),
            "nan amount": replace(self.draft, amount=Decimal("NaN")),
            "infinite amount": replace(self.draft, amount=Decimal("Infinity")),
            "fx rate": replace(self.draft, fx_rate=Decimal("0")),
            "infinite fx rate": replace(self.draft, fx_rate=Decimal("Infinity")),
            "currency": replace(self.draft, currency="dollars"),
            "self transfer": replace(self.draft, type="transfer", transfer_account_id=1),
        }
        for label, draft in invalid.items():
            with self.subTest(label=label):
                with self.assertRaises(ValueError):
                    validate_draft(draft)

    def test_signed_amount(self) -> None:
        self.assertEqual(signed_amount("income", Decimal("5")), Decimal("5"))
        self.assertEqual(signed_amount("expense", Decimal("5")), Decimal("-5"))
        self.assertEqual(signed_amount("transfer", Decimal("5")), Decimal("-5"))


class TransactionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = sqlite_fixture()
        self.clock = FixedClock(NOW)
        self.service = TransactionService(
            accounts=self.db.accounts,
            transactions=self.db.transactions,
            resolver=FxRateResolver(
                provider=TableRateProvider({"EUR": {"USD": Decimal("1.10")}}),
                cache=MemoryFxCache(),
                max_workers=1,
                clock=self.clock,
            ),
        )
        self.workspace = self.db.workspaces.create_workspace("Household", "USD")
        self.checking = self.db.accounts.create_account(self.workspace.id, "Checking", "USD", Decimal("1000"))
        self.savings = self.db.accounts.create_account(self.workspace.id, "Savings", "USD")
        self.euro = self.db.accounts.create_account(self.workspace.id, "Euro", "EUR")

    def draft(self, **overrides) -> TransactionDraft:
        values = {
            "account_id": self.checking.id,
            "type": "expense",
            "date": date(2025, 3, 16),
            "amount": Decimal("25.50"),
            "currency": "USD",
        }
        values.update(overrides)
        return TransactionDraft(**values)

    def rows(self, account_id: int):
        return self.db.transactions.list_transactions(self.workspace.id, date.max, account_id=account_id)

    def test_creates_expense_in_account_currency(self) -> None:
        created = self.service.create(self.workspace.id, self.draft(description=" Lunch "))

        self.assertEqual(created.base_amount.amount, Decimal("-25.50"))
        self.assertEqual(created.base_amount.currency, "USD")
        self.assertEqual(created.original_amount.amount, Decimal("25.50"))
        self.assertEqual(created.description, "Lunch")
        self.assertFalse(created.is_adjustment)

    def test_foreign_amount_is_converted_through_resolver(self) -> None:
        created = self.service.create(
            self.workspace.id, self.draft(amount=Decimal("100"), currency="EUR")
        )

        self.assertEqual(created.original_amount.currency, "EUR")
        self.assertEqual(created.original_amount.amount, Decimal("100.00"))
        self.assertEqual(created.base_amount.amount, Decimal("-110.00"))

    def test_explicit_fx_rate_wins(self) -> None:
        created = self.service.create(
            self.workspace.id,
            self.draft(type="income", amount=Decimal("100"), currency="EUR", fx_rate=Decimal("1.2345")),
        )

        self.assertEqual(created.base_amount.amount, Decimal("123.45"))

    def test_transfer_mirrors_inflow_on_target(self) -> None:
        self.service.create(
            self.workspace.id,
            self.draft(type="transfer", amount=Decimal("40"), transfer_account_id=self.savings.id),
        )

        self.assertEqual([row.base_amount.amount for row in self.rows(self.checking.id)], [Decimal("-40.00")])
        inflow = self.rows(self.savings.id)
        self.assertEqual([row.base_amount.amount for row in inflow], [Decimal("40.00")])
        self.assertEqual(inflow[0].type, "transfer")

    def test_cross_currency_transfer_is_not_mirrored(self) -> None:
        with self.assertLogs("mizan.transactions", level="WARNING"):
            self.service.create(
                self.workspace.id,
                self.draft(type="transfer", amount=Decimal("40"), transfer_account_id=self.euro.id),
            )

        self.assertEqual(len(self.rows(self.checking.id)), 1)
        self.assertEqual(self.rows(self.euro.id), [])

    def test_locked_transfer_target_writes_nothing(self) -> None:
        self.db.accounts.set_reconciled_at(self.savings.id, datetime(2025, 3, 20, 9, 0))

        with self.assertRaises(PeriodLocked):
            self.service.create(
                self.workspace.id,
                self.draft(type="transfer", amount=Decimal("40"), transfer_account_id=self.savings.id),
            )

        self.assertEqual(self.rows(self.checking.id), [])

    def test_create_in_locked_period_is_rejected(self) -> None:
        self.db.accounts.set_reconciled_at(self.checking.id, NOW)

        with self.assertRaises(PeriodLocked):
            self.service.create(self.workspace.id, self.draft(date=date(2025, 3, 15)))
        created = self.service.create(self.workspace.id, self.draft(date=date(2025, 3, 16)))

        self.assertEqual(created.date, date(2025, 3, 16))

    def test_update_rewrites_amount_and_keeps_id(self) -> None:
        created = self.service.create(self.workspace.id, self.draft())

        updated = self.service.update(created.id, self.draft(type="income", amount=Decimal("80")))

        self.assertEqual(updated.id, created.id)
        self.assertEqual(updated.type, "income")
        self.assertEqual(updated.base_amount.amount, Decimal("80.00"))

    def test_update_cannot_touch_or_enter_locked_period(self) -> None:
        early = self.db.add_transaction(self.checking, "expense", "10", date(2025, 3, 1))
        late = self.service.create(self.workspace.id, self.draft(date=date(2025, 3, 20)))
        self.db.accounts.set_reconciled_at(self.checking.id, NOW)

        with self.assertRaises(PeriodLocked):
            self.service.update(early.id, self.draft(date=date(2025, 3, 20)))
        with self.assertRaises(PeriodLocked):
            self.service.update(late.id, self.draft(date=date(2025, 3, 2)))

    def test_adjustment_can_be_edited_inside_locked_period(self) -> None:
        adjustment = self.db.add_transaction(
            self.checking, "income", "50", date(2025, 3, 15), is_adjustment=True
        )
        self.db.accounts.set_reconciled_at(self.checking.id, NOW)

        updated = self.service.update(
            adjustment.id,
            self.draft(type="income", amount=Decimal("45"), date=date(2025, 3, 15)),
        )

        self.assertTrue(updated.is_adjustment)
        self.assertEqual(updated.base_amount.amount, Decimal("45.00"))

    def test_account_outside_workspace_or_archived_is_rejected(self) -> None:
        other = self.db.workspaces.create_workspace("Other", "USD")
        foreign = self.db.accounts.create_account(other.id, "Elsewhere", "USD")
        self.db.accounts.archive_account(self.savings.id)

        with self.assertRaises(AccountNotFound):
            self.service.create(self.workspace.id, self.draft(account_id=foreign.id))
        with self.assertRaises(AccountNotFound):
            self.service.create(self.workspace.id, self.draft(account_id=self.savings.id))

    def test_update_unknown_transaction(self) -> None:
        with self.assertRaises(TransactionNotFound):
            self.service.update(12345, self.draft())


if __name__ == "__main__":
    unittest.main()
