import unittest
import uuid
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowbills.models.billing import AFE, Base, WellIdentifier
from flowbills.schemas.invoice import BudgetStatus, InvoiceStatus
from flowbills.services.budget_ledger import (
    find_well,
    format_money,
    get_active_afe,
    post_spend,
    project_budget,
    to_money,
    try_reserve_budget,
)
from flowbills.services.extraction_service import derive_invoice_status, reconcile_budget


class BudgetLedgerTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.db = self.SessionLocal()
        self.owner_id = str(uuid.uuid4())

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _create_afe(self, number="AFE-2024-001", budget=100000, spent=95000, status="active", owner_id=None):
        afe = AFE(
            owner_id=owner_id or self.owner_id,
            afe_number=number,
            well_name="Pembina 4-12",
            budget_amount=budget,
            spent_amount=spent,
            status=status,
        )
        self.db.add(afe)
        self.db.commit()
        self.db.refresh(afe)
        return afe

    def _reconcile(self, afe_number, amount):
        return reconcile_budget(
            self.db,
            owner_id=self.owner_id,
            afe_number=afe_number,
            amount=to_money(amount),
            warning_ratio=0.10,
        )

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def test_within_budget_near_limit_warns(self):
        self._create_afe()
        check = self._reconcile("AFE-2024-001", 3000)

        self.assertEqual(check.status, BudgetStatus.WITHIN_BUDGET)
        self.assertEqual(check.remaining, Decimal("2000.00"))
        self.assertEqual(check.errors, [])
        self.assertEqual(check.warnings, ["AFE AFE-2024-001 is at 98.0% of budget"])
        self.assertEqual(
            derive_invoice_status(check.errors, check.warnings, check.status),
            InvoiceStatus.NEEDS_REVIEW,
        )

    def test_over_budget_reports_overage(self):
        self._create_afe()
        check = self._reconcile("AFE-2024-001", 10000)

        self.assertEqual(check.status, BudgetStatus.OVER_BUDGET)
        self.assertEqual(check.remaining, Decimal("-5000.00"))
        self.assertEqual(len(check.errors), 1)
        self.assertIn("Over by $5,000.00", check.errors[0])
        self.assertIn("$10,000.00", check.errors[0])
        self.assertEqual(
            derive_invoice_status(check.errors, check.warnings, check.status),
            InvoiceStatus.VALIDATION_FAILED,
        )

    def test_comfortable_headroom_has_no_findings(self):
        self._create_afe(spent=50000)
        check = self._reconcile("AFE-2024-001", 5000)

        self.assertEqual(check.status, BudgetStatus.WITHIN_BUDGET)
        self.assertEqual(check.remaining, Decimal("45000.00"))
        self.assertEqual(check.warnings, [])
        self.assertEqual(
            derive_invoice_status(check.errors, check.warnings, check.status),
            InvoiceStatus.VALIDATED,
        )

    def test_exact_budget_is_within(self):
        afe = self._create_afe(budget=10000, spent=4000)
        projection = project_budget(afe, 6000, 0.10)
        self.assertEqual(projection.remaining, Decimal("0.00"))
        self.assertEqual(projection.status, BudgetStatus.WITHIN_BUDGET)
        self.assertEqual(projection.overage, Decimal("0.00"))
        self.assertTrue(projection.near_limit)

    def test_missing_afe_number_is_no_afe(self):
        check = self._reconcile(None, 500)
        self.assertEqual(check.status, BudgetStatus.NO_AFE)
        self.assertIsNone(check.remaining)
        self.assertEqual(
            derive_invoice_status(check.errors, check.warnings, check.status),
            InvoiceStatus.PENDING,
        )

    def test_unknown_afe_warns(self):
        check = self._reconcile("AFE-404", 500)
        self.assertEqual(check.status, BudgetStatus.AFE_NOT_FOUND)
        self.assertEqual(check.warnings, ["AFE AFE-404 not found in system"])
        self.assertIsNone(check.afe_id)

    def test_inactive_or_foreign_afe_is_not_found(self):
        self._create_afe(number="AFE-CLOSED", status="closed")
        self._create_afe(number="AFE-OTHER", owner_id=str(uuid.uuid4()))
        self.assertIsNone(get_active_afe(self.db, self.owner_id, "AFE-CLOSED"))
        self.assertIsNone(get_active_afe(self.db, self.owner_id, "AFE-OTHER"))

    def test_projection_does_not_touch_ledger(self):
        afe = self._create_afe()
        self._reconcile("AFE-2024-001", 3000)
        self.db.refresh(afe)
        self.assertEqual(to_money(afe.spent_amount), Decimal("95000.00"))

    def test_find_well_scoped_to_owner(self):
        self.db.add(WellIdentifier(owner_id=self.owner_id, uwi="100/01-02-003-04W5/00"))
        self.db.commit()
        self.assertIsNotNone(find_well(self.db, self.owner_id, " 100/01-02-003-04W5/00 "))
        self.assertIsNone(find_well(self.db, str(uuid.uuid4()), "100/01-02-003-04W5/00"))

    def test_format_money(self):
        self.assertEqual(format_money(Decimal("5000")), "$5,000.00")
        self.assertEqual(format_money(to_money("1234567.891")), "$1,234,567.89")

    # ------------------------------------------------------------------
    # Atomic reservation
    # ------------------------------------------------------------------

    def test_reserve_within_budget_increments_spent(self):
        afe = self._create_afe()
        ok, remaining = try_reserve_budget(self.db, afe.id, Decimal("3000"))
        self.db.commit()

        self.assertTrue(ok)
        self.assertEqual(remaining, Decimal("2000.00"))
        self.db.refresh(afe)
        self.assertEqual(to_money(afe.spent_amount), Decimal("98000.00"))

    def test_reserve_over_budget_is_refused(self):
        afe = self._create_afe()
        ok, remaining = try_reserve_budget(self.db, afe.id, 10000)
        self.db.commit()

        self.assertFalse(ok)
        self.assertEqual(remaining, Decimal("5000.00"))
        self.db.refresh(afe)
        self.assertEqual(to_money(afe.spent_amount), Decimal("95000.00"))

    def test_second_reservation_cannot_overdraw(self):
        afe = self._create_afe()
        first, _ = try_reserve_budget(self.db, afe.id, 4000)
        second, remaining = try_reserve_budget(self.db, afe.id, 4000)
        self.db.commit()

        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(remaining, Decimal("1000.00"))

    def test_reserve_on_closed_afe_is_refused(self):
        afe = self._create_afe(status="closed")
        ok, _ = try_reserve_budget(self.db, afe.id, 1)
        self.assertFalse(ok)

    def test_reserve_unknown_afe(self):
        ok, remaining = try_reserve_budget(self.db, uuid.uuid4(), 1)
        self.assertFalse(ok)
        self.assertIsNone(remaining)

    def test_reserve_rejects_non_positive_amount(self):
        afe = self._create_afe()
        with self.assertRaises(ValueError):
            try_reserve_budget(self.db, afe.id, 0)

    # ------------------------------------------------------------------
    # Posting approved spend
    # ------------------------------------------------------------------

    def test_post_within_budget_is_a_reservation(self):
        afe = self._create_afe()
        posting = post_spend(self.db, afe.id, 3000)
        self.db.commit()

        self.assertTrue(posting.reserved)
        self.assertFalse(posting.over_budget)
        self.assertEqual(posting.remaining, Decimal("2000.00"))
        self.db.refresh(afe)
        self.assertEqual(to_money(afe.spent_amount), Decimal("98000.00"))

    def test_post_past_budget_is_still_booked(self):
        afe = self._create_afe()
        posting = post_spend(self.db, afe.id, 8000)
        self.db.commit()

        self.assertFalse(posting.reserved)
        self.assertTrue(posting.over_budget)
        self.assertEqual(posting.amount, Decimal("8000.00"))
        self.assertEqual(posting.remaining, Decimal("-3000.00"))
        self.db.refresh(afe)
        self.assertEqual(to_money(afe.spent_amount), Decimal("103000.00"))

    def test_post_to_unknown_afe(self):
        self.assertIsNone(post_spend(self.db, uuid.uuid4(), 100))
