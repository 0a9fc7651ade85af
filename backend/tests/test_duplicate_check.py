import unittest
import uuid
from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowbills.core.auth import CurrentUser, get_current_user
from flowbills.core.dependencies import get_db
from flowbills.main import app
from flowbills.models.billing import AuditLog, Base, Invoice, Vendor
from flowbills.services.duplicate_check import compute_duplicate_hash


class DuplicateHashTests(unittest.TestCase):
    def test_hash_is_stable_and_cent_based(self):
        vendor_id = str(uuid.uuid4())
        first = compute_duplicate_hash(vendor_id, 1500, date(2024, 3, 1), "PO-1")
        second = compute_duplicate_hash(vendor_id, "1500.00", date(2024, 3, 1), "PO-1")
        self.assertEqual(first, second)
        self.assertEqual(len(first), 64)

    def test_hash_changes_with_inputs(self):
        vendor_id = str(uuid.uuid4())
        base = compute_duplicate_hash(vendor_id, 1500, date(2024, 3, 1), "PO-1")
        self.assertNotEqual(base, compute_duplicate_hash(vendor_id, 1500.01, date(2024, 3, 1), "PO-1"))
        self.assertNotEqual(base, compute_duplicate_hash(vendor_id, 1500, date(2024, 3, 2), "PO-1"))
        self.assertNotEqual(base, compute_duplicate_hash(vendor_id, 1500, date(2024, 3, 1), None))


class DuplicateCheckEndpointTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="AP_CLERK")

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        self.client = TestClient(app)

        db = self.SessionLocal()
        vendor = Vendor(owner_id=self.current_user.id, vendor_name="Acme Oilfield")
        db.add(vendor)
        db.commit()
        self.vendor_id = str(vendor.id)
        db.close()

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _create(self, number, amount=1500, invoice_date="2024-03-01", po_number="PO-1"):
        resp = self.client.post(
            "/api/v1/invoices",
            json={
                "invoice_number": number,
                "vendor_id": self.vendor_id,
                "amount": amount,
                "invoice_date": invoice_date,
                "po_number": po_number,
            },
        )
        self.assertEqual(resp.status_code, 201)
        return resp.json()["id"]

    def _check(self, invoice_id):
        return self.client.post(f"/api/v1/invoices/{invoice_id}/duplicate-check")

    def _status(self, invoice_id):
        db = self.SessionLocal()
        status = db.get(Invoice, uuid.UUID(invoice_id)).status
        db.close()
        return status

    def test_exact_duplicate_marks_invoice(self):
        original = self._create("INV-1")
        resubmitted = self._create("INV-1-A")

        resp = self._check(resubmitted)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["is_duplicate"])
        self.assertEqual(body["risk_score"], 100)
        self.assertEqual([m["invoice_id"] for m in body["exact_matches"]], [original])
        self.assertEqual(body["fuzzy_matches"], [])
        self.assertEqual(self._status(resubmitted), "duplicate")
        self.assertEqual(self._status(original), "pending")

        db = self.SessionLocal()
        audit = db.query(AuditLog).filter(AuditLog.action == "INVOICE_DUPLICATE_DETECTED").one()
        self.assertEqual(str(audit.entity_id), resubmitted)
        self.assertEqual(audit.audit_meta["exact_matches"], [original])
        db.close()

    def test_same_invoice_number_is_not_a_duplicate(self):
        self._create("INV-1")
        again = self._create("INV-1")
        body = self._check(again).json()
        self.assertFalse(body["is_duplicate"])
        self.assertEqual(body["risk_score"], 0)
        self.assertEqual(self._status(again), "pending")

    def test_fuzzy_match_within_window_and_tolerance(self):
        nearby = self._create("INV-1", amount=1505, invoice_date="2024-03-04", po_number="PO-2")
        self._create("INV-OLD", amount=1500, invoice_date="2024-01-01", po_number="PO-3")
        self._create("INV-BIG", amount=2000, invoice_date="2024-03-01", po_number="PO-4")
        candidate = self._create("INV-2")

        body = self._check(candidate).json()
        self.assertFalse(body["is_duplicate"])
        self.assertEqual(body["risk_score"], 75)
        self.assertEqual([m["invoice_id"] for m in body["fuzzy_matches"]], [nearby])
        self.assertEqual(body["fuzzy_matches"][0]["match_type"], "fuzzy")
        self.assertEqual(self._status(candidate), "pending")

    def test_other_tenants_are_ignored(self):
        self._create("INV-1")
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="AP_CLERK")
        other = self._create("INV-9")
        body = self._check(other).json()
        self.assertFalse(body["is_duplicate"])
        self.assertEqual(body["fuzzy_matches"], [])

    def test_invoice_in_approval_keeps_status(self):
        self._create("INV-1")
        in_flight = self._create("INV-1-B")
        db = self.SessionLocal()
        db.get(Invoice, uuid.UUID(in_flight)).status = "pending_approval"
        db.commit()
        db.close()

        body = self._check(in_flight).json()
        self.assertTrue(body["is_duplicate"])
        self.assertEqual(self._status(in_flight), "pending_approval")

    def test_approver_cannot_run_check(self):
        invoice_id = self._create("INV-1")
        self.current_user = CurrentUser(id=self.current_user.id, role="APPROVER")
        self.assertEqual(self._check(invoice_id).status_code, 403)
