import json
import unittest
import uuid
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flowbills.core.auth import CurrentUser, get_current_user
from flowbills.core.dependencies import get_db
from flowbills.main import app
from flowbills.models.billing import AFE, AuditLog, Base, Invoice, InvoiceExtraction, WellIdentifier
from flowbills.services.ai.common.providers import BaseProvider, ProviderResult
from flowbills.services.ai.common.router import ResolvedConfig

UWI = "100/01-02-003-04W5/00"

EXTRACTED = {
    "invoice_number": "INV-7781",
    "vendor_name": "Acme Oilfield Services Ltd.",
    "amount": 3000,
    "invoice_date": "2024-03-01",
    "afe_number": "AFE-2024-001",
    "uwi": UWI,
    "field_ticket_numbers": ["FT-1001"],
    "po_number": "PO-55",
    "service_period_start": "2024-02-01",
    "service_period_end": "2024-02-29",
    "line_items": [{"description": "Vacuum truck", "quantity": 10, "unit_price": 300, "amount": 3000}],
    "confidence_scores": {"afe_number": 0.95, "uwi": 0.9, "field_tickets": 0.85, "line_items": 0.7},
}


class StubProvider(BaseProvider):
    name = "stub"

    def __init__(self, raw_text="", error=None):
        self.raw_text = raw_text
        self.error = error
        self.calls = 0

    async def generate(self, prompt, **kwargs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ProviderResult(raw_text=self.raw_text, model="stub-1", provider=self.name)


class InvoiceExtractionTests(unittest.TestCase):
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

        self.tenant_id = str(uuid.uuid4())
        self.current_user = CurrentUser(id=self.tenant_id, role="AP_CLERK")

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        self.client = TestClient(app)

        self.afe_id = self._create_afe()
        self._create_well()

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _create_afe(self, budget=100000, spent=95000):
        db = self.SessionLocal()
        afe = AFE(
            owner_id=self.tenant_id,
            afe_number="AFE-2024-001",
            well_name="Pembina 4-12",
            budget_amount=budget,
            spent_amount=spent,
        )
        db.add(afe)
        db.commit()
        afe_id = afe.id
        db.close()
        return afe_id

    def _create_well(self):
        db = self.SessionLocal()
        db.add(WellIdentifier(owner_id=self.tenant_id, uwi=UWI, well_name="Pembina 4-12"))
        db.commit()
        db.close()

    def _create_invoice(self, amount=3000, status="pending", owner_id=None):
        db = self.SessionLocal()
        invoice = Invoice(owner_id=owner_id or self.tenant_id, amount=amount, status=status)
        db.add(invoice)
        db.commit()
        invoice_id = str(invoice.id)
        db.close()
        return invoice_id

    def _stub(self, provider):
        return patch(
            "flowbills.services.ai.invoice_extract.service.resolve",
            return_value=ResolvedConfig(
                provider=provider,
                model="stub-1",
                temperature=0.0,
                max_tokens=512,
                timeout_seconds=5.0,
            ),
        )

    def _extract(self, invoice_id, payload=None, provider=None, content="Invoice INV-7781 AFE-2024-001 total: $3,000"):
        provider = provider or StubProvider(raw_text=json.dumps(payload if payload is not None else EXTRACTED))
        with self._stub(provider):
            return self.client.post(
                "/api/v1/invoices/extract",
                json={"invoice_id": invoice_id, "file_content": content},
            )

    def _audit_actions(self, invoice_id):
        db = self.SessionLocal()
        rows = (
            db.query(AuditLog)
            .filter(AuditLog.entity_id == invoice_id)
            .order_by(AuditLog.timestamp.asc())
            .all()
        )
        actions = [row.action for row in rows]
        db.close()
        return actions

    def _load(self, model, ident):
        db = self.SessionLocal()
        row = db.get(model, uuid.UUID(str(ident)))
        db.expunge(row)
        db.close()
        return row

    # ------------------------------------------------------------------
    # Successful attempts
    # ------------------------------------------------------------------

    def test_extract_within_budget_near_limit_needs_review(self):
        invoice_id = self._create_invoice(amount=3000)
        resp = self._extract(invoice_id)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()

        self.assertTrue(body["success"])
        self.assertEqual(body["budget_status"], "within_budget")
        self.assertEqual(body["budget_remaining"], 2000.0)
        self.assertEqual(body["validation_errors"], [])
        self.assertEqual(body["validation_warnings"], ["AFE AFE-2024-001 is at 98.0% of budget"])
        self.assertEqual(body["invoice_status"], "needs_review")
        self.assertEqual(body["extracted_data"]["afe_number"], "AFE-2024-001")
        self.assertEqual(body["extracted_data"]["field_ticket_numbers"], ["FT-1001"])

        extraction = self._load(InvoiceExtraction, body["extraction_id"])
        self.assertEqual(extraction.extraction_status, "completed")
        self.assertEqual(extraction.afe_id, self.afe_id)
        self.assertIsNotNone(extraction.uwi_id)
        self.assertEqual(extraction.field_ticket_refs, ["FT-1001"])
        self.assertEqual(extraction.model_version, "stub:stub-1")
        self.assertEqual(extraction.service_period_start.isoformat(), "2024-02-01")

        invoice = self._load(Invoice, invoice_id)
        self.assertEqual(invoice.status, "needs_review")
        self.assertEqual(invoice.invoice_number, "INV-7781")
        self.assertEqual(invoice.po_number, "PO-55")
        self.assertAlmostEqual(float(invoice.confidence_score), 0.85, places=3)

        afe = self._load(AFE, self.afe_id)
        self.assertEqual(Decimal(afe.spent_amount), Decimal("95000"))
        self.assertEqual(self._audit_actions(invoice_id), ["INVOICE_EXTRACTED"])

    def test_extract_over_budget_fails_validation(self):
        invoice_id = self._create_invoice(amount=10000)
        resp = self._extract(invoice_id)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()

        self.assertEqual(body["budget_status"], "over_budget")
        self.assertEqual(body["budget_remaining"], -5000.0)
        self.assertEqual(len(body["validation_errors"]), 1)
        self.assertIn("Over by $5,000.00", body["validation_errors"][0])
        self.assertEqual(body["invoice_status"], "validation_failed")

    def test_comfortable_budget_validates(self):
        self._create_afe_budget_headroom()
        invoice_id = self._create_invoice(amount=3000)
        body = self._extract(invoice_id).json()

        self.assertEqual(body["budget_status"], "within_budget")
        self.assertEqual(body["validation_warnings"], [])
        self.assertEqual(body["invoice_status"], "validated")

    def _create_afe_budget_headroom(self):
        db = self.SessionLocal()
        afe = db.get(AFE, self.afe_id)
        afe.spent_amount = 10000
        db.commit()
        db.close()

    def test_unknown_afe_and_uwi_warn(self):
        invoice_id = self._create_invoice()
        payload = dict(EXTRACTED, afe_number="AFE-404", uwi="102/99-99-099-99W9/00")
        body = self._extract(invoice_id, payload=payload).json()

        self.assertEqual(body["budget_status"], "afe_not_found")
        self.assertIsNone(body["budget_remaining"])
        self.assertEqual(
            body["validation_warnings"],
            ["AFE AFE-404 not found in system", "UWI 102/99-99-099-99W9/00 not found in system"],
        )
        self.assertEqual(body["invoice_status"], "needs_review")

    def test_no_afe_leaves_invoice_pending(self):
        invoice_id = self._create_invoice()
        payload = dict(EXTRACTED, afe_number=None)
        body = self._extract(invoice_id, payload=payload).json()

        self.assertEqual(body["budget_status"], "no_afe")
        self.assertEqual(body["validation_warnings"], [])
        self.assertEqual(body["invoice_status"], "pending")

    def test_unparseable_output_completes_with_raw_text(self):
        invoice_id = self._create_invoice()
        provider = StubProvider(raw_text="I cannot read this document.")
        body = self._extract(invoice_id, provider=provider).json()

        self.assertTrue(body["success"])
        self.assertEqual(body["budget_status"], "no_afe")
        self.assertEqual(body["invoice_status"], "pending")
        extraction = self._load(InvoiceExtraction, body["extraction_id"])
        self.assertEqual(extraction.extraction_status, "completed")
        self.assertEqual(extraction.raw_text, "I cannot read this document.")

    def test_re_extraction_creates_new_attempt(self):
        invoice_id = self._create_invoice()
        first = self._extract(invoice_id).json()
        second = self._extract(invoice_id, payload=dict(EXTRACTED, afe_number=None)).json()
        self.assertNotEqual(first["extraction_id"], second["extraction_id"])

        resp = self.client.get(f"/api/v1/invoices/{invoice_id}")
        self.assertEqual(resp.status_code, 200)
        latest = resp.json()["latest_extraction"]
        self.assertEqual(latest["id"], second["extraction_id"])
        self.assertEqual(latest["budget_status"], "no_afe")

        db = self.SessionLocal()
        attempts = db.query(InvoiceExtraction).filter(InvoiceExtraction.invoice_id == invoice_id).count()
        db.close()
        self.assertEqual(attempts, 2)

    def test_repeated_extraction_reaches_the_same_verdict(self):
        for amount in (3000, 10000):
            invoice_id = self._create_invoice(amount=amount)
            first = self._extract(invoice_id).json()
            second = self._extract(invoice_id).json()

            for key in ("budget_status", "budget_remaining", "validation_errors", "validation_warnings", "invoice_status"):
                self.assertEqual(first[key], second[key], f"{key} for amount {amount}")
            afe = self._load(AFE, self.afe_id)
            self.assertEqual(Decimal(afe.spent_amount), Decimal("95000"))

    # ------------------------------------------------------------------
    # Failed attempts
    # ------------------------------------------------------------------

    def test_provider_failure_marks_attempt_failed(self):
        invoice_id = self._create_invoice()
        provider = StubProvider(error=RuntimeError("upstream overloaded"))
        resp = self._extract(invoice_id, provider=provider)

        self.assertEqual(resp.status_code, 500)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("AI extraction failed", body["error"])
        self.assertIsNotNone(body["extraction_id"])

        extraction = self._load(InvoiceExtraction, body["extraction_id"])
        self.assertEqual(extraction.extraction_status, "failed")
        self.assertIn("AI extraction failed", extraction.error_message)

        invoice = self._load(Invoice, invoice_id)
        self.assertEqual(invoice.status, "pending")
        self.assertEqual(self._audit_actions(invoice_id), ["INVOICE_EXTRACTION_FAILED"])

    def test_failed_attempt_can_be_retried(self):
        invoice_id = self._create_invoice()
        self._extract(invoice_id, provider=StubProvider(error=RuntimeError("boom")))
        resp = self._extract(invoice_id)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["invoice_status"], "needs_review")

    # ------------------------------------------------------------------
    # Input and access errors
    # ------------------------------------------------------------------

    def test_blank_content_is_400_and_writes_nothing(self):
        invoice_id = self._create_invoice()
        provider = StubProvider(raw_text="{}")
        resp = self._extract(invoice_id, provider=provider, content="   ")

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(provider.calls, 0)
        db = self.SessionLocal()
        self.assertEqual(db.query(InvoiceExtraction).count(), 0)
        db.close()

    def test_missing_fields_is_400(self):
        resp = self.client.post("/api/v1/invoices/extract", json={"invoice_id": str(uuid.uuid4())})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("file_content", body["error"])

    def test_unknown_invoice_is_404(self):
        self.assertEqual(self._extract(str(uuid.uuid4())).status_code, 404)
        self.assertEqual(self._extract("not-a-uuid").status_code, 404)

    def test_other_tenant_invoice_is_404(self):
        invoice_id = self._create_invoice(owner_id=str(uuid.uuid4()))
        self.assertEqual(self._extract(invoice_id).status_code, 404)

    def test_service_role_may_extract_any_tenant(self):
        invoice_id = self._create_invoice(owner_id=str(uuid.uuid4()))
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="SERVICE")
        resp = self._extract(invoice_id, payload=dict(EXTRACTED, afe_number=None))
        self.assertEqual(resp.status_code, 200)

    def test_processing_invoice_is_409(self):
        invoice_id = self._create_invoice(status="processing")
        resp = self._extract(invoice_id)
        self.assertEqual(resp.status_code, 409)

    def test_approved_invoice_is_409(self):
        invoice_id = self._create_invoice(status="approved")
        self.assertEqual(self._extract(invoice_id).status_code, 409)

    def test_approver_role_is_forbidden(self):
        invoice_id = self._create_invoice()
        self.current_user = CurrentUser(id=self.tenant_id, role="APPROVER")
        resp = self._extract(invoice_id)
        self.assertEqual(resp.status_code, 403)

    def test_missing_token_is_401(self):
        app.dependency_overrides.pop(get_current_user, None)
        resp = self.client.post(
            "/api/v1/invoices/extract",
            json={"invoice_id": str(uuid.uuid4()), "file_content": "x"},
        )
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"success": False, "error": "Missing bearer token"})


class InvoiceCrudTests(unittest.TestCase):
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

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def test_create_and_fetch_invoice(self):
        resp = self.client.post(
            "/api/v1/invoices",
            json={"invoice_number": "INV-1", "amount": 1250.5, "invoice_date": "2024-03-01", "currency": "cad"},
        )
        self.assertEqual(resp.status_code, 201)
        created = resp.json()
        self.assertEqual(created["status"], "pending")
        self.assertEqual(created["currency"], "CAD")
        self.assertEqual(len(created["duplicate_hash"]), 64)

        fetched = self.client.get(f"/api/v1/invoices/{created['id']}").json()
        self.assertEqual(fetched["amount"], 1250.5)
        self.assertIsNone(fetched["latest_extraction"])
        self.assertEqual(fetched["approvals"], [])

        db = self.SessionLocal()
        actions = [row.action for row in db.query(AuditLog).all()]
        db.close()
        self.assertEqual(actions, ["INVOICE_CREATED"])

    def test_non_positive_amount_is_400(self):
        resp = self.client.post("/api/v1/invoices", json={"amount": 0})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("amount", resp.json()["error"])

    def test_unknown_vendor_is_400(self):
        resp = self.client.post("/api/v1/invoices", json={"amount": 10, "vendor_id": str(uuid.uuid4())})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Unknown vendor_id")
