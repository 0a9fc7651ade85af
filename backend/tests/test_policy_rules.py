import unittest
from decimal import Decimal

from flowbills.services.policy.rules import (
    AmountAnomaly,
    ApprovalThreshold,
    Block,
    CreateFraudFlag,
    DuplicateBankAccount,
    DuplicateTaxId,
    FlagForReview,
    RequireApprovals,
    Unrecognized,
    compile_actions,
    compile_conditions,
)


class CompileConditionsTests(unittest.TestCase):
    def test_approval_threshold(self):
        self.assertEqual(
            compile_conditions("approval", {"amount_threshold": "5000"}),
            (ApprovalThreshold(amount=Decimal("5000.00")),),
        )

    def test_approval_without_threshold_is_unrecognized(self):
        (condition,) = compile_conditions("approval", {"amount_threshold": True})
        self.assertIsInstance(condition, Unrecognized)

    def test_fraud_checks(self):
        compiled = compile_conditions(
            "fraud",
            {
                "check_bank_duplicates": True,
                "check_tax_id_duplicates": {"enabled": True},
                "check_amount_anomaly": {"z_threshold": 2.5},
            },
        )
        self.assertEqual(
            compiled,
            (DuplicateBankAccount(), DuplicateTaxId(), AmountAnomaly(z_threshold=2.5, min_samples=5)),
        )

    def test_disabled_fraud_checks_are_unrecognized(self):
        (condition,) = compile_conditions(
            "fraud",
            {"check_bank_duplicates": False, "check_tax_id_duplicates": {"enabled": False}},
        )
        self.assertIsInstance(condition, Unrecognized)

    def test_unknown_type_and_shape(self):
        self.assertIsInstance(compile_conditions("vendor", {})[0], Unrecognized)
        self.assertIsInstance(compile_conditions("approval", ["amount_threshold"])[0], Unrecognized)


class CompileActionsTests(unittest.TestCase):
    def test_all_actions(self):
        compiled = compile_actions(
            {
                "require_approvals": 2,
                "flag_for_review": True,
                "block_processing": True,
                "create_fraud_flag": {"type": "vendor_mismatch", "risk_score": 150},
            },
            default_risk_score=50,
        )
        self.assertEqual(
            compiled,
            (RequireApprovals(2), FlagForReview(), Block(), CreateFraudFlag(kind="vendor_mismatch", risk_score=100)),
        )

    def test_invalid_values_are_ignored(self):
        compiled = compile_actions(
            {"require_approvals": True, "flag_for_review": "yes", "block_processing": 1},
            default_risk_score=50,
        )
        self.assertEqual(compiled, ())

    def test_fraud_flag_defaults(self):
        self.assertEqual(
            compile_actions({"create_fraud_flag": "split_billing", "risk_score": "n/a"}, default_risk_score=40),
            (CreateFraudFlag(kind="split_billing", risk_score=40),),
        )
        self.assertEqual(compile_actions(None, default_risk_score=40), ())
