import os
import shutil
import tempfile
import unittest
from decimal import Decimal
from unittest import mock

from paperhands.disbursements import (
    DisbursementOrchestrator,
    DisbursementRequest,
    ValidationError,
    parse_disbursement_request,
)
from paperhands.payouts import Balance, OnChainPayoutError, PayoutBackends
from paperhands.store import DisbursementMethod, DisbursementStore


def _payload(**overrides):
    payload = {
        "loanId": 1,
        "customerId": 1,
        "amountAud": 100,
        "recipientAddress": "0xabc",
        "method": "on_chain",
    }
    payload.update(overrides)
    return payload


class ParseDisbursementRequestTests(unittest.TestCase):
    def test_valid_payload(self) -> None:
        request = parse_disbursement_request(_payload(amountAud="100.50", recipientAddress=" 0xabc "))
        self.assertEqual(
            request,
            DisbursementRequest(
                loan_id=1,
                customer_id=1,
                amount_aud=Decimal("100.50"),
                recipient_address="0xabc",
                method=DisbursementMethod.ON_CHAIN,
            ),
        )

    def test_missing_fields(self) -> None:
        for field in ("loanId", "customerId", "amountAud", "recipientAddress", "method"):
            payload = _payload()
            del payload[field]
            with self.subTest(field=field):
                with self.assertRaises(ValidationError) as ctx:
                    parse_disbursement_request(payload)
                self.assertEqual(str(ctx.exception), "Missing required fields")

    def test_zero_amount_counts_as_missing(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_disbursement_request(_payload(amountAud=0))
        self.assertEqual(str(ctx.exception), "Missing required fields")

    def test_invalid_method(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_disbursement_request(_payload(method="paypal"))
        self.assertEqual(str(ctx.exception), "Invalid disbursement method")

    def test_invalid_values(self) -> None:
        for overrides in (
            {"amountAud": -5},
            {"amountAud": "lots"},
            {"amountAud": "NaN"},
            {"amountAud": True},
            {"loanId": "abc"},
            {"customerId": 1.5},
            {"recipientAddress": 42},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    parse_disbursement_request(_payload(**overrides))

    def test_amount_is_bounded_and_whole_cents(self) -> None:
        for amount in ("1e400", "Infinity", 1e400, "1000000000.01", "10.001"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    parse_disbursement_request(_payload(amountAud=amount))
        request = parse_disbursement_request(_payload(amountAud="1000000000"))
        self.assertEqual(request.amount_aud, Decimal("1000000000.00"))
        self.assertEqual(str(parse_disbursement_request(_payload(amountAud="25.5")).amount_aud), "25.50")
        self.assertEqual(str(parse_disbursement_request(_payload(amountAud="25.500")).amount_aud), "25.50")

    def test_ids_must_fit_a_64_bit_integer(self) -> None:
        for overrides in ({"loanId": 10**30}, {"customerId": str(2**63)}):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError) as ctx:
                    parse_disbursement_request(_payload(**overrides))
                self.assertIn("out of range", str(ctx.exception))
        request = parse_disbursement_request(_payload(loanId=2**63 - 1))
        self.assertEqual(request.loan_id, 2**63 - 1)

    def test_non_object_body(self) -> None:
        with self.assertRaises(ValidationError):
            parse_disbursement_request(["not", "an", "object"])


class DisbursementOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="orchestrator-")
        self.store = DisbursementStore(os.path.join(self.tmpdir, "store.db"))
        self.on_chain = mock.Mock()
        self.on_chain.send.return_value = "0xhash"
        self.api = mock.Mock()
        self.api.send.return_value = "PAY-1"
        self.orchestrator = DisbursementOrchestrator(
            self.store,
            PayoutBackends({DisbursementMethod.ON_CHAIN: self.on_chain, DisbursementMethod.API: self.api}),
        )

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def test_successful_disbursement_completes(self) -> None:
        outcome = self.orchestrator.disburse(parse_disbursement_request(_payload()))
        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.record["status"], "completed")
        self.assertEqual(outcome.record["txHash"], "0xhash")
        self.assertIsNone(outcome.record["errorMessage"])
        self.on_chain.send.assert_called_once_with(Decimal("100"), "0xabc")
        self.api.send.assert_not_called()
        self.assertEqual(self.store.get(outcome.record["id"]), outcome.record)

    def test_api_method_uses_api_backend(self) -> None:
        outcome = self.orchestrator.disburse(parse_disbursement_request(_payload(method="api", recipientAddress="acct")))
        self.assertEqual(outcome.record["txHash"], "PAY-1")
        self.on_chain.send.assert_not_called()

    def test_backend_failure_marks_failed_with_message(self) -> None:
        self.on_chain.send.side_effect = OnChainPayoutError("RPC timeout")
        outcome = self.orchestrator.disburse(parse_disbursement_request(_payload()))
        self.assertFalse(outcome.succeeded)
        self.assertEqual(outcome.error, "RPC timeout")
        self.assertEqual(outcome.record["status"], "failed")
        self.assertEqual(outcome.record["errorMessage"], "RPC timeout")
        self.assertIsNone(outcome.record["txHash"])

    def test_unexpected_backend_exception_is_recorded_as_failure(self) -> None:
        self.on_chain.send.side_effect = RuntimeError("RPC timeout")
        outcome = self.orchestrator.disburse(parse_disbursement_request(_payload()))
        self.assertEqual(outcome.record["status"], "failed")
        self.assertEqual(outcome.record["errorMessage"], "RPC timeout")

    def test_empty_reference_is_a_failure(self) -> None:
        self.on_chain.send.return_value = ""
        outcome = self.orchestrator.disburse(parse_disbursement_request(_payload()))
        self.assertEqual(outcome.record["status"], "failed")
        self.assertIn("no transaction reference", outcome.record["errorMessage"])

    def test_record_passes_through_processing_before_send(self) -> None:
        seen = []

        def send(amount, recipient):
            seen.append(self.store.list_by_loan(1)[0]["status"])
            return "0xhash"

        self.on_chain.send.side_effect = send
        self.orchestrator.disburse(parse_disbursement_request(_payload()))
        self.assertEqual(seen, ["processing"])

    def test_terminal_status_and_outcome_fields_are_exclusive(self) -> None:
        self.on_chain.send.side_effect = [OnChainPayoutError("nonce too low"), "0x1", "0x2"]
        for _ in range(3):
            self.orchestrator.disburse(parse_disbursement_request(_payload()))
        for record in self.store.list_by_loan(1):
            self.assertIn(record["status"], {"completed", "failed"})
            self.assertEqual(bool(record["txHash"]), record["status"] == "completed")
            self.assertEqual(bool(record["errorMessage"]), record["status"] == "failed")

    def test_duplicate_requests_create_independent_records(self) -> None:
        request = parse_disbursement_request(_payload())
        first = self.orchestrator.disburse(request)
        second = self.orchestrator.disburse(request)
        self.assertNotEqual(first.record["id"], second.record["id"])
        self.assertEqual(self.on_chain.send.call_count, 2)

    def test_balance_dispatches_to_backend(self) -> None:
        self.api.balance.return_value = Balance(1.0, 0.0, 1.0)
        self.assertEqual(self.orchestrator.balance(DisbursementMethod.API), Balance(1.0, 0.0, 1.0))
        self.on_chain.balance.assert_not_called()


if __name__ == "__main__":
    unittest.main()
