"""Disbursement lifecycle: pending -> processing -> completed | failed."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from paperhands.payouts import Balance, PayoutBackends
from paperhands.store import (
    AMOUNT_QUANTUM,
    MAX_AMOUNT_AUD,
    DisbursementMethod,
    DisbursementStatus,
    DisbursementStore,
    valid_row_id,
)

LOGGER = logging.getLogger("paperhands.disbursements")

REQUIRED_FIELDS = ("loanId", "customerId", "amountAud", "recipientAddress", "method")


class ValidationError(ValueError):
    pass


@dataclass(frozen=True)
class DisbursementRequest:
    loan_id: int
    customer_id: int
    amount_aud: Decimal
    recipient_address: str
    method: DisbursementMethod


@dataclass
class DisbursementOutcome:
    record: Dict[str, Any]
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _parse_id(payload: Mapping[str, Any], field: str) -> int:
    value = payload[field]
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if parsed <= 0:
        raise ValidationError(f"{field} must be positive")
    if not valid_row_id(parsed):
        raise ValidationError(f"{field} is out of range")
    return parsed


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("amountAud must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("amountAud must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amountAud must be a positive number")
    if amount > MAX_AMOUNT_AUD:
        raise ValidationError(f"amountAud must not exceed {MAX_AMOUNT_AUD}")
    if amount != amount.quantize(AMOUNT_QUANTUM):
        raise ValidationError("amountAud must be in whole cents")
    return amount.quantize(AMOUNT_QUANTUM)


def parse_disbursement_request(payload: Any) -> DisbursementRequest:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")
    if any(not payload.get(field) for field in REQUIRED_FIELDS):
        raise ValidationError("Missing required fields")
    try:
        method = DisbursementMethod(payload["method"])
    except ValueError:
        raise ValidationError("Invalid disbursement method")
    recipient = payload["recipientAddress"]
    if not isinstance(recipient, str) or not recipient.strip():
        raise ValidationError("recipientAddress must be a non-empty string")
    return DisbursementRequest(
        loan_id=_parse_id(payload, "loanId"),
        customer_id=_parse_id(payload, "customerId"),
        amount_aud=_parse_amount(payload["amountAud"]),
        recipient_address=recipient.strip(),
        method=method,
    )


class DisbursementOrchestrator:
    """Runs one disbursement end to end within the caller's thread.

    Every request creates a fresh record; there is no idempotency key and no
    per-loan exclusion, so two identical requests produce two payouts. Balance
    sufficiency is left to the backend.
    """

    def __init__(self, store: DisbursementStore, backends: PayoutBackends) -> None:
        self.store = store
        self.backends = backends

    def disburse(self, request: DisbursementRequest) -> DisbursementOutcome:
        backend = self.backends.resolve(request.method)
        record = self.store.create(
            request.loan_id,
            request.customer_id,
            request.amount_aud,
            request.recipient_address,
            request.method,
        )
        disbursement_id = record["id"]
        LOGGER.info(
            "Disbursement %s created: loan %s, %s AUD via %s",
            disbursement_id,
            request.loan_id,
            request.amount_aud,
            request.method.value,
        )
        self.store.update(disbursement_id, DisbursementStatus.PROCESSING)
        try:
            reference = backend.send(request.amount_aud, request.recipient_address)
            if not reference:
                raise RuntimeError(f"{request.method.value} backend returned no transaction reference")
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            LOGGER.error("Disbursement %s failed on %s backend: %s", disbursement_id, request.method.value, message)
            failed = self.store.update(disbursement_id, DisbursementStatus.FAILED, error_message=message)
            return DisbursementOutcome(record=failed or {}, error=message)
        completed = self.store.update(disbursement_id, DisbursementStatus.COMPLETED, tx_hash=reference)
        LOGGER.info("Disbursement %s completed: %s", disbursement_id, reference)
        return DisbursementOutcome(record=completed or {})

    def balance(self, method: DisbursementMethod) -> Balance:
        return self.backends.resolve(method).balance()


__all__ = [
    "DisbursementOrchestrator",
    "DisbursementOutcome",
    "DisbursementRequest",
    "ValidationError",
    "parse_disbursement_request",
]
