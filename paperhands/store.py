"""Persistent disbursement store backed by SQLite."""
from __future__ import annotations

import os
import sqlite3
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class DisbursementMethod(str, Enum):
    ON_CHAIN = "on_chain"
    API = "api"


class DisbursementStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DisbursementStatus.COMPLETED, DisbursementStatus.FAILED})

# SQLite INTEGER is a signed 64-bit value.
MAX_ROW_ID = 2**63 - 1
MAX_AMOUNT_AUD = Decimal("1000000000")
AMOUNT_QUANTUM = Decimal("0.01")


def valid_row_id(value: int) -> bool:
    return 0 < value <= MAX_ROW_ID


_COLUMNS = (
    "id, loan_id, customer_id, amount_aud, method, status, recipient_address, "
    "tx_hash, error_message, created_at, updated_at"
)


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _row_to_record(row: tuple) -> Dict[str, Any]:
    return {
        "id": int(row[0]),
        "loanId": int(row[1]),
        "customerId": int(row[2]),
        "amountAud": float(Decimal(row[3])),
        "method": row[4],
        "status": row[5],
        "recipientAddress": row[6],
        "txHash": row[7],
        "errorMessage": row[8],
        "createdAt": _isoformat(row[9]),
        "updatedAt": _isoformat(row[10]),
    }


def _check_outcome_fields(status: DisbursementStatus, tx_hash: Optional[str], error_message: Optional[str]) -> None:
    if tx_hash and status is not DisbursementStatus.COMPLETED:
        raise ValueError("tx_hash may only be recorded on a completed disbursement")
    if error_message and status is not DisbursementStatus.FAILED:
        raise ValueError("error_message may only be recorded on a failed disbursement")
    if status is DisbursementStatus.COMPLETED and not tx_hash:
        raise ValueError("completed disbursement requires a tx_hash")
    if status is DisbursementStatus.FAILED and not error_message:
        raise ValueError("failed disbursement requires an error_message")


class DisbursementStore:
    """Thread-safe append-only store of disbursement attempts.

    Rows are created in ``pending`` and only ever move forward through status
    updates; there is no delete. The identity fields (loan, customer, amount,
    method, recipient) are written once on creation.
    """

    def __init__(self, db_path: Optional[str] = None, *, clock: Callable[[], float] = time.time) -> None:
        self._db_path = db_path or os.getenv("DISBURSEMENT_DB_PATH", "./data/disbursements.db")
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._lock = threading.Lock()
        self._clock = clock
        self._create_schema()

    def _create_schema(self) -> None:
        with self._conn:  # type: ignore[call-arg]
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS disbursements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    loan_id INTEGER NOT NULL,
                    customer_id INTEGER NOT NULL,
                    amount_aud TEXT NOT NULL,
                    method TEXT NOT NULL,
                    status TEXT NOT NULL,
                    recipient_address TEXT NOT NULL,
                    tx_hash TEXT,
                    error_message TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_disbursements_loan ON disbursements(loan_id)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_disbursements_customer ON disbursements(customer_id)"
            )

    def _fetch(self, disbursement_id: int) -> Optional[Dict[str, Any]]:
        cursor = self._conn.execute(
            f"SELECT {_COLUMNS} FROM disbursements WHERE id = ?",
            (disbursement_id,),
        )
        row = cursor.fetchone()
        return _row_to_record(row) if row else None

    def create(
        self,
        loan_id: int,
        customer_id: int,
        amount_aud: Decimal,
        recipient_address: str,
        method: DisbursementMethod,
    ) -> Dict[str, Any]:
        method = DisbursementMethod(method)
        amount = Decimal(str(amount_aud))
        if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT_AUD:
            raise ValueError(f"amount_aud must be positive and at most {MAX_AMOUNT_AUD}")
        if amount != amount.quantize(AMOUNT_QUANTUM):
            raise ValueError("amount_aud must be in whole cents")
        if not (valid_row_id(int(loan_id)) and valid_row_id(int(customer_id))):
            raise ValueError("loan_id and customer_id must be positive 64-bit integers")
        if not recipient_address:
            raise ValueError("recipient_address is required")
        now = self._clock()
        with self._lock:
            with self._conn:  # type: ignore[call-arg]
                cursor = self._conn.execute(
                    """
                    INSERT INTO disbursements(
                        loan_id, customer_id, amount_aud, method, status, recipient_address, created_at, updated_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(loan_id),
                        int(customer_id),
                        str(amount),
                        method.value,
                        DisbursementStatus.PENDING.value,
                        recipient_address,
                        now,
                        now,
                    ),
                )
            return self._fetch(int(cursor.lastrowid)) or {}

    def update(
        self,
        disbursement_id: int,
        status: DisbursementStatus,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        status = DisbursementStatus(status)
        _check_outcome_fields(status, tx_hash, error_message)
        if not valid_row_id(int(disbursement_id)):
            return None
        with self._lock:
            with self._conn:  # type: ignore[call-arg]
                cursor = self._conn.execute(
                    """
                    UPDATE disbursements
                    SET status = ?, tx_hash = ?, error_message = ?, updated_at = ?
                    WHERE id = ? AND status NOT IN (?, ?)
                    """,
                    (
                        status.value,
                        tx_hash,
                        error_message,
                        self._clock(),
                        int(disbursement_id),
                        DisbursementStatus.COMPLETED.value,
                        DisbursementStatus.FAILED.value,
                    ),
                )
            record = self._fetch(int(disbursement_id))
            if cursor.rowcount == 0 and record is not None:
                raise ValueError(f"disbursement {disbursement_id} is already {record['status']}")
            return record

    def get(self, disbursement_id: int) -> Optional[Dict[str, Any]]:
        if not valid_row_id(int(disbursement_id)):
            return None
        with self._lock:
            return self._fetch(int(disbursement_id))

    def _list_where(self, column: str, value: int) -> List[Dict[str, Any]]:
        if not valid_row_id(int(value)):
            return []
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT {_COLUMNS} FROM disbursements WHERE {column} = ? ORDER BY created_at DESC, id DESC",
                (int(value),),
            )
            return [_row_to_record(row) for row in cursor.fetchall()]

    def list_by_loan(self, loan_id: int) -> List[Dict[str, Any]]:
        return self._list_where("loan_id", loan_id)

    def list_by_customer(self, customer_id: int) -> List[Dict[str, Any]]:
        return self._list_where("customer_id", customer_id)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = [
    "AMOUNT_QUANTUM",
    "MAX_AMOUNT_AUD",
    "MAX_ROW_ID",
    "TERMINAL_STATUSES",
    "DisbursementMethod",
    "DisbursementStatus",
    "DisbursementStore",
    "valid_row_id",
]
