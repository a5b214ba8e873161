"""HTTP API for loan disbursements."""
from __future__ import annotations

import hmac
import json
import logging
import os
import threading
import time
import urllib.parse
from collections import deque
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Deque, Dict, List, Optional

from paperhands.disbursements import DisbursementOrchestrator, ValidationError, parse_disbursement_request
from paperhands.payouts import PayoutBackends, build_backends
from paperhands.pricing import PriceCache, PriceUnavailable, build_price_cache
from paperhands.store import MAX_ROW_ID, DisbursementMethod, DisbursementStore

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
LOGGER = logging.getLogger("paperhands.api")


class APIError(Exception):
    def __init__(self, status: int, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details or {}


class RateLimiter:
    """IP-based rate limiter to mitigate abusive clients."""

    def __init__(self, limit: int = 120, window: int = 60, clock: Callable[[], float] = time.time) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._records: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _expire(self, bucket: Deque[float], now: float) -> None:
        while bucket and now - bucket[0] > self.window:
            bucket.popleft()

    def _sweep(self, now: float) -> None:
        # Drop clients whose whole window has elapsed.
        stale = [key for key, bucket in self._records.items() if not bucket or now - bucket[-1] > self.window]
        for key in stale:
            del self._records[key]
        self._last_sweep = now

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep > self.window:
                self._sweep(now)
            bucket = self._records.setdefault(key, deque())
            self._expire(bucket, now)
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True


STORE: Optional[DisbursementStore] = None
BACKENDS: Optional[PayoutBackends] = None
ORCHESTRATOR: Optional[DisbursementOrchestrator] = None
PRICES: Optional[PriceCache] = None
RATE_LIMITER = RateLimiter(
    limit=int(os.getenv("RATE_LIMIT", "120")),
    window=int(os.getenv("RATE_LIMIT_WINDOW", "60")),
)


def configure(
    *,
    store: Optional[DisbursementStore] = None,
    backends: Optional[PayoutBackends] = None,
    prices: Optional[PriceCache] = None,
) -> DisbursementOrchestrator:
    """Wire the store, payout backends and price cache used by request handlers."""
    global STORE, BACKENDS, ORCHESTRATOR, PRICES
    STORE = store or DisbursementStore()
    BACKENDS = backends or build_backends()
    PRICES = prices or build_price_cache()
    ORCHESTRATOR = DisbursementOrchestrator(STORE, BACKENDS)
    return ORCHESTRATOR


def _path_id(value: str, label: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise APIError(HTTPStatus.BAD_REQUEST, f"invalid {label}")
    if abs(parsed) > MAX_ROW_ID:
        raise APIError(HTTPStatus.BAD_REQUEST, f"invalid {label}")
    return parsed


def _route_parts(path: str) -> List[str]:
    parts = [part for part in urllib.parse.urlparse(path).path.split("/") if part]
    if parts and parts[0] == "api":
        parts = parts[1:]
    return parts


class Handler(BaseHTTPRequestHandler):
    server_version = "Paperhands/1.0"

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - logging override
        LOGGER.info("%s - %s", self.address_string(), format % args)

    def _json(self, status: int, payload: Any) -> None:
        body = json.dumps(payload, allow_nan=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Any:
        try:
            length = int(self.headers.get("Content-Length", "0"))
            if length < 0:
                raise ValueError("negative Content-Length")
            raw = self.rfile.read(length) if length else b"{}"
            return json.loads(raw or b"{}")
        except ValueError:
            # JSONDecodeError and UnicodeDecodeError are both ValueError.
            raise APIError(HTTPStatus.BAD_REQUEST, "invalid JSON body")

    def _ensure_authorized(self) -> bool:
        api_key = os.getenv("API_KEY")
        if not api_key:
            return True
        provided = self.headers.get("X-API-Key", "")
        if not provided or not hmac.compare_digest(api_key, provided):
            self._json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
            return False
        return True

    def _rate_limit(self) -> bool:
        remote = self.client_address[0]
        if not RATE_LIMITER.allow(remote):
            self._json(HTTPStatus.TOO_MANY_REQUESTS, {"error": "rate-limit", "retryIn": RATE_LIMITER.window})
            return False
        return True

    def do_OPTIONS(self) -> None:  # noqa: N802 - preflight support
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_header("Access-Control-Allow-Headers", "Content-Type,X-API-Key")
        self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
        self.end_headers()

    def end_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        super().end_headers()

    def do_GET(self) -> None:  # noqa: N802
        parts = _route_parts(self.path)
        if parts == ["health"]:
            self._json(HTTPStatus.OK, {"ok": True, "version": self.server_version})
            return
        if not self._rate_limit() or not self._ensure_authorized():
            return
        try:
            if parts == ["price", "btc-aud"]:
                self._handle_price("BTC", "AUD")
                return
            if parts and parts[0] == "disbursements" and len(parts) in (2, 3):
                self._handle_get_disbursements(parts[1:])
                return
        except APIError as exc:
            self._json(exc.status, {"error": exc.message, **({"details": exc.details} if exc.details else {})})
            return
        except Exception as exc:
            LOGGER.exception("Error fetching disbursements: %s", exc)
            self._json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Failed to fetch disbursements"})
            return
        self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})

    def do_POST(self) -> None:  # noqa: N802
        parts = _route_parts(self.path)
        if not self._rate_limit() or not self._ensure_authorized():
            return
        if parts != ["disbursements"]:
            self._json(HTTPStatus.NOT_FOUND, {"error": "not found"})
            return
        try:
            payload = self._read_json()
            self._handle_create_disbursement(payload)
        except APIError as exc:
            self._json(exc.status, {"error": exc.message})
        except ValidationError as exc:
            self._json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
        except Exception as exc:
            LOGGER.exception("Error creating disbursement: %s", exc)
            self._json(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                {"error": "Failed to create disbursement", "details": str(exc)},
            )

    def _handle_create_disbursement(self, payload: Any) -> None:
        request = parse_disbursement_request(payload)
        outcome = ORCHESTRATOR.disburse(request)
        if outcome.succeeded:
            self._json(HTTPStatus.CREATED, {"success": True, "disbursement": outcome.record})
            return
        self._json(
            HTTPStatus.INTERNAL_SERVER_ERROR,
            {"success": False, "error": outcome.error, "disbursement": outcome.record},
        )

    def _handle_get_disbursements(self, parts: List[str]) -> None:
        if len(parts) == 1:
            record = STORE.get(_path_id(parts[0], "disbursement id"))
            if not record:
                raise APIError(HTTPStatus.NOT_FOUND, "Disbursement not found")
            self._json(HTTPStatus.OK, record)
            return
        scope, value = parts
        if scope == "balance":
            self._handle_balance(value)
            return
        if scope == "loan":
            self._json(HTTPStatus.OK, STORE.list_by_loan(_path_id(value, "loan id")))
            return
        if scope == "customer":
            self._json(HTTPStatus.OK, STORE.list_by_customer(_path_id(value, "customer id")))
            return
        raise APIError(HTTPStatus.NOT_FOUND, "not found")

    def _handle_balance(self, raw_method: str) -> None:
        try:
            method = DisbursementMethod(raw_method)
        except ValueError:
            raise APIError(HTTPStatus.BAD_REQUEST, "Invalid disbursement method")
        try:
            balance = ORCHESTRATOR.balance(method)
        except Exception as exc:
            LOGGER.error("Error fetching %s balance: %s", method.value, exc)
            raise APIError(HTTPStatus.INTERNAL_SERVER_ERROR, "Failed to fetch balance", {"error": str(exc)})
        self._json(HTTPStatus.OK, {"method": method.value, "balance": balance.to_dict()})

    def _handle_price(self, base: str, quote: str) -> None:
        try:
            price = PRICES.get(base, quote)
        except PriceUnavailable as exc:
            LOGGER.error("Error fetching %s/%s price: %s", base, quote, exc)
            raise APIError(HTTPStatus.INTERNAL_SERVER_ERROR, f"Failed to fetch {base} price")
        self._json(HTTPStatus.OK, price.to_dict())


def run(port: Optional[int] = None) -> None:
    if ORCHESTRATOR is None:
        configure()
    port = port or int(os.getenv("PORT", "8080"))
    server = ThreadingHTTPServer(("0.0.0.0", port), Handler)
    LOGGER.info("Paperhands API listening on http://0.0.0.0:%s", port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        LOGGER.info("Shutting down due to interrupt")
    finally:
        server.server_close()
        if STORE is not None:
            STORE.close()


if __name__ == "__main__":
    run()
