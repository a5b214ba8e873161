"""Payout backends used to release loan funds to borrowers."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from eth_account import Account
from eth_utils import is_address, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from paperhands.store import DisbursementMethod

LOGGER = logging.getLogger("paperhands.payouts")

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass
class Balance:
    available_balance: float
    pending_balance: float
    total_balance: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "availableBalance": self.available_balance,
            "pendingBalance": self.pending_balance,
            "totalBalance": self.total_balance,
        }


class PayoutError(Exception):
    """Raised by a payout backend when a send or balance call fails.

    The message carries the underlying failure's message (the payments API
    backend prefixes it with the failing call); the original exception is kept
    on ``cause`` (and chained as ``__cause__``).
    """

    backend = "payout"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class OnChainPayoutError(PayoutError):
    backend = "on_chain"


class ApiPayoutError(PayoutError):
    backend = "api"


class PayoutBackend(Protocol):
    name: str

    def send(self, amount: Decimal, recipient: str) -> str:
        ...

    def balance(self) -> Balance:
        ...


def _load_abi(env_var: str, default: Iterable[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    path = os.getenv(env_var)
    if not path:
        return default
    candidate = Path(path)
    if not candidate.exists():
        LOGGER.warning("ABI file %s missing, falling back to the ERC-20 ABI", candidate)
        return default
    with candidate.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _init_web3(url: Optional[str]) -> Optional[Web3]:
    if not url:
        return None
    provider = Web3.HTTPProvider(url, request_kwargs={"timeout": int(os.getenv("WEB3_TIMEOUT", "15"))})
    web3 = Web3(provider)
    try:
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    except ValueError:  # pragma: no cover - already injected
        pass
    return web3


def _to_units(amount: Decimal, decimals: int) -> int:
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def _from_units(amount: int, decimals: int) -> float:
    return float(Decimal(int(amount)) / (Decimal(10) ** decimals))


class OnChainPayoutBackend:
    """Transfers an AUD stablecoin (ERC-20) from the operator wallet."""

    name = DisbursementMethod.ON_CHAIN.value

    def __init__(
        self,
        *,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        private_key: Optional[str] = None,
        decimals: Optional[int] = None,
        web3: Optional[Web3] = None,
    ) -> None:
        self.rpc_url = rpc_url or os.getenv("BLOCKCHAIN_RPC_URL", "")
        self.contract_address = contract_address or os.getenv("AUDC_CONTRACT_ADDRESS", "")
        self.private_key = private_key or os.getenv("DISBURSEMENT_PRIVATE_KEY", "")
        decimals_env = os.getenv("AUDC_DECIMALS")
        self._decimals: Optional[int] = decimals if decimals is not None else (int(decimals_env) if decimals_env else None)
        self.receipt_timeout = int(os.getenv("ONCHAIN_RECEIPT_TIMEOUT", "120"))
        self.web3 = web3 if web3 is not None else _init_web3(self.rpc_url)
        self.account_address: Optional[str] = None
        self.contract = None
        if self.private_key:
            try:
                self.account_address = Account.from_key(self.private_key).address
            except Exception as exc:
                LOGGER.error("Invalid disbursement signing key: %s", exc)
                self.private_key = ""
        if self.web3 is not None and self.contract_address:
            try:
                self.contract = self.web3.eth.contract(
                    address=to_checksum_address(self.contract_address),
                    abi=_load_abi("AUDC_ABI", ERC20_ABI),
                )
            except Exception as exc:
                LOGGER.error("Failed to bind stablecoin contract %s: %s", self.contract_address, exc)
                self.contract = None

    def available(self) -> bool:
        return bool(self.web3 is not None and self.contract is not None and self.account_address)

    def _require_available(self) -> None:
        if not self.available():
            raise OnChainPayoutError("on-chain disbursement is not configured")

    def _token_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(self.contract.functions.decimals().call())
        return self._decimals

    def send(self, amount: Decimal, recipient: str) -> str:
        LOGGER.info("Sending %s AUD to %s via contract %s", amount, recipient, self.contract_address)
        try:
            self._require_available()
            if not is_address(recipient):
                raise OnChainPayoutError(f"invalid recipient address: {recipient}")
            units = _to_units(amount, self._token_decimals())
            if units <= 0:
                raise OnChainPayoutError("amount is below the token's smallest unit")
            transfer = self.contract.functions.transfer(to_checksum_address(recipient), units)
            tx_params: Dict[str, Any] = {
                "from": self.account_address,
                "nonce": self.web3.eth.get_transaction_count(self.account_address, "pending"),
                "gasPrice": self.web3.eth.gas_price,
                "chainId": self.web3.eth.chain_id,
            }
            tx_params["gas"] = transfer.estimate_gas(tx_params)
            built = transfer.build_transaction(tx_params)
            signed = self.web3.eth.account.sign_transaction(built, private_key=self.private_key)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            reference = HexBytes(receipt["transactionHash"]).to_0x_hex()
            if receipt.get("status", 1) == 0:
                raise OnChainPayoutError(f"transfer {reference} reverted")
        except OnChainPayoutError as exc:
            LOGGER.error("On-chain transfer failed: %s", exc)
            raise
        except Exception as exc:
            LOGGER.error("On-chain transfer failed: %s", exc)
            raise OnChainPayoutError(str(exc), cause=exc) from exc
        LOGGER.info("On-chain transfer confirmed: %s", reference)
        return reference

    def balance(self) -> Balance:
        LOGGER.info("Fetching stablecoin balance from contract %s", self.contract_address)
        try:
            self._require_available()
            decimals = self._token_decimals()
            balance_of = self.contract.functions.balanceOf(self.account_address)
            total = _from_units(balance_of.call(block_identifier="latest"), decimals)
            available = _from_units(balance_of.call(block_identifier="pending"), decimals)
        except OnChainPayoutError:
            raise
        except Exception as exc:
            LOGGER.error("On-chain balance fetch failed: %s", exc)
            raise OnChainPayoutError(str(exc), cause=exc) from exc
        return Balance(
            available_balance=available,
            pending_balance=max(total - available, 0.0),
            total_balance=total,
        )


def _json_request(request: urllib.request.Request, timeout: int) -> Any:
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        details = exc.read().decode("utf-8") if exc.fp else exc.reason
        raise ApiPayoutError(f"API error ({exc.code}): {details}", cause=exc) from exc
    return json.loads(raw) if raw else {}


def _root_cause(exc: BaseException) -> BaseException:
    if isinstance(exc, PayoutError) and exc.cause is not None:
        return exc.cause
    return exc


class PaymentApiBackend:
    """Bank transfer through a generic payments provider API."""

    name = DisbursementMethod.API.value

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("PAYMENT_API_URL", "")).rstrip("/")
        self.api_key = api_key or os.getenv("PAYMENT_API_KEY", "")
        self.account_id = account_id or os.getenv("PAYMENT_ACCOUNT_ID", "")
        self.timeout = int(os.getenv("PAYMENT_API_TIMEOUT", "30"))

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.base_url or not self.api_key:
            raise ApiPayoutError("payment API is not configured")
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(
            f"{self.base_url}{path}",
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        return _json_request(request, self.timeout)

    def send(self, amount: Decimal, recipient: str) -> str:
        LOGGER.info("Sending %s AUD to %s via %s", amount, recipient, self.base_url)
        try:
            payload = self._request(
                "POST",
                "/payments",
                {
                    "sourceAccountId": self.account_id,
                    "destinationAccount": recipient,
                    "amount": str(amount),
                    "currency": "AUD",
                },
            )
            reference = payload.get("paymentReference") or payload.get("transactionId")
            if not reference:
                raise ApiPayoutError("payment API response missing a payment reference")
        except Exception as exc:
            LOGGER.error("Payment API failed: %s", exc)
            raise ApiPayoutError(f"Payment API failed: {exc}", cause=_root_cause(exc)) from exc
        return str(reference)

    def balance(self) -> Balance:
        LOGGER.info("Fetching balance for account %s", self.account_id)
        try:
            path = f"/accounts/{urllib.parse.quote(self.account_id)}/balance"
            payload = self._request("GET", path)
            return Balance(
                available_balance=float(payload.get("available") or 0),
                pending_balance=float(payload.get("pending") or 0),
                total_balance=float(payload.get("total") or 0),
            )
        except Exception as exc:
            LOGGER.error("Balance API failed: %s", exc)
            raise ApiPayoutError(f"Balance API failed: {exc}", cause=_root_cause(exc)) from exc


class IndependentReserveBackend:
    """AUD withdrawals to registered bank accounts on Independent Reserve.

    The recipient handle is the GUID of a fiat bank account already
    registered with the exchange account.
    """

    name = DisbursementMethod.API.value

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.api_key = api_key or os.getenv("IR_API_KEY", "")
        self.api_secret = api_secret or os.getenv("IR_API_SECRET", "")
        self.base_url = (base_url or os.getenv("IR_BASE_URL", "https://api.independentreserve.com")).rstrip("/")
        self.use_npp = os.getenv("IR_USE_NPP", "true").lower() in {"1", "true", "yes"}
        self.timeout = int(os.getenv("IR_TIMEOUT", "30"))
        self._nonce = int(time.time() * 1000)
        self._lock = threading.Lock()
        if not self.api_key or not self.api_secret:
            LOGGER.warning("Independent Reserve credentials not configured (IR_API_KEY / IR_API_SECRET)")

    def _next_nonce(self) -> int:
        with self._lock:
            self._nonce += 1
            return self._nonce

    def _signature(self, url: str, parameters: Mapping[str, Any]) -> str:
        pairs = ",".join(f"{key}={_format_param(parameters[key])}" for key in sorted(parameters))
        message = ",".join(part for part in (url, pairs) if part)
        return hmac.new(self.api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def _private(self, endpoint: str, parameters: Optional[Dict[str, Any]] = None) -> Any:
        if not self.api_key or not self.api_secret:
            raise ApiPayoutError("Independent Reserve credentials are not configured")
        url = f"{self.base_url}{endpoint}"
        body: Dict[str, Any] = {"apiKey": self.api_key, "nonce": self._next_nonce()}
        body.update(parameters or {})
        body["signature"] = self._signature(url, body)
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        return _json_request(request, self.timeout)

    def send(self, amount: Decimal, recipient: str) -> str:
        LOGGER.info("Withdrawing %s AUD to bank account %s", amount, recipient)
        try:
            response = self._private(
                "/Private/WithdrawFiatCurrency",
                {
                    "secondaryCurrencyCode": "Aud",
                    "withdrawalAmount": str(amount),
                    "fiatBankAccountGuid": recipient,
                    "useNpp": self.use_npp,
                },
            )
            reference = response.get("fiatWithdrawalRequestGuid")
            if not reference:
                raise ApiPayoutError("withdrawal response missing a request id")
        except ApiPayoutError as exc:
            LOGGER.error("Independent Reserve withdrawal failed: %s", exc)
            raise
        except Exception as exc:
            LOGGER.error("Independent Reserve withdrawal failed: %s", exc)
            raise ApiPayoutError(str(exc), cause=exc) from exc
        LOGGER.info(
            "Withdrawal %s initiated, total %s (fee %s)",
            reference,
            response.get("totalWithdrawalAmount"),
            response.get("feeAmount"),
        )
        return str(reference)

    def balance(self) -> Balance:
        try:
            accounts = self._private("/Private/GetAccounts")
            aud = next(
                (account for account in accounts if str(account.get("currencyCode", "")).upper() == "AUD"),
                None,
            )
            if aud is None:
                raise ApiPayoutError("AUD account not found")
            available = float(aud.get("availableBalance") or 0)
            total = float(aud.get("totalBalance") or 0)
        except ApiPayoutError:
            raise
        except Exception as exc:
            LOGGER.error("Independent Reserve balance fetch failed: %s", exc)
            raise ApiPayoutError(str(exc), cause=exc) from exc
        return Balance(available_balance=available, pending_balance=total - available, total_balance=total)


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class UnsupportedMethod(ValueError):
    pass


class PayoutBackends:
    """Maps each disbursement method to the backend that serves it."""

    def __init__(self, backends: Mapping[DisbursementMethod, PayoutBackend]) -> None:
        self._backends = {DisbursementMethod(method): backend for method, backend in backends.items()}

    def resolve(self, method: Any) -> PayoutBackend:
        try:
            key = DisbursementMethod(method)
        except ValueError:
            raise UnsupportedMethod(f"unsupported disbursement method: {method}")
        backend = self._backends.get(key)
        if backend is None:
            raise UnsupportedMethod(f"no payout backend registered for {key.value}")
        return backend


def build_api_backend(provider: Optional[str] = None) -> PayoutBackend:
    provider = (provider or os.getenv("PAYMENT_PROVIDER", "generic")).strip().lower()
    if provider == "independent_reserve":
        return IndependentReserveBackend()
    if provider != "generic":
        raise ValueError(f"unknown PAYMENT_PROVIDER {provider!r}")
    return PaymentApiBackend()


def build_backends() -> PayoutBackends:
    return PayoutBackends(
        {
            DisbursementMethod.ON_CHAIN: OnChainPayoutBackend(),
            DisbursementMethod.API: build_api_backend(),
        }
    )


__all__ = [
    "ApiPayoutError",
    "Balance",
    "IndependentReserveBackend",
    "OnChainPayoutBackend",
    "OnChainPayoutError",
    "PaymentApiBackend",
    "PayoutBackend",
    "PayoutBackends",
    "PayoutError",
    "UnsupportedMethod",
    "build_api_backend",
    "build_backends",
]
