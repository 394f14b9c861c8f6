"""
Holdis Reconciler - Custody Gateway
Wraps the Blockradar custodial wallet API (balance, transfer, fee estimation,
transaction status) behind uniform error semantics.

Transfers are idempotent twice over: the idempotency key travels as the
provider `reference`, and when the gateway is bound to the store a key that
already resolved to success never reaches the provider again.
"""

import time
import random
import logging
from decimal import Decimal, InvalidOperation

import requests
from web3 import Web3

from . import db as dbmod
from .config import NATIVE_ASSET, DEFAULT_BLOCKRADAR_API_URL
from .errors import (
    TransientCustodyError, PermanentRejectionError, InsufficientLiquidityError,
    PollTimeoutError, IdempotencyConflict,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

_PROVIDER_STATUS = {
    "PENDING": STATUS_PENDING,
    "PROCESSING": STATUS_PENDING,
    "SUCCESS": STATUS_SUCCESS,
    "CONFIRMED": STATUS_SUCCESS,
    "FAILED": STATUS_FAILED,
    "CANCELLED": STATUS_FAILED,
}


def normalize_status(provider_status):
    """Map a provider status string onto pending/success/failed."""
    return _PROVIDER_STATUS.get(str(provider_status or "").upper(), STATUS_PENDING)


def _to_smallest_unit(value, decimals):
    try:
        return int(Decimal(str(value)) * Decimal(10 ** decimals))
    except (InvalidOperation, TypeError, ValueError):
        raise TransientCustodyError(f"Unparseable amount from custody API: {value!r}")


class CustodyGateway:
    """Client for one custodial wallet; open() at startup, close() at shutdown."""

    def __init__(self, api_key, wallet_id, base_url=DEFAULT_BLOCKRADAR_API_URL,
                 timeout=30, store=None, session=None, sleep=time.sleep):
        self.api_key = api_key
        self.wallet_id = wallet_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.store = store
        self.session = session
        self._sleep = sleep

    def open(self):
        if self.session is None:
            self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
        })
        return self

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    # ============================================================
    # HTTP
    # ============================================================

    def _request(self, method, path, payload=None):
        if self.session is None:
            raise TransientCustodyError("Custody gateway is not open")
        url = f"{self.base_url}/v1/wallets/{self.wallet_id}{path}"
        logger.debug("Custody API request %s %s %s", method, path, payload)
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientCustodyError(f"Custody API unreachable: {e}") from e
        except requests.RequestException as e:
            raise TransientCustodyError(f"Custody API request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientCustodyError(
                f"Custody API {resp.status_code}: {body.get('message', resp.text[:200])}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            message = body.get("message") or resp.text[:200]
            logger.error("Custody API rejected %s %s: %s", method, path, message)
            if "insufficient" in str(message).lower():
                raise InsufficientLiquidityError(f"Custody provider reports: {message}")
            raise PermanentRejectionError(
                f"Custody API {resp.status_code}: {message}",
                status_code=resp.status_code,
                provider_error=body.get("error"),
            )
        return body.get("data", body)

    # ============================================================
    # Balances and Fees
    # ============================================================

    def get_wallet_balance(self):
        return self._request("GET", "/balance")

    def get_balance(self, asset=NATIVE_ASSET):
        """Balance of `asset` in smallest units (wei for native)."""
        balance = self.get_wallet_balance()
        if asset == NATIVE_ASSET:
            try:
                return int(Web3.to_wei(Decimal(str(balance.get("nativeBalance", "0"))), "ether"))
            except (InvalidOperation, ValueError) as e:
                raise TransientCustodyError(f"Unparseable native balance: {e}") from e
        for token in balance.get("tokens", []):
            if str(token.get("token", "")).lower() == asset.lower():
                return _to_smallest_unit(token.get("balance", "0"), int(token.get("decimals", 0)))
        return 0

    def estimate_fee(self, operation):
        """
        Estimate the network fee of a transfer.
        operation: {"to": address, "amount": int, "asset": "native" | token}
        Returns fee and native balance in wei plus sufficient_balance. The network
        fee is always paid in the native asset, so fee_in_asset equals fee.
        """
        payload = {
            "address": operation["to"],
            "amount": str(operation["amount"]),
        }
        if operation.get("asset", NATIVE_ASSET) != NATIVE_ASSET:
            payload["token"] = operation["asset"]
        data = self._request("POST", "/withdraw/network-fee", payload)
        fee = _to_smallest_unit(data.get("networkFee", "0"), 18)
        native_balance = _to_smallest_unit(data.get("nativeBalance", "0"), 18)
        try:
            arrival = int(data.get("estimatedArrivalTime", 0) or 0)
        except (TypeError, ValueError):
            arrival = 0
        return {
            "fee": fee,
            "fee_in_asset": fee,
            "fee_in_usd": str(data.get("networkFeeInUSD", "0")),
            "native_balance": native_balance,
            "sufficient_balance": native_balance >= fee,
            "estimated_arrival": arrival,
        }

    # ============================================================
    # Transfers
    # ============================================================

    def transfer(self, to, amount, asset, idempotency_key, metadata=None):
        """
        Move `amount` (smallest units) of `asset` to `to`.
        Returns {"status", "provider_ref", "hash"}; status is pending, success or failed.
        """
        if amount <= 0:
            raise PermanentRejectionError(f"Transfer amount must be positive, got {amount}")
        if not Web3.is_address(to):
            raise PermanentRejectionError(f"Invalid destination address: {to}")

        request_payload = {"to": to, "amount": amount, "asset": asset}
        entry = self._check_store(idempotency_key, request_payload)
        if entry is not None:
            if entry["status"] == dbmod.ENTRY_SUCCESS:
                logger.info("Transfer %s already settled (%s), not resubmitting",
                            idempotency_key, entry["provider_ref"])
                return {"status": STATUS_SUCCESS, "provider_ref": entry["provider_ref"],
                        "hash": None}
            if entry["status"] == dbmod.ENTRY_PENDING and entry["provider_ref"]:
                status = self.get_transaction_status(entry["provider_ref"])
                if status["status"] != STATUS_FAILED:
                    self._record(idempotency_key, status["status"], entry["provider_ref"])
                    return {"status": status["status"], "provider_ref": entry["provider_ref"],
                            "hash": status.get("hash")}
                logger.warning("Previous submission %s failed at provider, resubmitting %s",
                               entry["provider_ref"], idempotency_key)

        body = {
            "address": to,
            "amount": str(amount),
            "reference": idempotency_key,
            "metadata": metadata or {},
        }
        if asset != NATIVE_ASSET:
            body["token"] = asset

        logger.info("Submitting transfer %s: %s of %s to %s", idempotency_key, amount, asset, to)
        data = self._request("POST", "/withdraw", body)
        result = {
            "status": normalize_status(data.get("status")),
            "provider_ref": data.get("id"),
            "hash": data.get("hash"),
        }
        self._record(idempotency_key, result["status"], result["provider_ref"])
        return result

    def _check_store(self, key, request_payload):
        if self.store is None:
            return None
        entry = self.store.get_entry(key)
        if entry is None:
            return None
        new_hash = dbmod.payload_hash(request_payload)
        if entry["payload_hash"] != new_hash:
            raise IdempotencyConflict(key, entry["payload_hash"], new_hash)
        return entry

    def _record(self, key, status, provider_ref):
        """Gateway-side outcome write; pending keeps the entry open with its reference."""
        if self.store is None:
            return
        if status == STATUS_SUCCESS:
            self.store.resolve_entry(key, dbmod.ENTRY_SUCCESS, provider_ref=provider_ref)
        elif provider_ref:
            self.store.compare_and_swap(key, dbmod.ENTRY_PENDING, provider_ref=provider_ref)

    # ============================================================
    # Status Polling
    # ============================================================

    def get_transaction_status(self, provider_ref):
        data = self._request("GET", f"/transactions/{provider_ref}")
        return {
            "status": normalize_status(data.get("status")),
            "hash": data.get("hash"),
            "confirmations": data.get("confirmations"),
            "error": data.get("error"),
        }

    def poll_status(self, provider_ref, max_attempts=10, interval=3, max_delay=60):
        """
        Poll until the transaction leaves pending. Exponential backoff with jitter,
        never more than max_attempts requests; raises PollTimeoutError afterwards.
        """
        delay = interval
        for attempt in range(1, max_attempts + 1):
            try:
                status = self.get_transaction_status(provider_ref)
            except TransientCustodyError as e:
                logger.warning("Status poll %d/%d for %s failed: %s",
                               attempt, max_attempts, provider_ref, e)
            else:
                if status["status"] != STATUS_PENDING:
                    return status["status"]
            if attempt < max_attempts:
                self._sleep(delay + random.uniform(0, delay * 0.3))
                delay = min(delay * 2, max_delay)
        raise PollTimeoutError(provider_ref, max_attempts)
