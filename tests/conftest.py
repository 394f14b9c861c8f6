"""
Shared fixtures: a throwaway SQLite store, an in-memory chain and a fake
custody provider that records every transfer it is asked to make.
"""

import pytest

from holdis_reconciler.db import Database
from holdis_reconciler.engine import ReconciliationEngine
from holdis_reconciler.gas import LiquidityMonitor
from holdis_reconciler.custody import STATUS_SUCCESS
from holdis_reconciler.errors import TransientCustodyError

PAYER = "0x1111111111111111111111111111111111111111"
ISSUER = "0x2222222222222222222222222222222222222222"
RECEIVER = "0x3333333333333333333333333333333333333333"
PLATFORM = "0x4444444444444444444444444444444444444444"
TOKEN = "0x5555555555555555555555555555555555555555"

ONE_ETHER = 10 ** 18


def make_invoice(invoice_id, amount=1000, asset="native", requires_delivery=False,
                 funded=True, payer=PAYER, receiver=RECEIVER):
    return {
        "id": invoice_id,
        "issuer": ISSUER,
        "payer": payer,
        "receiver": receiver,
        "amount": amount,
        "asset": asset,
        "status": "funded" if funded else "pending",
        "requires_delivery": requires_delivery,
        "description": f"Invoice {invoice_id}",
        "attachment_hash": "",
        "created_at": 1700000000,
        "funded_at": 1700000100 if funded else None,
        "delivered_at": None,
        "completed_at": None,
    }


def make_event(kind, invoice_id, block, log_index=0, **args):
    args.setdefault("invoiceId", invoice_id)
    return {
        "kind": kind,
        "invoice_id": invoice_id,
        "block_number": block,
        "log_index": log_index,
        "tx_hash": f"0x{block:064x}",
        "args": args,
    }


class FakeChainReader:
    """Serves events and invoices from memory; `head_failures` makes the next head reads crash."""

    def __init__(self, latest_block=100):
        self.latest_block = latest_block
        self.events = []
        self.invoices = {}
        self.head_failures = 0

    def add_event(self, event):
        self.events.append(event)
        return event

    def get_latest_block(self):
        if self.head_failures:
            self.head_failures -= 1
            raise RuntimeError("malformed RPC response")
        return self.latest_block

    def get_invoice(self, invoice_id):
        return self.invoices.get(invoice_id)

    def get_events_in_range(self, kind, from_block, to_block):
        matched = [ev for ev in self.events
                   if ev["kind"] == kind and from_block <= ev["block_number"] <= to_block]
        return sorted(matched, key=lambda ev: (ev["block_number"], ev["log_index"]))


class FakeGateway:
    """
    Custody provider double. Transfers settle immediately unless `failures`
    holds exceptions to raise first. Keys that already settled are not moved
    twice, mirroring the provider-side `reference` dedup.
    """

    def __init__(self, native_balance=10 * ONE_ETHER, fee=1000):
        self.native_balance = native_balance
        self.token_balances = {}
        self.fee = fee
        self.transfers = []
        self.failures = []
        self.settled = {}

    def get_balance(self, asset="native"):
        if asset == "native":
            return self.native_balance
        return self.token_balances.get(asset, 0)

    def estimate_fee(self, operation):
        return {
            "fee": self.fee,
            "fee_in_asset": self.fee,
            "fee_in_usd": "0.01",
            "native_balance": self.native_balance,
            "sufficient_balance": self.native_balance >= self.fee,
            "estimated_arrival": 10,
        }

    def transfer(self, to, amount, asset, idempotency_key, metadata=None):
        if idempotency_key in self.settled:
            return {"status": STATUS_SUCCESS, "provider_ref": self.settled[idempotency_key],
                    "hash": None}
        if self.failures:
            raise self.failures.pop(0)
        ref = f"tx-{len(self.transfers) + 1}"
        self.transfers.append({"to": to, "amount": amount, "asset": asset,
                               "key": idempotency_key, "metadata": metadata})
        self.settled[idempotency_key] = ref
        if asset == "native":
            self.native_balance -= amount + self.fee
        else:
            self.token_balances[asset] = self.token_balances.get(asset, 0) - amount
        return {"status": STATUS_SUCCESS, "provider_ref": ref, "hash": f"0xhash{ref}"}

    def poll_status(self, provider_ref, max_attempts=10, interval=3, max_delay=60):
        return STATUS_SUCCESS

    def fail_next(self, count=1, message="custody API 503"):
        self.failures.extend(TransientCustodyError(message, status_code=503) for _ in range(count))


@pytest.fixture
def store(tmp_path):
    return Database(str(tmp_path / "reconciler.db")).init_db()


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(reader, gateway, store):
    monitor = LiquidityMonitor(gateway, store=store)
    return ReconciliationEngine(
        reader, gateway, store, monitor, PLATFORM,
        platform_fee_bps=250,
        retry_budget=3,
        max_workers=2,
        confirmations=0,
        max_block_range=50,
        poll_interval=0,
    )
