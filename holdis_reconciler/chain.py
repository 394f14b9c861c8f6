"""
Holdis Reconciler - Chain Reader
Read-only access to the Holdis invoice registry: invoice lookups, event logs
for a block range, and the chain head.
"""

import logging

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .config import HOLDIS_ABI, EVENT_PRIORITY, INVOICE_STATUSES, ZERO_ADDRESS, NATIVE_ASSET
from .errors import ChainReadError

logger = logging.getLogger(__name__)


def normalize_asset(token_address):
    """Zero address means the chain's native currency."""
    if not token_address or token_address.lower() == ZERO_ADDRESS:
        return NATIVE_ASSET
    return Web3.to_checksum_address(token_address)


def _optional_ts(value):
    return int(value) if value else None


def invoice_from_tuple(raw):
    """Convert the getInvoice() struct into the invoice dict used everywhere else."""
    (inv_id, issuer, payer, receiver, amount, token, status, requires_delivery,
     description, attachment_hash, created_at, funded_at, delivered_at, completed_at) = raw
    return {
        "id": int(inv_id),
        "issuer": issuer,
        "payer": payer,
        "receiver": receiver,
        "amount": int(amount),
        "asset": normalize_asset(token),
        "status": INVOICE_STATUSES[status] if status < len(INVOICE_STATUSES) else str(status),
        "requires_delivery": bool(requires_delivery),
        "description": description,
        "attachment_hash": attachment_hash,
        "created_at": _optional_ts(created_at),
        "funded_at": _optional_ts(funded_at),
        "delivered_at": _optional_ts(delivered_at),
        "completed_at": _optional_ts(completed_at),
    }


def event_from_log(kind, log):
    """Flatten a decoded web3 log into a plain event dict."""
    args = dict(log["args"])
    tx_hash = log["transactionHash"]
    return {
        "kind": kind,
        "invoice_id": int(args["invoiceId"]),
        "block_number": int(log["blockNumber"]),
        "log_index": int(log["logIndex"]),
        "tx_hash": tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash),
        "args": {k: (int(v) if isinstance(v, int) and not isinstance(v, bool) else v)
                 for k, v in args.items()},
    }


class ChainReader:
    """Stateless reader around one Web3 HTTP provider, opened at startup."""

    def __init__(self, rpc_url, contract_address, timeout=15, w3=None):
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.timeout = timeout
        self.w3 = w3
        self.contract = None
        if w3 is not None:
            self._bind_contract()

    def open(self):
        if self.w3 is None:
            self.w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self._bind_contract()
        logger.info("Chain reader connected to %s", self.contract_address)
        return self

    def close(self):
        self.w3 = None
        self.contract = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def _bind_contract(self):
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address),
            abi=HOLDIS_ABI,
        )

    def _require_open(self):
        if self.contract is None:
            raise ChainReadError("Chain reader is not open")

    # ============================================================
    # Reads
    # ============================================================

    def get_latest_block(self):
        self._require_open()
        try:
            return int(self.w3.eth.block_number)
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise ChainReadError(f"Could not read latest block: {e}") from e

    def get_invoice(self, invoice_id):
        """Returns the invoice dict, or None when the registry has no such invoice."""
        self._require_open()
        try:
            raw = self.contract.functions.getInvoice(invoice_id).call()
        except ContractLogicError as e:
            logger.info("Invoice %s not found on chain: %s", invoice_id, e)
            return None
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise ChainReadError(f"Could not read invoice {invoice_id}: {e}") from e

        invoice = invoice_from_tuple(raw)
        # Solidity returns a zeroed struct for unknown ids
        if invoice["id"] == 0 and invoice["created_at"] is None:
            return None
        return invoice

    def get_events_in_range(self, kind, from_block, to_block):
        """All `kind` events in [from_block, to_block], ascending by (block, log index)."""
        self._require_open()
        if kind not in EVENT_PRIORITY:
            raise ValueError(f"Unknown event kind: {kind}")
        if from_block > to_block:
            return []
        try:
            logs = getattr(self.contract.events, kind)().get_logs(
                from_block=from_block, to_block=to_block
            )
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise ChainReadError(
                f"Could not fetch {kind} logs for blocks {from_block}-{to_block}: {e}"
            ) from e
        events = [event_from_log(kind, log) for log in logs]
        events.sort(key=lambda ev: (ev["block_number"], ev["log_index"]))
        return events

    def get_platform_fee_bps(self):
        self._require_open()
        try:
            settings = self.contract.functions.platformSettings().call()
        except (requests.RequestException, Web3Exception, OSError) as e:
            raise ChainReadError(f"Could not read platform settings: {e}") from e
        return int(settings[0])
