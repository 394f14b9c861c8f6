"""
Holdis Reconciler - Custody Webhooks
Verifies and applies asynchronous transfer status pushed by the custody provider.

A pushed status and a polled status land in the same idempotency entry, so
whichever arrives first resolves it and the other is a no-op confirmation.
"""

import hmac
import json
import hashlib
import logging

from . import db as dbmod
from .custody import normalize_status, STATUS_SUCCESS, STATUS_FAILED

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-blockradar-signature"

TRANSFER_EVENTS = (
    "transfer.success",
    "transfer.failed",
    "withdraw.success",
    "withdraw.failed",
    "custom-smart-contract.success",
    "custom-smart-contract.failed",
)


def compute_signature(raw_body, secret):
    if isinstance(raw_body, str):
        raw_body = raw_body.encode()
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body, signature, secret):
    """HMAC-SHA256 over the raw body, compared in constant time."""
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


def parse_verified(raw_body, signature, secret):
    """Parse the body only after its signature checks out; None means reject."""
    if not verify_signature(raw_body, signature, secret):
        logger.error("Rejected custody webhook with invalid signature")
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, TypeError):
        logger.error("Rejected custody webhook with unparseable body")
        return None


def handle_webhook(store, payload):
    """
    Apply a verified webhook to the matching idempotency entry.
    Returns a small result dict describing what happened.
    """
    event = payload.get("event", "")
    data = payload.get("data") or {}
    provider_ref = data.get("id")
    reference = data.get("reference")

    if event not in TRANSFER_EVENTS:
        logger.info("Ignoring custody webhook %s", event)
        return {"applied": False, "reason": f"unhandled event {event}"}

    entry = None
    if provider_ref:
        entry = store.find_entry_by_provider_ref(provider_ref)
    if entry is None and reference:
        entry = store.get_entry(reference)
    if entry is None:
        logger.warning("Custody webhook %s for unknown transfer ref=%s reference=%s",
                       event, provider_ref, reference)
        return {"applied": False, "reason": "unknown transfer"}

    status = normalize_status(data.get("status"))
    if status == "pending":
        status = STATUS_SUCCESS if event.endswith(".success") else STATUS_FAILED

    if entry["status"] == dbmod.ENTRY_SUCCESS:
        logger.info("Webhook %s confirms already settled %s", event, entry["key"])
        return {"applied": False, "key": entry["key"], "reason": "already settled"}

    if status == STATUS_SUCCESS:
        applied = store.resolve_entry(entry["key"], dbmod.ENTRY_SUCCESS, provider_ref=provider_ref)
        logger.info("Webhook settled %s (tx %s)", entry["key"], data.get("hash"))
        return {"applied": applied, "key": entry["key"], "status": dbmod.ENTRY_SUCCESS}

    # Provider-side failure stays retryable; the engine resubmits under the same key
    store.record_attempt(entry["key"], data.get("error") or f"{event} reported by provider")
    logger.warning("Webhook reports failure for %s: %s", entry["key"], data.get("error"))
    return {"applied": False, "key": entry["key"], "status": STATUS_FAILED}
