#!/usr/bin/env python3
"""
Holdis Reconciler - Event Reconciliation Engine
Turns Holdis contract events into custody actions (hold, release, refund)
exactly once in effect, and advances the cursor only over fully reconciled
block ranges.

Every event gets a deterministic key (invoice, kind, block, log index), so a
replayed log is inert. Preconditions are evaluated against the durable custody
record, never against memory, so redelivery and out-of-order arrival degrade
into logged skips rather than duplicate movements.
"""

import sys
import json
import signal
import logging
import argparse
import threading
from collections import OrderedDict, namedtuple
from concurrent.futures import ThreadPoolExecutor

from . import db as dbmod
from .config import (
    EVENT_PRIORITY, BASIS_POINTS, MAX_PLATFORM_FEE_BPS, DEFAULTS,
    DEFAULT_FIRST_RUN_LOOKBACK, load_settings, configure_logging,
)
from .chain import ChainReader
from .custody import CustodyGateway, STATUS_PENDING, STATUS_SUCCESS, STATUS_FAILED
from .gas import LiquidityMonitor
from .errors import (
    ReconcilerError, ChainReadError, TransientCustodyError, InsufficientLiquidityError,
    PermanentRejectionError, IdempotencyConflict,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"
RETRY = "retry"
INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
DEFERRED = "deferred"

# Failed is terminal: escalated for a human, no longer blocks the cursor
RESOLVED = (APPLIED, SKIPPED, FAILED)


class Outcome(namedtuple("Outcome", ["status", "key", "invoice_id", "kind", "reason"])):
    __slots__ = ()

    @property
    def resolved(self):
        return self.status in RESOLVED

    def to_dict(self):
        return self._asdict()


def event_key(event):
    return (f"invoice-{event['invoice_id']}:{event['kind']}:"
            f"{event['block_number']}:{event['log_index']}")


def compute_platform_fee(amount, fee_bps):
    if not 0 <= fee_bps <= MAX_PLATFORM_FEE_BPS:
        raise ValueError(f"Platform fee {fee_bps} bp outside 0..{MAX_PLATFORM_FEE_BPS}")
    return amount * fee_bps // BASIS_POINTS


def split_fee(amount, platform_fee):
    """Returns (net to receiver, fee to platform); integer arithmetic, nothing lost."""
    if platform_fee < 0 or platform_fee > amount:
        raise ValueError(f"Platform fee {platform_fee} invalid for amount {amount}")
    return amount - platform_fee, platform_fee


class ReconciliationEngine:

    def __init__(self, reader, gateway, store, monitor, platform_wallet,
                 platform_fee_bps=DEFAULTS["platform_fee_bps"],
                 retry_budget=DEFAULTS["retry_budget"],
                 max_workers=DEFAULTS["max_workers"],
                 confirmations=DEFAULTS["confirmations"],
                 max_block_range=DEFAULTS["max_block_range"],
                 poll_interval=DEFAULTS["poll_interval"],
                 start_block=None,
                 status_poll_attempts=DEFAULTS["status_poll_attempts"],
                 status_poll_interval=DEFAULTS["status_poll_interval"],
                 gas_threshold=DEFAULTS["gas_threshold"],
                 gas_check_every=DEFAULTS["gas_check_every"]):
        self.reader = reader
        self.gateway = gateway
        self.store = store
        self.monitor = monitor
        self.platform_wallet = platform_wallet
        self.platform_fee_bps = platform_fee_bps
        self.retry_budget = retry_budget
        self.max_workers = max(1, max_workers)
        self.confirmations = confirmations
        self.max_block_range = max(1, max_block_range)
        self.poll_interval = poll_interval
        self.start_block = start_block
        self.status_poll_attempts = status_poll_attempts
        self.status_poll_interval = status_poll_interval
        self.gas_threshold = gas_threshold
        self.gas_check_every = gas_check_every

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._running = False
        self._last_report = None
        self._handlers = {
            "InvoiceCreated": self._on_created,
            "InvoiceFunded": self._on_funded,
            "DeliverySubmitted": self._on_delivery,
            "DeliveryConfirmed": self._on_delivery,
            "InvoiceCompleted": self._on_completed,
            "InvoiceCancelled": self._on_cancelled,
        }

    # ============================================================
    # Block Ranges
    # ============================================================

    def fetch_events(self, from_block, to_block):
        events = []
        for kind in EVENT_PRIORITY:
            events.extend(self.reader.get_events_in_range(kind, from_block, to_block))
        return events

    def process_range(self, from_block, to_block):
        """
        Reconcile every event in [from_block, to_block]. The cursor moves to
        to_block only when each event is applied, skipped or terminally failed.
        """
        expected_cursor = self.store.get_cursor()
        events = self.fetch_events(from_block, to_block)

        by_invoice = OrderedDict()
        for ev in events:
            by_invoice.setdefault(ev["invoice_id"], []).append(ev)
        for invoice_events in by_invoice.values():
            invoice_events.sort(key=lambda ev: (ev["block_number"], ev["log_index"]))

        groups = list(by_invoice.values())
        if self.max_workers == 1 or len(groups) <= 1:
            results = [self._process_invoice_events(g) for g in groups]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(self._process_invoice_events, groups))
        outcomes = [o for group in results for o in group]

        counts = {}
        for o in outcomes:
            counts[o.status] = counts.get(o.status, 0) + 1

        advanced = False
        contiguous = expected_cursor is None or from_block <= expected_cursor + 1
        if not contiguous:
            logger.warning("Range %d-%d starts past cursor %s; blocks in between are unreconciled, "
                           "cursor not advanced", from_block, to_block, expected_cursor)
        elif all(o.resolved for o in outcomes):
            advanced = self.store.compare_and_set_cursor(expected_cursor, to_block)
            if not advanced:
                logger.warning("Cursor moved underneath range %d-%d (expected %s); not advancing",
                               from_block, to_block, expected_cursor)
        else:
            logger.warning("Range %d-%d has unresolved events %s; cursor stays at %s",
                           from_block, to_block, counts, expected_cursor)

        report = {
            "from_block": from_block,
            "to_block": to_block,
            "events": len(events),
            "counts": counts,
            "advanced": advanced,
            "cursor": self.store.get_cursor(),
            "outcomes": [o.to_dict() for o in outcomes],
        }
        self._last_report = report
        return report

    def _process_invoice_events(self, events):
        """One invoice, strictly in log order; stop at the first unresolved event."""
        outcomes = []
        for i, ev in enumerate(events):
            try:
                outcome = self.handle_event(ev)
            except Exception as e:
                logger.exception("Unexpected error handling %s", event_key(ev))
                outcome = Outcome(RETRY, event_key(ev), ev["invoice_id"], ev["kind"],
                                  f"unexpected error: {e}")
            outcomes.append(outcome)
            if not outcome.resolved:
                for later in events[i + 1:]:
                    outcomes.append(Outcome(DEFERRED, event_key(later), later["invoice_id"],
                                            later["kind"], f"waiting on {outcome.key}"))
                break
        return outcomes

    # ============================================================
    # Event Dispatch
    # ============================================================

    def handle_event(self, event):
        key = event_key(event)
        kind = event["kind"]
        invoice_id = event["invoice_id"]

        entry = self.store.get_entry(key)
        if entry is not None and entry["status"] == dbmod.ENTRY_SUCCESS:
            return Outcome(SKIPPED, key, invoice_id, kind, "already reconciled")
        if entry is not None and entry["status"] == dbmod.ENTRY_FAILED:
            return Outcome(FAILED, key, invoice_id, kind,
                           f"awaiting manual intervention: {entry['error']}")

        handler = self._handlers.get(kind)
        if handler is None:
            return Outcome(SKIPPED, key, invoice_id, kind, "unhandled event kind")

        logger.info("Processing %s for invoice %s at block %s/%s",
                    kind, invoice_id, event["block_number"], event["log_index"])
        try:
            return handler(event, key)
        except ChainReadError as e:
            logger.warning("Chain read failed while handling %s: %s", key, e)
            return Outcome(RETRY, key, invoice_id, kind, str(e))

    def _skip(self, event, key, reason):
        logger.info("Skipping %s: %s", key, reason)
        return Outcome(SKIPPED, key, event["invoice_id"], event["kind"], reason)

    def _on_created(self, event, key):
        args = event["args"]
        logger.info("Invoice %s created: payer=%s receiver=%s amount=%s requires_delivery=%s",
                    event["invoice_id"], args.get("payer"), args.get("receiver"),
                    args.get("amount"), args.get("requiresDelivery"))
        return self._skip(event, key, "informational")

    def _on_delivery(self, event, key):
        record = self.store.get_custody_record(event["invoice_id"])
        if record is not None and not record["requires_delivery"]:
            logger.warning("%s seen for direct-mode invoice %s", event["kind"], event["invoice_id"])
        return self._skip(event, key, "informational; release waits for InvoiceCompleted")

    def _on_funded(self, event, key):
        invoice_id = event["invoice_id"]
        record = self.store.get_custody_record(invoice_id)
        if record is not None:
            return self._skip(event, key, f"custody record already {record['status']}")

        invoice = self.reader.get_invoice(invoice_id)
        if invoice is None:
            return Outcome(RETRY, key, invoice_id, event["kind"], "invoice not visible on chain yet")

        args = event["args"]
        amount = int(args.get("amount", invoice["amount"]))
        payer = args.get("payer") or invoice["payer"]

        self.store.put_entry(key, "event", event, invoice_id=invoice_id)
        created = self.store.create_custody_record(
            invoice_id, payer, amount, invoice["asset"],
            receiver=invoice["receiver"],
            requires_delivery=invoice["requires_delivery"],
            funded_block=event["block_number"],
            funded_log_index=event["log_index"],
        )
        self.store.resolve_entry(key, dbmod.ENTRY_SUCCESS)
        if not created:
            return self._skip(event, key, "custody record created concurrently")
        logger.info("Holding %s %s for invoice %s", amount, invoice["asset"], invoice_id)
        return Outcome(APPLIED, key, invoice_id, event["kind"], "custody held")

    def _on_completed(self, event, key):
        invoice_id = event["invoice_id"]
        record = self.store.get_custody_record(invoice_id)
        if record is None or record["status"] != dbmod.CUSTODY_HELD:
            state = record["status"] if record else "absent"
            return self._skip(event, key, f"custody record {state}, nothing to release")

        fee = event["args"].get("platformFeeCollected")
        try:
            if fee is None:
                fee = compute_platform_fee(record["amount"], self.platform_fee_bps)
            net, fee = split_fee(record["amount"], int(fee))
        except ValueError as e:
            self.store.put_entry(key, "event", event, invoice_id=invoice_id)
            return self._fail(event, key, "permanent_rejection", str(e))

        receiver = record["receiver"]
        if not receiver:
            invoice = self.reader.get_invoice(invoice_id)
            if invoice is None:
                return Outcome(RETRY, key, invoice_id, event["kind"], "invoice not visible on chain")
            receiver = invoice["receiver"]

        ops = [("payout", receiver, net)]
        if fee > 0:
            ops.append(("platform_fee", self.platform_wallet, fee))
        return self._execute(event, key, record, ops, dbmod.CUSTODY_RELEASED)

    def _on_cancelled(self, event, key):
        invoice_id = event["invoice_id"]
        record = self.store.get_custody_record(invoice_id)
        if record is None or record["status"] != dbmod.CUSTODY_HELD:
            state = record["status"] if record else "absent"
            return self._skip(event, key, f"no funded custody record ({state})")

        invoice = self.reader.get_invoice(invoice_id)
        if invoice is None:
            return Outcome(RETRY, key, invoice_id, event["kind"], "invoice not visible on chain")
        if invoice["funded_at"] is None:
            logger.warning("Invoice %s holds custody but was never funded on chain", invoice_id)
            return self._skip(event, key, "invoice was never funded on chain")

        ops = [("refund", record["payer"], record["amount"])]
        return self._execute(event, key, record, ops, dbmod.CUSTODY_REFUNDED)

    # ============================================================
    # Fund Movements
    # ============================================================

    _SUFFIX = {"payout": "payout", "platform_fee": "fee", "refund": "refund"}

    def _execute(self, event, key, record, ops, target_status):
        invoice_id = event["invoice_id"]
        self.store.put_entry(key, "event", event, invoice_id=invoice_id)

        planned = []
        for operation, to, amount in ops:
            op_key = f"{key}:{self._SUFFIX[operation]}"
            payload = {"to": to, "amount": amount, "asset": record["asset"]}
            entry = self.store.put_entry(op_key, operation, payload, invoice_id=invoice_id)
            new_hash = dbmod.payload_hash(payload)
            if entry["payload_hash"] != new_hash:
                conflict = IdempotencyConflict(op_key, entry["payload_hash"], new_hash)
                return self._fail(event, key, "idempotency_conflict", str(conflict))
            if entry["status"] != dbmod.ENTRY_SUCCESS:
                planned.append(dict(payload, key=op_key, operation=operation))

        current = None
        try:
            if planned:
                self.monitor.ensure_liquidity(
                    [{"to": p["to"], "amount": p["amount"], "asset": p["asset"]} for p in planned]
                )
            for op in planned:
                current = op
                self._transfer(op, invoice_id)
        except InsufficientLiquidityError as e:
            message = f"Invoice {invoice_id}: {e}"
            logger.error("Insufficient liquidity for %s: %s", key, e)
            self.store.insert_alert("insufficient_liquidity", message, invoice_id, key)
            return Outcome(INSUFFICIENT_LIQUIDITY, key, invoice_id, event["kind"], str(e))
        except (PermanentRejectionError, IdempotencyConflict) as e:
            if current is not None:
                self.store.resolve_entry(current["key"], dbmod.ENTRY_FAILED, error=str(e))
            return self._fail(event, key, "permanent_rejection", str(e))
        except TransientCustodyError as e:
            attempts = self.store.record_attempt(key, e)
            logger.warning("Transient custody failure for %s (attempt %d/%d): %s",
                           key, attempts, self.retry_budget, e)
            if attempts >= self.retry_budget:
                return self._fail(event, key, "retry_budget_exhausted",
                                  f"{attempts} attempts, last error: {e}")
            return Outcome(RETRY, key, invoice_id, event["kind"], str(e))

        if not self.store.transition_custody(invoice_id, target_status):
            latest = self.store.get_custody_record(invoice_id)
            logger.warning("Custody for invoice %s already %s; %s left it unchanged",
                           invoice_id, latest["status"] if latest else "absent", key)
        self.store.resolve_entry(key, dbmod.ENTRY_SUCCESS)
        logger.info("Invoice %s custody %s", invoice_id, target_status)
        return Outcome(APPLIED, key, invoice_id, event["kind"], f"custody {target_status}")

    def _transfer(self, op, invoice_id):
        result = self.gateway.transfer(
            op["to"], op["amount"], op["asset"], op["key"],
            metadata={"invoiceId": str(invoice_id), "type": op["operation"]},
        )
        status = result["status"]
        if status == STATUS_PENDING:
            status = self.gateway.poll_status(
                result["provider_ref"],
                max_attempts=self.status_poll_attempts,
                interval=self.status_poll_interval,
            )
        if status == STATUS_SUCCESS:
            self.store.resolve_entry(op["key"], dbmod.ENTRY_SUCCESS,
                                     provider_ref=result["provider_ref"])
            return
        if status == STATUS_FAILED:
            self.store.record_attempt(op["key"], "provider reported failure")
        raise TransientCustodyError(
            f"Transfer {op['key']} ({result['provider_ref']}) ended {status} at provider"
        )

    def _fail(self, event, key, alert_kind, message):
        logger.error("Escalating %s: %s", key, message)
        self.store.resolve_entry(key, dbmod.ENTRY_FAILED, error=message)
        self.store.insert_alert(alert_kind, message, event["invoice_id"], key)
        return Outcome(FAILED, key, event["invoice_id"], event["kind"], message)

    # ============================================================
    # Manual Retry
    # ============================================================

    def retry_failed(self):
        """Reopen terminally failed events and replay them with their original keys."""
        outcomes = []
        for entry in self.store.list_entries(status=dbmod.ENTRY_FAILED, operation="event"):
            key = entry["key"]
            for op in self.store.list_entries(status=dbmod.ENTRY_FAILED,
                                              invoice_id=entry["invoice_id"]):
                if op["key"].startswith(key + ":"):
                    self.store.compare_and_swap(op["key"], dbmod.ENTRY_FAILED,
                                                status=dbmod.ENTRY_PENDING, attempts=0, error=None)
            if not self.store.compare_and_swap(key, dbmod.ENTRY_FAILED,
                                               status=dbmod.ENTRY_PENDING, attempts=0, error=None):
                continue
            logger.info("Retrying %s", key)
            outcomes.append(self.handle_event(entry["payload"]))
        return outcomes

    # ============================================================
    # Polling Loop
    # ============================================================

    def run_once(self):
        """Reconcile from the cursor up to the confirmed head, one bounded range at a time."""
        latest = self.reader.get_latest_block()
        safe_head = latest - self.confirmations
        cursor = self.store.get_cursor()
        if cursor is not None:
            from_block = cursor + 1
        elif self.start_block is not None:
            from_block = self.start_block
        else:
            from_block = max(0, safe_head - DEFAULT_FIRST_RUN_LOOKBACK)

        reports = []
        while from_block <= safe_head and not self._stop.is_set():
            to_block = min(from_block + self.max_block_range - 1, safe_head)
            report = self.process_range(from_block, to_block)
            reports.append(report)
            if not report["advanced"]:
                break
            from_block = to_block + 1
        return reports

    def run(self):
        """Foreground polling loop. SIGINT/SIGTERM stop it after the in-flight range."""
        self._stop.clear()
        self._running = True
        if threading.current_thread() is threading.main_thread():
            def handle_signal(sig, frame):
                logger.info("Stopping reconciler after the current range...")
                self.stop()
            signal.signal(signal.SIGINT, handle_signal)
            signal.signal(signal.SIGTERM, handle_signal)

        logger.info("Reconciler started (poll every %ss, %d confirmations)",
                    self.poll_interval, self.confirmations)
        cycle = 0
        try:
            while not self._stop.is_set():
                try:
                    self.run_once()
                except ReconcilerError as e:
                    logger.error("Reconciliation cycle failed: %s", e)
                except Exception:
                    logger.exception("Reconciliation cycle crashed; retrying next cycle")

                if self.gas_check_every and cycle % self.gas_check_every == 0:
                    try:
                        self.monitor.monitor(self.gas_threshold)
                    except Exception as e:
                        logger.error("Gas balance check failed: %s", e)
                cycle += 1

                self._wake.wait(self.poll_interval)
                self._wake.clear()
        finally:
            self._running = False
            logger.info("Reconciler stopped.")

    def stop(self):
        self._stop.set()
        self._wake.set()

    def notify_new_block(self, block_number=None):
        """Push notifications only shorten the wait before the next poll."""
        logger.debug("New block notification %s", block_number)
        self._wake.set()

    def status(self):
        last = self._last_report
        return {
            "running": self._running,
            "cursor": self.store.get_cursor(),
            "held": len(self.store.list_custody_records(status=dbmod.CUSTODY_HELD)),
            "pending_operations": len(self.store.list_entries(status=dbmod.ENTRY_PENDING)),
            "failed_operations": len(self.store.list_entries(status=dbmod.ENTRY_FAILED)),
            "open_alerts": len(self.store.list_alerts()),
            "last_range": None if last is None else {
                k: last[k] for k in ("from_block", "to_block", "events", "counts", "advanced")
            },
        }


# ============================================================
# Construction
# ============================================================

def build_engine(settings):
    """Wire reader, gateway, store and monitor from settings; caller opens/closes."""
    store = dbmod.Database(settings["db_path"]).init_db()
    reader = ChainReader(settings["rpc_url"], settings["contract_address"],
                         timeout=DEFAULTS["chain_timeout"])
    gateway = CustodyGateway(
        settings["blockradar_api_key"], settings["blockradar_wallet_id"],
        base_url=settings["blockradar_api_url"], timeout=DEFAULTS["custody_timeout"],
        store=store,
    )
    monitor = LiquidityMonitor(gateway, store=store)
    return ReconciliationEngine(
        reader, gateway, store, monitor, settings["platform_wallet"],
        platform_fee_bps=settings["platform_fee_bps"],
        retry_budget=settings["retry_budget"],
        max_workers=settings["max_workers"],
        confirmations=settings["confirmations"],
        max_block_range=settings["max_block_range"],
        poll_interval=settings["poll_interval"],
        start_block=settings["start_block"],
        gas_threshold=settings["gas_threshold"],
    )


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="Holdis custody reconciliation engine")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the polling loop (foreground)")

    once = sub.add_parser("once", help="Reconcile one block range")
    once.add_argument("--from-block", type=int, required=True)
    once.add_argument("--to-block", type=int, required=True)

    sub.add_parser("status", help="Cursor, custody and alert summary")
    sub.add_parser("retry", help="Replay terminally failed operations")

    alerts = sub.add_parser("alerts", help="List or acknowledge alerts")
    alerts.add_argument("--all", action="store_true", help="Include acknowledged alerts")
    alerts.add_argument("--ack", type=int, help="Acknowledge alert by id")

    cur = sub.add_parser("cursor", help="Inspect or move the cursor")
    cur.add_argument("action", choices=["get", "set"])
    cur.add_argument("block", type=int, nargs="?")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    read_only = args.command in ("status", "alerts", "cursor")
    settings = load_settings(require=not read_only)
    configure_logging(settings["log_level"])

    if read_only:
        store = dbmod.Database(settings["db_path"]).init_db()
        if args.command == "status":
            result = {
                "cursor": store.get_cursor(),
                "custody": store.list_custody_records(),
                "pending_operations": store.list_entries(status=dbmod.ENTRY_PENDING),
                "failed_operations": store.list_entries(status=dbmod.ENTRY_FAILED),
            }
        elif args.command == "alerts":
            if args.ack is not None:
                result = {"acknowledged": store.acknowledge_alert(args.ack), "id": args.ack}
            else:
                result = store.list_alerts(include_acknowledged=args.all)
        elif args.action == "get":
            result = {"cursor": store.get_cursor()}
        else:
            if args.block is None:
                raise ValueError("cursor set requires a block number")
            result = {"cursor": args.block, "updated": store.set_cursor(args.block)}
        print(json.dumps(result, indent=2, default=str))
        return

    engine = build_engine(settings)
    engine.reader.open()
    engine.gateway.open()
    try:
        if args.command == "run":
            engine.run()
        elif args.command == "once":
            result = engine.process_range(args.from_block, args.to_block)
            print(json.dumps(result, indent=2, default=str))
        elif args.command == "retry":
            result = [o.to_dict() for o in engine.retry_failed()]
            print(json.dumps(result, indent=2, default=str))
    finally:
        engine.gateway.close()
        engine.reader.close()


def cli():
    try:
        main()
    except (ValueError, RuntimeError, ReconcilerError) as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
