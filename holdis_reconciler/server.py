#!/usr/bin/env python3
"""
Holdis Reconciler — HTTP Server

Receives signed custody webhooks and exposes read-only reconciliation state.
Optionally runs the reconciliation engine in a background thread.

Usage:
    # Webhooks + status only
    python -m holdis_reconciler.server --port 9090

    # Also run the polling loop
    python -m holdis_reconciler.server --with-engine

Environment Variables:
    RECONCILER_API_KEY         — Bearer token for GET endpoints (open when unset)
    BLOCKRADAR_WEBHOOK_SECRET  — HMAC secret; webhooks are rejected without it
    RECONCILER_PORT            — Port to listen on (default: 9090)
"""

import sys
import hmac
import json
import logging
import argparse
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse
from datetime import datetime, timezone

from . import db as dbmod
from .config import load_settings, configure_logging
from .webhooks import SIGNATURE_HEADER, parse_verified, handle_webhook

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class ReconcilerHandler(BaseHTTPRequestHandler):
    """HTTP handler; the server instance carries store, engine and secrets."""

    def log_message(self, format, *args):
        logger.info("%s %s", self.address_string(), format % args)

    def send_json(self, data, status=200):
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_error_json(self, status, message):
        self.send_json({"error": message, "status": status}, status)

    def read_raw_body(self):
        length = int(self.headers.get("Content-Length", 0))
        if length == 0:
            return b""
        return self.rfile.read(length)

    def check_auth(self):
        """Verify Bearer token if an API key is configured."""
        api_key = self.server.api_key
        if not api_key:
            return True
        supplied = self.headers.get("Authorization", "")
        if hmac.compare_digest(supplied.encode(), f"Bearer {api_key}".encode()):
            return True
        self.send_error_json(401, "Unauthorized: invalid or missing Bearer token")
        return False

    # --- Handlers ---

    def handle_health(self):
        self.send_json({
            "status": "ok",
            "service": "holdis-reconciler",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def handle_status(self):
        engine = self.server.engine
        if engine is not None:
            return self.send_json(engine.status())
        store = self.server.store
        self.send_json({
            "running": False,
            "cursor": store.get_cursor(),
            "held": len(store.list_custody_records(status=dbmod.CUSTODY_HELD)),
            "pending_operations": len(store.list_entries(status=dbmod.ENTRY_PENDING)),
            "failed_operations": len(store.list_entries(status=dbmod.ENTRY_FAILED)),
            "open_alerts": len(store.list_alerts()),
        })

    def handle_custody(self, invoice_id):
        try:
            invoice_id = int(invoice_id)
        except ValueError:
            return self.send_error_json(400, f"Invalid invoice id: {invoice_id}")
        record = self.server.store.get_custody_record(invoice_id)
        if record is None:
            return self.send_error_json(404, f"No custody record for invoice {invoice_id}")
        record["operations"] = self.server.store.list_entries(invoice_id=invoice_id)
        self.send_json(record)

    def handle_alerts(self):
        self.send_json(self.server.store.list_alerts())

    def handle_blockradar_webhook(self):
        raw = self.read_raw_body()
        signature = self.headers.get(SIGNATURE_HEADER, "")
        if not signature:
            return self.send_error_json(401, "Missing webhook signature")
        payload = parse_verified(raw, signature, self.server.webhook_secret)
        if payload is None:
            return self.send_error_json(401, "Webhook signature verification failed")
        result = handle_webhook(self.server.store, payload)
        self.send_json({"success": True, "result": result})

    # --- HTTP method dispatchers ---

    def do_GET(self):
        if not self.check_auth():
            return
        path = urlparse(self.path).path.rstrip("/")
        parts = path.split("/")
        if path == "/health":
            return self.handle_health()
        if path == "/status":
            return self.handle_status()
        if path == "/alerts":
            return self.handle_alerts()
        if len(parts) == 3 and parts[1] == "custody":
            return self.handle_custody(parts[2])
        self.send_error_json(404, f"Not found: GET {path}")

    def do_POST(self):
        path = urlparse(self.path).path.rstrip("/")
        if path == "/webhooks/blockradar":
            return self.handle_blockradar_webhook()
        self.send_error_json(404, f"Not found: POST {path}")


class ReconcilerServer(ThreadingHTTPServer):

    def __init__(self, address, store, webhook_secret="", api_key="", engine=None):
        super().__init__(address, ReconcilerHandler)
        self.store = store
        self.webhook_secret = webhook_secret
        self.api_key = api_key
        self.engine = engine


# ============================================================
# Server
# ============================================================

def run_server(settings, host="0.0.0.0", port=None, with_engine=False):
    port = port or settings["port"]
    engine = None
    engine_thread = None

    if with_engine:
        from .engine import build_engine
        engine = build_engine(settings)
        engine.reader.open()
        engine.gateway.open()
        store = engine.store
        engine_thread = threading.Thread(target=engine.run, name="reconciler", daemon=True)
        engine_thread.start()
    else:
        store = dbmod.Database(settings["db_path"]).init_db()

    if not settings["webhook_secret"]:
        logger.warning("BLOCKRADAR_WEBHOOK_SECRET is not set; every webhook will be rejected")

    server = ReconcilerServer((host, port), store, webhook_secret=settings["webhook_secret"],
                              api_key=settings["api_key"], engine=engine)
    auth_mode = "Bearer token" if settings["api_key"] else "OPEN (set RECONCILER_API_KEY for production)"
    logger.info("Holdis Reconciler server v%s listening on %s:%s (auth: %s, engine: %s)",
                VERSION, host, port, auth_mode, "on" if engine else "off")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopping...")
    finally:
        server.server_close()
        if engine is not None:
            engine.stop()
            engine_thread.join()
            engine.gateway.close()
            engine.reader.close()


# ============================================================
# CLI
# ============================================================

def main():
    parser = argparse.ArgumentParser(description="Holdis Reconciler HTTP server")
    parser.add_argument("--port", type=int, default=None, help="Port (default: 9090 or RECONCILER_PORT)")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--with-engine", action="store_true", help="Run the reconciliation loop too")
    args = parser.parse_args()

    settings = load_settings(require=args.with_engine)
    configure_logging(settings["log_level"])
    run_server(settings, host=args.host, port=args.port, with_engine=args.with_engine)


def cli():
    try:
        main()
    except RuntimeError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
