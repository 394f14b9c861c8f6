#!/usr/bin/env python3
"""
Holdis Reconciler — Preflight Check

Validates environment, creates the data directory and database, and tests
RPC and custody API connectivity before the engine is started.

Usage:
    python -m holdis_reconciler.preflight
"""

import os
import sys


def banner(msg):
    print(f"\n{'='*60}")
    print(f"  {msg}")
    print(f"{'='*60}\n")


def ok(msg):
    print(f"  ✅ {msg}")


def warn(msg):
    print(f"  ⚠️  {msg}")


def fail(msg):
    print(f"  ❌ {msg}")


def section(msg):
    print(f"\n--- {msg} ---")


def main():
    banner("Holdis Reconciler — Preflight")
    errors = []

    # ========================================
    # 1. Python version
    # ========================================
    section("Python")
    v = sys.version_info
    if v >= (3, 10):
        ok(f"Python {v.major}.{v.minor}.{v.micro}")
    else:
        fail(f"Python {v.major}.{v.minor} — requires 3.10+")
        errors.append("Python version too old")

    # ========================================
    # 2. Dependencies
    # ========================================
    section("Dependencies")
    try:
        import web3
        ok(f"web3.py {web3.__version__}")
    except ImportError:
        fail("web3 not installed — run: pip install -e .")
        errors.append("web3 not installed")

    try:
        import requests
        ok(f"requests {requests.__version__}")
    except ImportError:
        fail("requests not installed — run: pip install -e .")
        errors.append("requests not installed")

    if errors:
        banner("Preflight aborted")
        for e in errors:
            print(f"  ❌ {e}")
        return 1

    from .config import load_settings, get_data_dir
    from .db import Database
    from .chain import ChainReader
    from .custody import CustodyGateway
    from .errors import ReconcilerError

    # ========================================
    # 3. Configuration
    # ========================================
    section("Configuration")
    settings = None
    try:
        settings = load_settings()
        ok(f"Contract: {settings['contract_address']}")
        ok(f"Custody wallet: {settings['blockradar_wallet_id']}")
        ok(f"Platform wallet: {settings['platform_wallet']} ({settings['platform_fee_bps']} bp)")
        if settings["webhook_secret"]:
            ok("BLOCKRADAR_WEBHOOK_SECRET set")
        else:
            warn("BLOCKRADAR_WEBHOOK_SECRET not set — webhooks will be rejected, polling only")
        if not settings["api_key"]:
            warn("RECONCILER_API_KEY not set — status endpoints are open")
    except RuntimeError as e:
        fail(str(e))
        errors.append("Configuration incomplete")

    # ========================================
    # 4. Data directory
    # ========================================
    section("Data Directory")
    data_dir = get_data_dir()
    if os.path.isdir(data_dir):
        ok(f"Exists: {data_dir}")
    else:
        os.makedirs(data_dir, exist_ok=True)
        ok(f"Created: {data_dir}")

    db_path = settings["db_path"] if settings else os.path.join(data_dir, "reconciler.db")
    try:
        store = Database(db_path).init_db()
        cursor = store.get_cursor()
        ok(f"SQLite database initialized: {db_path}")
        ok(f"Cursor: {cursor if cursor is not None else 'not set (first run)'}")
    except Exception as e:
        fail(f"Database init failed: {e}")
        errors.append(f"DB init: {e}")

    if settings is None:
        banner("Preflight Complete (with issues)")
        for e in errors:
            print(f"  ❌ {e}")
        return 1

    # ========================================
    # 5. RPC connectivity
    # ========================================
    section("RPC Connectivity")
    try:
        with ChainReader(settings["rpc_url"], settings["contract_address"], timeout=10) as reader:
            block = reader.get_latest_block()
            ok(f"{settings['rpc_url']}: block #{block:,}")
            fee_bps = reader.get_platform_fee_bps()
            if fee_bps != settings["platform_fee_bps"]:
                warn(f"Contract platform fee is {fee_bps} bp, configured {settings['platform_fee_bps']} bp")
            else:
                ok(f"Contract platform fee matches: {fee_bps} bp")
    except (ReconcilerError, ValueError) as e:
        fail(f"RPC: {e}")
        errors.append(f"RPC: {e}")

    # ========================================
    # 6. Custody wallet
    # ========================================
    section("Custody Wallet")
    try:
        with CustodyGateway(settings["blockradar_api_key"], settings["blockradar_wallet_id"],
                            base_url=settings["blockradar_api_url"], timeout=10) as gateway:
            balance = gateway.get_wallet_balance()
            native = balance.get("nativeBalance", "0")
            status = "✅" if float(native) > float(settings["gas_threshold"]) else "⚠️ "
            print(f"  {status} Native balance: {native}")
            if float(native) <= float(settings["gas_threshold"]):
                print(f"     ↳ Below gas threshold {settings['gas_threshold']}; fund the wallet!")
            for token in balance.get("tokens", []):
                print(f"     {token.get('symbol', token.get('token'))}: {token.get('balance')}")
    except ReconcilerError as e:
        fail(f"Custody API: {e}")
        errors.append(f"Custody API: {e}")

    # ========================================
    # Summary
    # ========================================
    banner("Preflight Complete" if not errors else "Preflight Complete (with issues)")

    if errors:
        print("Issues to fix:")
        for e in errors:
            print(f"  ❌ {e}")
        print()
    else:
        print("Everything looks good! 🎉\n")

    print("Quick start:")
    print("  holdis-reconciler status")
    print("  holdis-reconciler run")
    print()
    print("Start the webhook server with the engine:")
    print("  holdis-reconciler-server --with-engine")
    print()

    return 0 if not errors else 1


if __name__ == "__main__":
    sys.exit(main())
