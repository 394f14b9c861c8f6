"""
Holdis Reconciler — Python Package Exports

Usage:
    from holdis_reconciler import Database, ChainReader, CustodyGateway
    from holdis_reconciler import ReconciliationEngine, build_engine
"""

# Stores
from .db import Database, payload_hash

# Collaborators
from .chain import ChainReader
from .custody import CustodyGateway
from .gas import LiquidityMonitor

# Engine
from .engine import (
    ReconciliationEngine,
    Outcome,
    build_engine,
    event_key,
    compute_platform_fee,
    split_fee,
)

# Webhooks
from .webhooks import verify_signature, handle_webhook

# Errors
from .errors import (
    ReconcilerError,
    ChainReadError,
    TransientCustodyError,
    PollTimeoutError,
    InsufficientLiquidityError,
    PermanentRejectionError,
    IdempotencyConflict,
)

__all__ = [
    # Stores
    "Database", "payload_hash",
    # Collaborators
    "ChainReader", "CustodyGateway", "LiquidityMonitor",
    # Engine
    "ReconciliationEngine", "Outcome", "build_engine", "event_key",
    "compute_platform_fee", "split_fee",
    # Webhooks
    "verify_signature", "handle_webhook",
    # Errors
    "ReconcilerError", "ChainReadError", "TransientCustodyError", "PollTimeoutError",
    "InsufficientLiquidityError", "PermanentRejectionError", "IdempotencyConflict",
]
