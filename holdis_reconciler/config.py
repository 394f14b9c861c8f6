"""
Holdis Reconciler - Configuration and Constants
Contract ABI, custody API settings, engine tuning.

All configuration can be overridden via environment variables:
- HOLDIS_RPC_URL — JSON-RPC endpoint of the chain hosting the Holdis contract
- HOLDIS_CONTRACT_ADDRESS — Holdis invoice registry address
- BLOCKRADAR_API_KEY / BLOCKRADAR_WALLET_ID — custody wallet credentials
- BLOCKRADAR_API_URL — custody API base (default: https://api.blockradar.co)
- BLOCKRADAR_WEBHOOK_SECRET — HMAC secret for inbound custody webhooks
- PLATFORM_WALLET_ADDRESS — where platform fees are sent
- PLATFORM_FEE_BASIS_POINTS — fallback fee when the event carries none (default: 250)
- RECONCILER_DATA_DIR — data directory (default: <project>/data/)
- RECONCILER_* — engine tuning, see DEFAULTS below
- LOG_LEVEL — error, warning, info, debug (default: info)
"""

import os
import json
import sys
import logging


def _load_dotenv():
    """Load .env file from project root if it exists. No dependencies required."""
    env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            # Don't override existing env vars
            if key and key not in os.environ:
                os.environ[key] = value


_load_dotenv()

# ============================================================
# Constants
# ============================================================

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_ASSET = "native"

BASIS_POINTS = 10000
MAX_PLATFORM_FEE_BPS = 1000

DEFAULT_BLOCKRADAR_API_URL = "https://api.blockradar.co"

# Default lookback for first run (no cursor, no START_BLOCK)
DEFAULT_FIRST_RUN_LOOKBACK = 10000

DEFAULTS = {
    "platform_fee_bps": 250,
    "poll_interval": 12,
    "confirmations": 2,
    "max_block_range": 2000,
    "retry_budget": 5,
    "max_workers": 4,
    "status_poll_attempts": 10,
    "status_poll_interval": 3,
    "gas_threshold": "0.05",
    "gas_check_every": 25,
    "chain_timeout": 15,
    "custody_timeout": 30,
    "port": 9090,
}

# Event kinds in the order they are fetched for every block range
EVENT_PRIORITY = (
    "InvoiceCreated",
    "InvoiceFunded",
    "DeliverySubmitted",
    "DeliveryConfirmed",
    "InvoiceCompleted",
    "InvoiceCancelled",
)

# On-chain InvoiceStatus enum (uint8)
INVOICE_STATUSES = ("pending", "funded", "delivered", "completed", "cancelled")


# ============================================================
# Settings
# ============================================================

_REQUIRED = {
    "rpc_url": "HOLDIS_RPC_URL",
    "contract_address": "HOLDIS_CONTRACT_ADDRESS",
    "blockradar_api_key": "BLOCKRADAR_API_KEY",
    "blockradar_wallet_id": "BLOCKRADAR_WALLET_ID",
    "platform_wallet": "PLATFORM_WALLET_ADDRESS",
}


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {value!r}")


def get_data_dir():
    return os.environ.get(
        "RECONCILER_DATA_DIR",
        os.path.join(os.path.dirname(os.path.dirname(__file__)), "data"),
    )


def get_db_path():
    return os.path.join(get_data_dir(), "reconciler.db")


def load_settings(require=True):
    """
    Resolve settings from the environment.
    Raises RuntimeError listing every missing required variable unless require=False
    (read-only commands such as `status` work without custody credentials).
    """
    settings = {key: os.environ.get(env_name, "") for key, env_name in _REQUIRED.items()}

    missing = [_REQUIRED[k] for k, v in settings.items() if not v]
    if missing and require:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}\n"
            "Set them in the environment or in a .env file at the project root."
        )

    start_block = os.environ.get("RECONCILER_START_BLOCK")

    settings.update({
        "blockradar_api_url": os.environ.get("BLOCKRADAR_API_URL", DEFAULT_BLOCKRADAR_API_URL),
        "webhook_secret": os.environ.get("BLOCKRADAR_WEBHOOK_SECRET", ""),
        "platform_fee_bps": _env_int("PLATFORM_FEE_BASIS_POINTS", DEFAULTS["platform_fee_bps"]),
        "poll_interval": _env_int("RECONCILER_POLL_INTERVAL", DEFAULTS["poll_interval"]),
        "confirmations": _env_int("RECONCILER_CONFIRMATIONS", DEFAULTS["confirmations"]),
        "max_block_range": _env_int("RECONCILER_MAX_BLOCK_RANGE", DEFAULTS["max_block_range"]),
        "retry_budget": _env_int("RECONCILER_RETRY_BUDGET", DEFAULTS["retry_budget"]),
        "max_workers": _env_int("RECONCILER_MAX_WORKERS", DEFAULTS["max_workers"]),
        "gas_threshold": os.environ.get("RECONCILER_GAS_THRESHOLD", DEFAULTS["gas_threshold"]),
        "start_block": int(start_block) if start_block else None,
        "api_key": os.environ.get("RECONCILER_API_KEY", ""),
        "port": _env_int("RECONCILER_PORT", DEFAULTS["port"]),
        "db_path": get_db_path(),
        "log_level": os.environ.get("LOG_LEVEL", "info"),
    })

    if not 0 <= settings["platform_fee_bps"] <= MAX_PLATFORM_FEE_BPS:
        raise RuntimeError(
            f"PLATFORM_FEE_BASIS_POINTS must be between 0 and {MAX_PLATFORM_FEE_BPS}"
        )
    return settings


# ============================================================
# ABIs
# ============================================================

_INVOICE_TUPLE = [
    {"name": "id", "type": "uint256"},
    {"name": "issuer", "type": "address"},
    {"name": "payer", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "tokenAddress", "type": "address"},
    {"name": "status", "type": "uint8"},
    {"name": "requiresDelivery", "type": "bool"},
    {"name": "description", "type": "string"},
    {"name": "attachmentHash", "type": "string"},
    {"name": "createdAt", "type": "uint256"},
    {"name": "fundedAt", "type": "uint256"},
    {"name": "deliveredAt", "type": "uint256"},
    {"name": "completedAt", "type": "uint256"},
]

HOLDIS_ABI = json.loads("""[
    {"inputs":[],"name":"getTotalInvoices","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"platformSettings","outputs":[{"components":[{"name":"platformFee","type":"uint256"},{"name":"maxInvoiceAmount","type":"uint256"},{"name":"minInvoiceAmount","type":"uint256"}],"name":"","type":"tuple"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"token","type":"address"}],"name":"supportedTokens","outputs":[{"name":"","type":"bool"}],"stateMutability":"view","type":"function"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":true,"name":"issuer","type":"address"},{"indexed":true,"name":"payer","type":"address"},{"indexed":false,"name":"receiver","type":"address"},{"indexed":false,"name":"amount","type":"uint256"},{"indexed":false,"name":"token","type":"address"},{"indexed":false,"name":"requiresDelivery","type":"bool"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"InvoiceCreated","type":"event"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":true,"name":"payer","type":"address"},{"indexed":false,"name":"amount","type":"uint256"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"InvoiceFunded","type":"event"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":true,"name":"issuer","type":"address"},{"indexed":false,"name":"proofHash","type":"string"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"DeliverySubmitted","type":"event"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":true,"name":"receiver","type":"address"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"DeliveryConfirmed","type":"event"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":false,"name":"platformFeeCollected","type":"uint256"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"InvoiceCompleted","type":"event"},
    {"anonymous":false,"inputs":[{"indexed":true,"name":"invoiceId","type":"uint256"},{"indexed":true,"name":"cancelledBy","type":"address"},{"indexed":false,"name":"reason","type":"string"},{"indexed":false,"name":"timestamp","type":"uint256"}],"name":"InvoiceCancelled","type":"event"}
]""")

HOLDIS_ABI.append({
    "inputs": [{"name": "invoiceId", "type": "uint256"}],
    "name": "getInvoice",
    "outputs": [{"components": _INVOICE_TUPLE, "name": "", "type": "tuple"}],
    "stateMutability": "view",
    "type": "function",
})


# ============================================================
# Logging
# ============================================================

def configure_logging(level="info"):
    """Configure root logging once for CLI entry points."""
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
