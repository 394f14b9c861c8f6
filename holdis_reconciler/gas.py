"""
Holdis Reconciler - Gas & Liquidity Monitor
Checks that the custody wallet can pay for a fund movement before it starts,
and periodically warns when the native balance runs low.
"""

import logging
from decimal import Decimal

from web3 import Web3

from .config import NATIVE_ASSET
from .errors import InsufficientLiquidityError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER = Decimal("1.2")


def recommended_buffer(estimated_arrival_seconds):
    """Slower confirmation means more room for fee drift."""
    if estimated_arrival_seconds > 60:
        return Decimal("1.5")
    if estimated_arrival_seconds > 30:
        return Decimal("1.3")
    return DEFAULT_BUFFER


class LiquidityMonitor:

    def __init__(self, gateway, store=None):
        self.gateway = gateway
        self.store = store

    def check_sufficient_balance(self, required_amount):
        """True if the native balance covers required_amount (wei)."""
        return self.gateway.get_balance(NATIVE_ASSET) >= required_amount

    def ensure_liquidity(self, operations):
        """
        Fail fast before moving funds. operations is the list of planned
        transfers ({"to", "amount", "asset"}); all of them must be affordable,
        network fees included, or InsufficientLiquidityError is raised and
        nothing is submitted.
        """
        if not operations:
            return {"required_fee": 0, "native_balance": None}

        total_fee = 0
        native_balance = None
        arrival = 0
        for op in operations:
            estimate = self.gateway.estimate_fee(op)
            total_fee += estimate["fee"]
            native_balance = estimate["native_balance"]
            arrival = max(arrival, estimate["estimated_arrival"])

        # Native movements draw on the same balance that pays for gas
        native_out = sum(op["amount"] for op in operations if op["asset"] == NATIVE_ASSET)
        required_native = total_fee + native_out
        if native_balance < required_native:
            raise InsufficientLiquidityError(
                f"Insufficient native balance: required {Web3.from_wei(required_native, 'ether')}, "
                f"available {Web3.from_wei(native_balance, 'ether')}",
                required=required_native, available=native_balance, asset=NATIVE_ASSET,
            )

        buffered = int(Decimal(total_fee) * recommended_buffer(arrival)) + native_out
        if native_balance < buffered:
            logger.warning(
                "Native balance %s is close to the minimum required for gas (%s with buffer)",
                Web3.from_wei(native_balance, "ether"), Web3.from_wei(buffered, "ether"),
            )

        token_needs = {}
        for op in operations:
            if op["asset"] != NATIVE_ASSET:
                token_needs[op["asset"]] = token_needs.get(op["asset"], 0) + op["amount"]
        for asset, needed in token_needs.items():
            available = self.gateway.get_balance(asset)
            if available < needed:
                raise InsufficientLiquidityError(
                    f"Insufficient {asset} balance: required {needed}, available {available}",
                    required=needed, available=available, asset=asset,
                )

        return {"required_fee": total_fee, "native_balance": native_balance}

    def monitor(self, threshold):
        """
        Warn when the native balance drops below threshold (in native units,
        e.g. "0.05"). Returns True when the balance is healthy.
        """
        threshold_wei = int(Web3.to_wei(Decimal(str(threshold)), "ether"))
        balance = self.gateway.get_balance(NATIVE_ASSET)
        if balance < threshold_wei:
            message = (
                f"Low gas balance: {Web3.from_wei(balance, 'ether')} below threshold "
                f"{threshold}. Fund the custody wallet to continue operations."
            )
            logger.warning(message)
            if self.store is not None:
                self.store.insert_alert("low_gas", message)
            return False
        logger.info("Gas balance check passed: %s", Web3.from_wei(balance, "ether"))
        return True
