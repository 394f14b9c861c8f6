from decimal import Decimal

import pytest

from holdis_reconciler.gas import LiquidityMonitor, recommended_buffer
from holdis_reconciler.errors import InsufficientLiquidityError

from conftest import RECEIVER, PLATFORM, TOKEN, ONE_ETHER


def test_recommended_buffer():
    assert recommended_buffer(10) == Decimal("1.2")
    assert recommended_buffer(45) == Decimal("1.3")
    assert recommended_buffer(120) == Decimal("1.5")


def test_check_sufficient_balance(gateway):
    monitor = LiquidityMonitor(gateway)
    assert monitor.check_sufficient_balance(ONE_ETHER) is True
    assert monitor.check_sufficient_balance(11 * ONE_ETHER) is False


def test_ensure_liquidity_passes(gateway):
    monitor = LiquidityMonitor(gateway)
    result = monitor.ensure_liquidity([
        {"to": RECEIVER, "amount": 975, "asset": "native"},
        {"to": PLATFORM, "amount": 25, "asset": "native"},
    ])
    assert result == {"required_fee": 2000, "native_balance": 10 * ONE_ETHER}


def test_native_outflow_counts_against_gas(gateway):
    gateway.native_balance = 2500
    monitor = LiquidityMonitor(gateway)
    with pytest.raises(InsufficientLiquidityError) as exc:
        monitor.ensure_liquidity([{"to": RECEIVER, "amount": 2000, "asset": "native"}])
    assert exc.value.required == 3000
    assert exc.value.available == 2500


def test_token_balance_checked(gateway):
    gateway.token_balances[TOKEN] = 100
    monitor = LiquidityMonitor(gateway)
    with pytest.raises(InsufficientLiquidityError) as exc:
        monitor.ensure_liquidity([
            {"to": RECEIVER, "amount": 90, "asset": TOKEN},
            {"to": PLATFORM, "amount": 20, "asset": TOKEN},
        ])
    assert exc.value.asset == TOKEN
    assert exc.value.required == 110


def test_no_operations_needs_nothing(gateway):
    assert LiquidityMonitor(gateway).ensure_liquidity([])["required_fee"] == 0


def test_monitor_raises_low_gas_alert(gateway, store):
    gateway.native_balance = ONE_ETHER // 100
    monitor = LiquidityMonitor(gateway, store=store)

    assert monitor.monitor("0.05") is False
    assert [a["kind"] for a in store.list_alerts()] == ["low_gas"]

    gateway.native_balance = ONE_ETHER
    assert monitor.monitor("0.05") is True
    assert len(store.list_alerts()) == 1
