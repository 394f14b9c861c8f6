"""Custody gateway against a mocked requests session."""

from unittest.mock import MagicMock

import pytest
import requests

from holdis_reconciler import db as dbmod
from holdis_reconciler.custody import (
    CustodyGateway, normalize_status, STATUS_PENDING, STATUS_SUCCESS, STATUS_FAILED,
)
from holdis_reconciler.errors import (
    TransientCustodyError, PermanentRejectionError, InsufficientLiquidityError,
    PollTimeoutError, IdempotencyConflict,
)

from conftest import RECEIVER, TOKEN


def _response(status_code=200, data=None, message=None):
    resp = MagicMock()
    resp.status_code = status_code
    body = {"data": data or {}}
    if message is not None:
        body["message"] = message
    resp.json.return_value = body
    resp.text = str(body)
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def gateway(session, sleep):
    return CustodyGateway("api-key", "wallet-1", base_url="https://custody.test/",
                          session=session, sleep=sleep)


@pytest.fixture
def bound_gateway(session, sleep, store):
    return CustodyGateway("api-key", "wallet-1", base_url="https://custody.test",
                          session=session, sleep=sleep, store=store)


def test_normalize_status():
    assert normalize_status("SUCCESS") == STATUS_SUCCESS
    assert normalize_status("confirmed") == STATUS_SUCCESS
    assert normalize_status("FAILED") == STATUS_FAILED
    assert normalize_status("PROCESSING") == STATUS_PENDING
    assert normalize_status(None) == STATUS_PENDING


# ============================================================
# Error mapping
# ============================================================

@pytest.mark.parametrize("status_code", [429, 500, 502, 503])
def test_server_errors_are_transient(gateway, session, status_code):
    session.request.return_value = _response(status_code, message="try later")
    with pytest.raises(TransientCustodyError) as exc:
        gateway.get_wallet_balance()
    assert exc.value.status_code == status_code
    assert exc.value.retryable is True


@pytest.mark.parametrize("error", [requests.Timeout("read timed out"),
                                   requests.ConnectionError("refused")])
def test_network_errors_are_transient(gateway, session, error):
    session.request.side_effect = error
    with pytest.raises(TransientCustodyError):
        gateway.get_wallet_balance()


def test_client_error_is_permanent(gateway, session):
    session.request.return_value = _response(400, message="Asset not supported")
    with pytest.raises(PermanentRejectionError) as exc:
        gateway.transfer(RECEIVER, 100, "native", "k1")
    assert exc.value.status_code == 400
    assert exc.value.retryable is False


def test_insufficient_message_maps_to_liquidity(gateway, session):
    session.request.return_value = _response(400, message="Insufficient balance for withdrawal")
    with pytest.raises(InsufficientLiquidityError):
        gateway.transfer(RECEIVER, 100, "native", "k1")


def test_closed_gateway_refuses_requests():
    gw = CustodyGateway("api-key", "wallet-1")
    with pytest.raises(TransientCustodyError):
        gw.get_wallet_balance()


# ============================================================
# Balances and fees
# ============================================================

def test_balances_in_smallest_units(gateway, session):
    session.request.return_value = _response(data={
        "nativeBalance": "0.5",
        "tokens": [{"token": TOKEN, "symbol": "USDC", "balance": "12.5", "decimals": 6}],
    })
    assert gateway.get_balance() == 5 * 10 ** 17
    assert gateway.get_balance(TOKEN.lower()) == 12_500_000
    assert gateway.get_balance("0x9999999999999999999999999999999999999999") == 0
    url = session.request.call_args[0][1]
    assert url == "https://custody.test/v1/wallets/wallet-1/balance"


def test_estimate_fee(gateway, session):
    session.request.return_value = _response(data={
        "networkFee": "0.0001",
        "networkFeeInUSD": "0.25",
        "nativeBalance": "1",
        "estimatedArrivalTime": 30,
    })
    estimate = gateway.estimate_fee({"to": RECEIVER, "amount": 10, "asset": TOKEN})

    assert estimate["fee"] == 10 ** 14
    assert estimate["fee_in_asset"] == 10 ** 14
    assert estimate["native_balance"] == 10 ** 18
    assert estimate["sufficient_balance"] is True
    assert estimate["estimated_arrival"] == 30
    method, url = session.request.call_args[0]
    assert (method, url) == ("POST", "https://custody.test/v1/wallets/wallet-1/withdraw/network-fee")
    assert session.request.call_args[1]["json"]["token"] == TOKEN


def test_unparseable_fee_estimate_is_transient(gateway, session):
    session.request.return_value = _response(data={"networkFee": None, "nativeBalance": "1"})
    with pytest.raises(TransientCustodyError):
        gateway.estimate_fee({"to": RECEIVER, "amount": 10, "asset": "native"})


# ============================================================
# Transfers
# ============================================================

def test_transfer_sends_key_as_reference(gateway, session):
    session.request.return_value = _response(data={"id": "tx-1", "status": "SUCCESS", "hash": "0xabc"})

    result = gateway.transfer(RECEIVER, 975, "native", "invoice-1:InvoiceCompleted:12:0:payout",
                              metadata={"invoiceId": "1"})

    assert result == {"status": STATUS_SUCCESS, "provider_ref": "tx-1", "hash": "0xabc"}
    body = session.request.call_args[1]["json"]
    assert body["reference"] == "invoice-1:InvoiceCompleted:12:0:payout"
    assert body["amount"] == "975"
    assert body["address"] == RECEIVER
    assert "token" not in body


def test_transfer_validates_input(gateway, session):
    with pytest.raises(PermanentRejectionError):
        gateway.transfer(RECEIVER, 0, "native", "k1")
    with pytest.raises(PermanentRejectionError):
        gateway.transfer("0x1234", 10, "native", "k1")
    session.request.assert_not_called()


def test_settled_key_never_reaches_provider(bound_gateway, session, store):
    payload = {"to": RECEIVER, "amount": 975, "asset": "native"}
    store.put_entry("k1", "payout", payload)
    store.resolve_entry("k1", dbmod.ENTRY_SUCCESS, provider_ref="tx-1")

    result = bound_gateway.transfer(RECEIVER, 975, "native", "k1")

    assert result["status"] == STATUS_SUCCESS
    assert result["provider_ref"] == "tx-1"
    session.request.assert_not_called()


def test_reused_key_with_different_payload_conflicts(bound_gateway, session, store):
    store.put_entry("k1", "payout", {"to": RECEIVER, "amount": 975, "asset": "native"})
    with pytest.raises(IdempotencyConflict):
        bound_gateway.transfer(RECEIVER, 976, "native", "k1")
    session.request.assert_not_called()


def test_pending_submission_is_checked_before_resubmitting(bound_gateway, session, store):
    store.put_entry("k1", "payout", {"to": RECEIVER, "amount": 975, "asset": "native"})
    store.compare_and_swap("k1", dbmod.ENTRY_PENDING, provider_ref="tx-7")
    session.request.return_value = _response(data={"id": "tx-7", "status": "SUCCESS", "hash": "0xdef"})

    result = bound_gateway.transfer(RECEIVER, 975, "native", "k1")

    assert result["status"] == STATUS_SUCCESS
    assert session.request.call_count == 1
    assert session.request.call_args[0][0] == "GET"
    assert store.get_entry("k1")["status"] == dbmod.ENTRY_SUCCESS


def test_pending_transfer_records_provider_ref(bound_gateway, session, store):
    store.put_entry("k1", "refund", {"to": RECEIVER, "amount": 500, "asset": "native"})
    session.request.return_value = _response(data={"id": "tx-2", "status": "PENDING"})

    result = bound_gateway.transfer(RECEIVER, 500, "native", "k1")

    assert result["status"] == STATUS_PENDING
    entry = store.get_entry("k1")
    assert entry["status"] == dbmod.ENTRY_PENDING
    assert entry["provider_ref"] == "tx-2"


# ============================================================
# Status polling
# ============================================================

def test_poll_status_returns_once_settled(gateway, session, sleep):
    session.request.side_effect = [
        _response(data={"status": "PENDING"}),
        _response(data={"status": "SUCCESS"}),
    ]
    assert gateway.poll_status("tx-1", max_attempts=5, interval=1) == STATUS_SUCCESS
    assert sleep.call_count == 1


def test_poll_status_is_bounded(gateway, session, sleep):
    session.request.return_value = _response(data={"status": "PENDING"})

    with pytest.raises(PollTimeoutError) as exc:
        gateway.poll_status("tx-1", max_attempts=3, interval=1, max_delay=2)

    assert exc.value.retryable is True
    assert session.request.call_count == 3
    assert sleep.call_count == 2
    delays = [c[0][0] for c in sleep.call_args_list]
    assert 1 <= delays[0] <= 1.3
    assert 2 <= delays[1] <= 2.6


def test_poll_status_survives_transient_errors(gateway, session, sleep):
    session.request.side_effect = [
        requests.ConnectionError("reset"),
        _response(data={"status": "FAILED"}),
    ]
    assert gateway.poll_status("tx-1", max_attempts=3, interval=1) == STATUS_FAILED
