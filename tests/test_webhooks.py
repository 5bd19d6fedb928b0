import json

import pytest

from rifas.core.errors import AuthenticityError, NotFoundError, TransientError, ValidationError
from rifas.services.models import OrderState
from rifas.services.webhooks import sign


@pytest.fixture
def ingestor(services):
    return services.webhooks


@pytest.fixture
def order(services, free_numbers, buyer):
    return services.lifecycle.create("rifa-test", free_numbers(2), buyer, "binance")


def _binance(order, status="PAY_SUCCESS", biz_id="PAY-1", data_as_string=False):
    data = {"orderCode": order.id, "totalFee": f"{order.total:.2f}", "currency": "MXN"}
    return {
        "bizType": "PAY",
        "bizId": biz_id,
        "bizStatus": status,
        "data": json.dumps(data) if data_as_string else data,
    }


def _oxxo(order, kind="charge.paid", event_id="evt_oxxo_1", with_metadata=True):
    obj = {
        "id": order.id if not with_metadata else "ord_123",
        "amount": int(round(order.total * 100)),
        "currency": "MXN",
        "payment_method": {"type": "oxxo", "reference": "9300 1234", "barcode": "123"},
        "status": "paid",
        "metadata": {"orderId": order.id} if with_metadata else {},
    }
    return {"id": event_id, "type": kind, "created_at": 1767225600, "data": {"object": obj}}


def _bank(order, bank="azteca", status="confirmed", tx="TX-1"):
    return {
        "transaction_id": tx,
        "account_number": "1234567890",
        "reference": f"RIFA-{order.id}",
        "amount": order.total,
        "timestamp": "2026-03-01T12:00:00Z",
        "bank": bank,
        "status": status,
    }


def _body(payload):
    return json.dumps(payload).encode("utf-8")


def test_binance_success_completes(ingestor, order, dispatcher):
    body = _body(_binance(order))
    res = ingestor.ingest("binance", body, sign(body, "binance-test"))
    assert res.to_dict() == {"success": True, "orderId": order.id, "status": "completed", "duplicate": False}
    sent = len(dispatcher.sent)

    again = ingestor.ingest("binance", body, sign(body, "binance-test"))
    assert again.duplicate
    assert again.status == "completed"
    assert len(dispatcher.sent) == sent


def test_binance_data_as_json_string(ingestor, order):
    body = _body(_binance(order, data_as_string=True))
    res = ingestor.ingest("binance", body, sign(body, "binance-test"))
    assert res.status == "completed"


def test_binance_other_status_is_pending(ingestor, order):
    body = _body(_binance(order, status="PAY_CLOSED"))
    res = ingestor.ingest("BINANCE", body, sign(body, "binance-test"))
    assert res.status == "pending_verification"


def test_tampered_signature_is_rejected(ingestor, services, order):
    body = _body(_binance(order))
    bad = "0" * 64
    with pytest.raises(AuthenticityError):
        ingestor.ingest("binance", body, bad)

    stored = services.lifecycle.get(order.id)
    assert stored.state == OrderState.PENDING_PAYMENT
    assert stored.history[-1]["kind"] == "authenticity_error"
    assert services.lifecycle.events_for(order.id) == []
    assert ingestor.recent("binance")[-1]["outcome"] == "rejected_signature"


def test_missing_signature_is_rejected(ingestor, order):
    with pytest.raises(AuthenticityError):
        ingestor.ingest("oxxo", _body(_oxxo(order)), None)


def test_oxxo_paid_uses_metadata_order(ingestor, order):
    body = _body(_oxxo(order))
    res = ingestor.ingest("oxxo", body, sign(body, "oxxo-test"))
    assert res.order_id == order.id
    assert res.status == "completed"


def test_oxxo_falls_back_to_object_id(ingestor, order):
    body = _body(_oxxo(order, kind="charge.expired", with_metadata=False))
    res = ingestor.ingest("oxxo", body, sign(body, "oxxo-test"))
    assert res.status == "cancelled"


def test_oxxo_amount_is_in_cents(ingestor, order):
    ev = ingestor.normalize("oxxo", _oxxo(order), "h")
    assert ev.amount == order.total


def test_bank_without_signature(ingestor, order):
    res = ingestor.ingest("azteca", _body(_bank(order)), None)
    assert res.status == "completed"


def test_bank_must_match_selector(ingestor, order):
    with pytest.raises(ValidationError):
        ingestor.ingest("azteca", _body(_bank(order, bank="bancoppel")), None)


def test_bank_rejected(ingestor, order):
    res = ingestor.ingest("bancoppel", _body(_bank(order, bank="bancoppel", status="rejected")), None)
    assert res.status == "cancelled"


def test_missing_event_id_uses_stable_hash(ingestor, order):
    payload = _bank(order, status="pending")
    payload.pop("transaction_id")
    first = ingestor.normalize("azteca", payload, "h1")
    second = ingestor.normalize("azteca", dict(payload), "h2")
    assert first.provider_event_id == second.provider_event_id
    assert len(first.provider_event_id) == 64


@pytest.mark.parametrize("provider,body", [
    (None, b"{}"),
    ("paypal", b"{}"),
    ("azteca", b"no es json"),
    ("azteca", b"[1, 2]"),
    ("azteca", b'{"reference": "RIFA-x"}'),
])
def test_malformed_requests(ingestor, provider, body):
    with pytest.raises(ValidationError):
        ingestor.ingest(provider, body, None)


def test_unknown_order(ingestor, order):
    payload = _bank(order)
    payload["reference"] = "RIFA-RA-NOEXISTE"
    with pytest.raises(NotFoundError):
        ingestor.ingest("azteca", _body(payload), None)
    assert ingestor.recent("azteca")[-1]["outcome"] == "error"


def test_log_keeps_last_entries(services, order):
    ingestor = services.webhooks
    for i in range(105):
        payload = _bank(order, status="pending", tx=f"TX-{i}")
        ingestor.ingest("azteca", _body(payload), None)
    log = ingestor.recent("azteca")
    assert len(log) == 100
    assert log[-1]["eventId"] == "TX-104"


def test_status_query(ingestor, order):
    body = _body(_binance(order))
    ingestor.ingest("binance", body, sign(body, "binance-test"))
    data = ingestor.status(order.id, limit=20)
    assert data["status"] == "completed"
    assert data["events"][0]["provider_event_id"] == "PAY-1"
    assert ingestor.status(order.id, provider="oxxo")["events"] == []


@pytest.mark.parametrize("provider", ["binance", "oxxo", "azteca", "bancoppel"])
def test_simulate_goes_through_same_path(ingestor, order, provider):
    res = ingestor.simulate(provider, order.id, "confirmed")
    assert res.status == "completed"


def test_non_ascii_signature_is_rejected(ingestor, services, order):
    body = _body(_binance(order))
    with pytest.raises(AuthenticityError):
        ingestor.ingest("binance", body, "é" * 64)

    stored = services.lifecycle.get(order.id)
    assert stored.state == OrderState.PENDING_PAYMENT
    assert stored.history[-1]["kind"] == "authenticity_error"


def test_oxxo_null_metadata_falls_back_to_object_id(ingestor, order):
    payload = _oxxo(order, with_metadata=False)
    payload["data"]["object"]["metadata"] = None
    body = _body(payload)
    res = ingestor.ingest("oxxo", body, sign(body, "oxxo-test"))
    assert res.order_id == order.id
    assert res.status == "completed"


def test_invalid_payload_is_noted_in_order_history(ingestor, services, order):
    with pytest.raises(ValidationError):
        ingestor.ingest("azteca", _body(_bank(order, bank="bancoppel")), None)

    stored = services.lifecycle.get(order.id)
    assert stored.state == OrderState.PENDING_PAYMENT
    assert stored.history[-1]["kind"] == "payment_error"
    assert stored.history[-1]["provider"] == "azteca"


def test_failed_apply_is_noted_in_order_history(ingestor, services, order):
    real_save = services.orders.save

    def _boom(o):
        if o.state == OrderState.COMPLETED:
            raise RuntimeError("db caída")
        return real_save(o)

    services.orders.save = _boom
    with pytest.raises(TransientError):
        ingestor.ingest("azteca", _body(_bank(order)), None)
    services.orders.save = real_save

    stored = services.lifecycle.get(order.id)
    assert stored.state == OrderState.PENDING_PAYMENT
    assert stored.history[-1]["kind"] == "payment_error"
    assert stored.history[-1]["event_id"] == "TX-1"
    assert ingestor.recent("azteca")[-1]["outcome"] == "error"


def test_unknown_orders_leave_no_locks_behind(services, order):
    ingestor = services.webhooks
    for i in range(1000):
        payload = _bank(order, tx=f"TX-{i}")
        payload["reference"] = f"RIFA-bogus-{i}"
        with pytest.raises(NotFoundError):
            ingestor.ingest("azteca", _body(payload), None)
    assert len(services.lifecycle._order_locks) == 0
