import json
import threading

import pytest
from fastapi.testclient import TestClient

from rifas.app import _stop_cleanup, app
from rifas.services.webhooks import sign

ADMIN = {"x-admin-key": "admin-test"}


@pytest.fixture
def client(services):
    previous = app.state.services
    app.state.services = services
    yield TestClient(app)
    app.state.services = previous


@pytest.fixture
def order(client, free_numbers, buyer):
    r = client.post("/orders", json={
        "raffle_id": "rifa-test", "ticket_numbers": free_numbers(3), "buyer": buyer, "provider": "binance",
    })
    assert r.status_code == 201, r.text
    return r.json()


def test_health_and_config(client):
    assert client.get("/health").json() == {"status": "ok", "active_raffle": True}
    cfg = client.get("/config").json()
    assert cfg["raffle_active"] is True
    assert cfg["raffle"]["id"] == "rifa-test"
    assert cfg["progress"]["occupied"] == 100
    assert "binance" in cfg["providers"]


def test_ticket_page(client):
    r = client.get("/raffles/rifa-test/tickets", params={"offset": 0, "limit": 50})
    assert r.status_code == 200
    assert len(r.json()["tickets"]) == 50
    assert client.get("/raffles/no-existe/tickets").status_code == 404


def test_quick_pick(client):
    r = client.post("/raffles/rifa-test/quick_pick", json={"mode": "consecutive", "quantity": 5, "start": 0})
    body = r.json()
    assert r.status_code == 200
    assert len(body["added"]) == 5
    assert body["selection"] == sorted(body["added"])


def test_quote_soft_fails(client):
    r = client.post("/quote", json={"raffle_id": "rifa-test", "ticket_numbers": [1, 2, 3], "promo_code": "NOPE"})
    assert r.status_code == 200
    assert r.json()["error"]
    r = client.post("/quote", json={"raffle_id": "rifa-test", "ticket_numbers": list(range(12))})
    assert r.json()["total"] == 1530.0  # 15%


def test_create_order_validation_error(client, free_numbers):
    r = client.post("/orders", json={
        "raffle_id": "rifa-test", "ticket_numbers": free_numbers(1),
        "buyer": {"name": "Ana", "email": "mal", "phone": "1"}, "provider": "binance",
    })
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert len(r.json()["detail"]["violations"]) == 2


def test_create_order_conflict(client, order, buyer):
    r = client.post("/orders", json={
        "raffle_id": "rifa-test", "ticket_numbers": order["tickets"][:1],
        "buyer": dict(buyer, email="otro@example.com"), "provider": "oxxo",
    })
    assert r.status_code == 409
    assert r.json()["detail"]["tickets"] == order["tickets"][:1]


def test_get_order_and_proof(client, order):
    assert client.get(f"/orders/{order['id']}").json()["state"] == "pending_payment"
    r = client.post(f"/orders/{order['id']}/proof", json={"proof_reference": "FOLIO-1"})
    assert r.json()["state"] == "pending_verification"
    assert client.get("/orders/RA-NADA").status_code == 404


def test_check_orders_by_email(client, order):
    r = client.post("/orders/check", json={"email": "ana@example.com", "raffle_id": "rifa-test"})
    assert r.status_code == 200
    assert [o["id"] for o in r.json()["orders"]] == [order["id"]]
    assert client.post("/orders/check", json={"email": "no-es-email"}).status_code == 422


def test_cancel_requires_admin(client, order):
    assert client.post(f"/orders/{order['id']}/cancel", json={}).status_code == 401
    r = client.post(f"/orders/{order['id']}/cancel", json={"reason": "duplicada"}, headers=ADMIN)
    assert r.json()["state"] == "cancelled"
    r = client.post(f"/orders/{order['id']}/cancel", json={}, headers=ADMIN)
    assert r.status_code == 409


def test_admin_expire(client, order, clock):
    clock.advance(hours=72)
    r = client.post("/admin/orders/expire", headers=ADMIN)
    assert r.json() == {"ok": True, "expired": [order["id"]]}


def test_webhook_flow(client, order):
    payload = {
        "bizType": "PAY", "bizId": "PAY-9", "bizStatus": "PAY_SUCCESS",
        "data": {"orderCode": order["id"], "totalFee": str(order["total"]), "currency": "MXN"},
    }
    body = json.dumps(payload).encode("utf-8")
    headers = {"x-webhook-provider": "binance", "x-webhook-signature": sign(body, "binance-test")}

    r = client.post("/webhooks/payments", content=body, headers=headers)
    assert r.json() == {"success": True, "orderId": order["id"], "status": "completed", "duplicate": False}
    r = client.post("/webhooks/payments", content=body, headers=headers)
    assert r.json()["duplicate"] is True

    status = client.get("/webhooks/payments", params={"orderId": order["id"]}).json()
    assert status["status"] == "completed"
    assert len(status["events"]) == 1


def test_webhook_errors(client, order):
    body = json.dumps({"bizStatus": "PAY_SUCCESS", "data": {"orderCode": order["id"]}}).encode("utf-8")
    r = client.post("/webhooks/payments?provider=binance", content=body, headers={"x-webhook-signature": "00"})
    assert r.status_code == 401
    assert client.get(f"/orders/{order['id']}").json()["state"] == "pending_payment"

    assert client.post("/webhooks/payments", content=body).status_code == 400
    body = json.dumps({
        "reference": "RIFA-RA-NADA", "bank": "azteca", "status": "confirmed", "transaction_id": "T-1",
    }).encode("utf-8")
    assert client.post("/webhooks/payments?provider=azteca", content=body).status_code == 404


def test_webhook_log_requires_admin(client):
    assert client.get("/webhooks/payments").status_code == 401
    assert client.get("/webhooks/payments", headers=ADMIN).json() == {"logs": []}


def test_simulate(client, order, services):
    r = client.put("/webhooks/payments/simulate",
                   json={"provider": "oxxo", "order_id": order["id"]}, headers=ADMIN)
    assert r.json()["status"] == "completed"

    services.settings.environment = "production"
    r = client.put("/webhooks/payments/simulate",
                   json={"provider": "oxxo", "order_id": order["id"]}, headers=ADMIN)
    assert r.status_code == 403


def test_unexpected_error_is_generic_500(client, services, order):
    def _boom(*a, **kw):
        raise RuntimeError("detalle interno")

    services.lifecycle.attach_proof = _boom
    r = TestClient(app, raise_server_exceptions=False).post(
        f"/orders/{order['id']}/proof", json={"proof_reference": "F"},
    )
    assert r.status_code == 500
    assert r.json()["detail"] == "Error interno"


def test_webhook_non_ascii_signature_is_401(client, order):
    body = json.dumps({"bizStatus": "PAY_SUCCESS", "data": {"orderCode": order["id"]}}).encode("utf-8")
    r = client.post(
        "/webhooks/payments?provider=binance", content=body, headers={"x-webhook-signature": b"\xe9abc"},
    )
    assert r.status_code == 401
    assert client.get(f"/orders/{order['id']}").json()["state"] == "pending_payment"


def test_cleanup_thread_follows_app_lifespan(client, services):
    services.settings.cleanup_interval_seconds = 3600
    with TestClient(app):
        names = [t.name for t in threading.enumerate() if t.is_alive()]
        assert "order-cleanup" in names
    assert _stop_cleanup.is_set()
