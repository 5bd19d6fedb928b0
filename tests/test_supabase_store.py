import datetime as dt

import pytest

from rifas.core.errors import InventoryConflict, TransientError
from rifas.services.container import build_services
from rifas.services.inventory import RESERVED, SOLD
from rifas.services.models import CanonicalPaymentEvent, OrderState, PaymentStatus
from rifas.services.repositories import is_unique_violation


@pytest.fixture
def sb_services(cfg, clock, dispatcher, fake_supabase):
    fake_supabase.tables["raffles"].append({
        "id": "rifa-sb",
        "name": "Rifa Supabase",
        "total_tickets": 500,
        "ticket_price_cents": 15000,
        "currency": "MXN",
        "max_per_buyer": 100,
        "min_per_purchase": 1,
        "max_per_transaction": 50,
        "starts_at": "2026-02-01T00:00:00Z",
        "status": "active",
    })
    fake_supabase.tables["allocation_seeds"].append({"raffle_id": "rifa-sb", "occupied_count": 40, "seed": 3})
    cfg.storage_backend = "supabase"
    return build_services(cfg, client=fake_supabase, dispatcher=dispatcher, clock=clock)


def _free(services, k):
    baseline = services.allocation.baseline(services.catalog.get("rifa-sb"))
    return [n for n in range(500) if n not in baseline][:k]


def _buyer(email="ana@example.com"):
    return {"name": "Ana López", "email": email, "phone": "5512345678"}


def test_catalog_reads_price_in_cents(sb_services):
    raffle = sb_services.catalog.get("rifa-sb")
    assert raffle.unit_price == 150.0
    assert sb_services.catalog.current().id == "rifa-sb"


def test_stored_seed_wins(sb_services):
    assert len(sb_services.allocation.baseline(sb_services.catalog.get("rifa-sb"))) == 40


def test_order_roundtrip_and_reservation(sb_services, fake_supabase):
    nums = _free(sb_services, 2)
    order = sb_services.lifecycle.create("rifa-sb", nums, _buyer(), "oxxo")
    rows = fake_supabase.tables["ticket_reservations"]
    assert {r["ticket_number"] for r in rows} == set(nums)
    assert all(r["status"] == RESERVED for r in rows)

    loaded = sb_services.orders.get(order.id)
    assert loaded == order
    assert [o.id for o in sb_services.orders.list_by_buyer("rifa-sb", "ANA@example.com")] == [order.id]


def test_reservation_conflict(sb_services, fake_supabase):
    nums = _free(sb_services, 3)
    sb_services.lifecycle.create("rifa-sb", nums[:2], _buyer(), "oxxo")
    with pytest.raises(InventoryConflict) as exc:
        sb_services.lifecycle.create("rifa-sb", nums[1:], _buyer("luis@example.com"), "oxxo")
    assert exc.value.numbers == [nums[1]]
    # el INSERT en lote no deja filas a medias
    assert nums[2] not in {r["ticket_number"] for r in fake_supabase.tables["ticket_reservations"]}
    assert len(fake_supabase.tables["orders"]) == 1


def test_payment_event_dedupe_and_sale(sb_services, fake_supabase, clock):
    order = sb_services.lifecycle.create("rifa-sb", _free(sb_services, 1), _buyer(), "binance")
    ev = CanonicalPaymentEvent("binance", "PAY-1", order.id, PaymentStatus.CONFIRMED, order.total, "MXN", "h", clock())
    assert sb_services.lifecycle.apply_payment_event(order.id, ev).order.state == OrderState.COMPLETED
    assert sb_services.lifecycle.apply_payment_event(order.id, ev).duplicate
    assert len(fake_supabase.tables["payment_events"]) == 1
    assert fake_supabase.tables["ticket_reservations"][0]["status"] == SOLD


def test_transient_failure_is_compensated(sb_services, fake_supabase, clock):
    order = sb_services.lifecycle.create("rifa-sb", _free(sb_services, 1), _buyer(), "binance")
    fake_supabase.fail_on[("orders", "upsert")] = RuntimeError("timeout")
    ev = CanonicalPaymentEvent("binance", "PAY-2", order.id, PaymentStatus.CONFIRMED, None, None, "h", clock())
    with pytest.raises(TransientError):
        sb_services.lifecycle.apply_payment_event(order.id, ev)
    assert fake_supabase.tables["payment_events"] == []
    assert fake_supabase.tables["ticket_reservations"][0]["status"] == RESERVED
    assert sb_services.orders.get(order.id).state == OrderState.PENDING_PAYMENT


def test_sweep_uses_open_orders(sb_services, clock):
    order = sb_services.lifecycle.create("rifa-sb", _free(sb_services, 1), _buyer(), "oxxo")
    clock.advance(hours=48, minutes=1)
    assert sb_services.lifecycle.sweep_expired() == [order.id]
    assert sb_services.orders.list_open() == []


def test_events_listed_newest_first(sb_services, clock):
    order = sb_services.lifecycle.create("rifa-sb", _free(sb_services, 1), _buyer(), "azteca")
    for i, status in enumerate([PaymentStatus.PENDING, PaymentStatus.PENDING]):
        clock.advance(minutes=1)
        ev = CanonicalPaymentEvent("azteca", f"TX-{i}", order.id, status, None, None, "h", clock())
        sb_services.lifecycle.apply_payment_event(order.id, ev)
    events = sb_services.lifecycle.events_for(order.id, limit=1)
    assert [e.provider_event_id for e in events] == ["TX-1"]


def test_unique_violation_detection():
    class E(Exception):
        code = "23505"

    assert is_unique_violation(E("x"))
    assert is_unique_violation(Exception('duplicate key value violates unique constraint "x"'))
    assert not is_unique_violation(Exception("timeout"))


def test_order_timestamps_survive_storage(sb_services, clock):
    order = sb_services.lifecycle.create("rifa-sb", _free(sb_services, 1), _buyer(), "oxxo")
    loaded = sb_services.orders.get(order.id)
    assert loaded.expires_at == clock.now + dt.timedelta(hours=48)
