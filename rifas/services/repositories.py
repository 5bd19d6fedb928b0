"""Persistencia de órdenes, eventos de pago, semillas y catálogo de rifas.

Cada repositorio tiene una versión en memoria (local / tests) y una sobre Supabase.
El resto del núcleo solo conoce los métodos públicos.
"""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from rifas.core.errors import TransientError
from rifas.core.logger import get_logger
from rifas.services.models import (
    TERMINAL_STATES, AllocationSeed, Order, OrderState, PaymentEvent, Raffle, RaffleStatus,
)
from rifas.services.utils import cents_to_amount, parse_iso

logger = get_logger(__name__)

_OPEN_STATES = [s.value for s in OrderState if s not in TERMINAL_STATES]


def is_unique_violation(exc: Exception) -> bool:
    # PostgREST devuelve el código de Postgres 23505 para claves duplicadas
    return str(getattr(exc, "code", "")) == "23505" or "duplicate key" in str(exc).lower()


# ======================================================================
# En memoria
# ======================================================================

class InMemoryOrderRepository:
    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    def save(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
        return order

    def delete(self, order_id: str) -> None:
        with self._lock:
            self._orders.pop(order_id, None)

    def list_open(self) -> List[Order]:
        with self._lock:
            return [o for o in self._orders.values() if not o.is_terminal]

    def list_by_buyer(self, raffle_id: str, email: str) -> List[Order]:
        email = (email or "").strip().lower()
        with self._lock:
            return [
                o for o in self._orders.values()
                if o.raffle_id == raffle_id and o.buyer.email == email
            ]


class InMemoryPaymentEventRepository:
    def __init__(self):
        self._events: Dict[Tuple[str, str], PaymentEvent] = {}
        self._order: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def exists(self, provider: str, provider_event_id: str) -> bool:
        with self._lock:
            return (provider, provider_event_id) in self._events

    def add(self, event: PaymentEvent) -> bool:
        """Inserta si la clave (provider, provider_event_id) no existe."""
        with self._lock:
            if event.dedupe_key in self._events:
                return False
            self._events[event.dedupe_key] = event
            self._order.append(event.dedupe_key)
            return True

    def remove(self, provider: str, provider_event_id: str) -> None:
        key = (provider, provider_event_id)
        with self._lock:
            if self._events.pop(key, None) is not None:
                self._order.remove(key)

    def list_for_order(self, order_id: str, provider: Optional[str] = None, limit: int = 20) -> List[PaymentEvent]:
        with self._lock:
            out = []
            for key in reversed(self._order):
                ev = self._events[key]
                if ev.claimed_order_id != order_id:
                    continue
                if provider and ev.provider != provider:
                    continue
                out.append(ev)
                if len(out) >= limit:
                    break
            return out


class InMemoryAllocationSeedRepository:
    def __init__(self):
        self._seeds: Dict[str, AllocationSeed] = {}
        self._lock = threading.Lock()

    def get(self, raffle_id: str) -> Optional[AllocationSeed]:
        with self._lock:
            return self._seeds.get(raffle_id)

    def save(self, seed: AllocationSeed) -> AllocationSeed:
        with self._lock:
            self._seeds[seed.raffle_id] = seed
        return seed


class InMemoryRaffleCatalog:
    def __init__(self, raffles: Optional[List[Raffle]] = None):
        self._raffles = {r.id: r for r in (raffles or [])}

    def get(self, raffle_id: Optional[str]) -> Optional[Raffle]:
        if not raffle_id:
            return self.current()
        return self._raffles.get(raffle_id)

    def current(self) -> Optional[Raffle]:
        active = self.list_active()
        return active[0] if active else None

    def list_active(self) -> List[Raffle]:
        return [r for r in self._raffles.values() if r.status == RaffleStatus.ACTIVE]

    def add(self, raffle: Raffle) -> None:
        self._raffles[raffle.id] = raffle


# ======================================================================
# Supabase
# ======================================================================

class SupabaseOrderRepository:
    def __init__(self, client: Client):
        self.client = client

    def get(self, order_id: str) -> Optional[Order]:
        try:
            r = self.client.table("orders").select("*").eq("id", order_id).limit(1).execute()
        except Exception as e:
            raise TransientError(f"No se pudo leer la orden {order_id}") from e
        rows = r.data or []
        return Order.from_dict(rows[0]) if rows else None

    def save(self, order: Order) -> Order:
        try:
            self.client.table("orders").upsert(order.to_dict(), on_conflict="id").execute()
        except Exception as e:
            raise TransientError(f"No se pudo guardar la orden {order.id}") from e
        return order

    def delete(self, order_id: str) -> None:
        try:
            self.client.table("orders").delete().eq("id", order_id).execute()
        except Exception as e:
            raise TransientError(f"No se pudo borrar la orden {order_id}") from e

    def list_open(self) -> List[Order]:
        r = self.client.table("orders").select("*").in_("state", _OPEN_STATES).execute()
        return [Order.from_dict(row) for row in (r.data or [])]

    def list_by_buyer(self, raffle_id: str, email: str) -> List[Order]:
        r = (
            self.client.table("orders")
            .select("*")
            .eq("raffle_id", raffle_id)
            .eq("buyer->>email", (email or "").strip().lower())
            .execute()
        )
        return [Order.from_dict(row) for row in (r.data or [])]


class SupabasePaymentEventRepository:
    def __init__(self, client: Client):
        self.client = client

    def exists(self, provider: str, provider_event_id: str) -> bool:
        r = (
            self.client.table("payment_events")
            .select("provider_event_id")
            .eq("provider", provider)
            .eq("provider_event_id", provider_event_id)
            .limit(1)
            .execute()
        )
        return bool(r.data)

    def add(self, event: PaymentEvent) -> bool:
        # la restricción única (provider, provider_event_id) hace de candado de idempotencia
        try:
            self.client.table("payment_events").insert(event.to_dict()).execute()
            return True
        except Exception as e:
            if is_unique_violation(e):
                return False
            raise TransientError("No se pudo registrar el evento de pago") from e

    def remove(self, provider: str, provider_event_id: str) -> None:
        (
            self.client.table("payment_events")
            .delete()
            .eq("provider", provider)
            .eq("provider_event_id", provider_event_id)
            .execute()
        )

    def list_for_order(self, order_id: str, provider: Optional[str] = None, limit: int = 20) -> List[PaymentEvent]:
        query = self.client.table("payment_events").select("*").eq("claimed_order_id", order_id)
        if provider:
            query = query.eq("provider", provider)
        r = query.order("received_at", desc=True).limit(limit).execute()
        return [PaymentEvent.from_dict(row) for row in (r.data or [])]


class SupabaseAllocationSeedRepository:
    def __init__(self, client: Client):
        self.client = client

    def get(self, raffle_id: str) -> Optional[AllocationSeed]:
        r = (
            self.client.table("allocation_seeds")
            .select("raffle_id, occupied_count, seed")
            .eq("raffle_id", raffle_id)
            .limit(1)
            .execute()
        )
        if not r.data:
            return None
        row = r.data[0]
        return AllocationSeed(row["raffle_id"], int(row["occupied_count"]), int(row["seed"]))

    def save(self, seed: AllocationSeed) -> AllocationSeed:
        self.client.table("allocation_seeds").upsert(
            {"raffle_id": seed.raffle_id, "occupied_count": seed.occupied_count, "seed": seed.seed},
            on_conflict="raffle_id",
        ).execute()
        return seed


class SupabaseRaffleCatalog:
    _COLS = (
        "id, name, total_tickets, ticket_price_cents, currency, max_per_buyer, "
        "min_per_purchase, max_per_transaction, starts_at, ends_at, draw_at, status"
    )

    def __init__(self, client: Client):
        self.client = client

    def _to_raffle(self, row: Dict[str, Any]) -> Raffle:
        return Raffle(
            id=row["id"],
            name=row.get("name") or "",
            total_tickets=int(row["total_tickets"]),
            unit_price=cents_to_amount(int(row["ticket_price_cents"])),
            currency=row.get("currency") or "MXN",
            max_per_buyer=int(row.get("max_per_buyer") or 100),
            min_per_purchase=int(row.get("min_per_purchase") or 1),
            max_per_transaction=int(row.get("max_per_transaction") or 50),
            starts_at=parse_iso(row.get("starts_at")),
            ends_at=parse_iso(row.get("ends_at")),
            draw_at=parse_iso(row.get("draw_at")),
            status=RaffleStatus(row.get("status") or "upcoming"),
        )

    def get(self, raffle_id: Optional[str]) -> Optional[Raffle]:
        if not raffle_id:
            return self.current()
        r = self.client.table("raffles").select(self._COLS).eq("id", raffle_id).limit(1).execute()
        return self._to_raffle(r.data[0]) if r.data else None

    def current(self) -> Optional[Raffle]:
        active = self.list_active()
        return active[0] if active else None

    def list_active(self) -> List[Raffle]:
        r = (
            self.client.table("raffles")
            .select(self._COLS)
            .eq("status", RaffleStatus.ACTIVE.value)
            .order("starts_at", desc=True)
            .execute()
        )
        return [self._to_raffle(row) for row in (r.data or [])]

