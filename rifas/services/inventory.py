"""Inventario autoritativo de boletos: ocupación base + reservas + vendidos."""
from __future__ import annotations

import threading
from typing import Dict, FrozenSet, Iterable, List, Tuple

from supabase import Client

from rifas.core.errors import InventoryConflict, NotFoundError, TransientError
from rifas.core.logger import get_logger
from rifas.services.allocation import AllocationService
from rifas.services.models import Raffle
from rifas.services.repositories import is_unique_violation

logger = get_logger(__name__)

AVAILABLE = "available"
RESERVED = "reserved"
SOLD = "sold"


class _BaseInventory:
    def __init__(self, catalog, allocation: AllocationService):
        self.catalog = catalog
        self.allocation = allocation

    def _raffle(self, raffle_id: str) -> Raffle:
        raffle = self.catalog.get(raffle_id)
        if not raffle:
            raise NotFoundError(f"Rifa {raffle_id} no encontrada", code="RAFFLE_NOT_FOUND")
        return raffle

    def _baseline(self, raffle_id: str) -> FrozenSet[int]:
        return self.allocation.baseline(self._raffle(raffle_id))

    def is_occupied(self, raffle_id: str, number: int) -> bool:
        return self.statuses(raffle_id, [number])[number] != AVAILABLE


class InMemoryInventory(_BaseInventory):
    def __init__(self, catalog, allocation: AllocationService):
        super().__init__(catalog, allocation)
        # raffle_id -> {ticket_number: (order_id, status)}
        self._claims: Dict[str, Dict[int, Tuple[str, str]]] = {}
        self._lock = threading.Lock()

    def statuses(self, raffle_id: str, numbers: Iterable[int]) -> Dict[int, str]:
        baseline = self._baseline(raffle_id)
        with self._lock:
            claims = self._claims.get(raffle_id, {})
            out = {}
            for n in numbers:
                if n in baseline:
                    out[n] = SOLD
                elif n in claims:
                    out[n] = claims[n][1]
                else:
                    out[n] = AVAILABLE
            return out

    def occupied_numbers(self, raffle_id: str) -> FrozenSet[int]:
        baseline = self._baseline(raffle_id)
        with self._lock:
            return baseline | frozenset(self._claims.get(raffle_id, {}))

    def reserve(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        """Re-verifica y reserva en una sola operación atómica."""
        baseline = self._baseline(raffle_id)
        with self._lock:
            claims = self._claims.setdefault(raffle_id, {})
            taken = [n for n in numbers if n in baseline or (n in claims and claims[n][0] != order_id)]
            if taken:
                raise InventoryConflict(f"Los boletos {sorted(taken)} ya no están disponibles", numbers=taken)
            for n in numbers:
                claims[n] = (order_id, RESERVED)

    def release(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        with self._lock:
            claims = self._claims.get(raffle_id, {})
            for n in numbers:
                if claims.get(n) == (order_id, RESERVED):
                    del claims[n]

    def mark_occupied(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        with self._lock:
            claims = self._claims.setdefault(raffle_id, {})
            for n in numbers:
                claims[n] = (order_id, SOLD)

    def unmark_occupied(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        with self._lock:
            claims = self._claims.get(raffle_id, {})
            for n in numbers:
                if claims.get(n) == (order_id, SOLD):
                    claims[n] = (order_id, RESERVED)


class SupabaseInventory(_BaseInventory):
    """Reservas en `ticket_reservations` con índice único (raffle_id, ticket_number)."""

    def __init__(self, client: Client, catalog, allocation: AllocationService):
        super().__init__(catalog, allocation)
        self.client = client

    def _rows(self, raffle_id: str, numbers: List[int] = None) -> List[dict]:
        query = (
            self.client.table("ticket_reservations")
            .select("ticket_number, order_id, status")
            .eq("raffle_id", raffle_id)
        )
        if numbers is not None:
            query = query.in_("ticket_number", numbers)
        return query.execute().data or []

    def statuses(self, raffle_id: str, numbers: Iterable[int]) -> Dict[int, str]:
        numbers = list(numbers)
        baseline = self._baseline(raffle_id)
        by_number = {int(r["ticket_number"]): r["status"] for r in self._rows(raffle_id, numbers)}
        return {
            n: SOLD if n in baseline else by_number.get(n, AVAILABLE)
            for n in numbers
        }

    def occupied_numbers(self, raffle_id: str) -> FrozenSet[int]:
        baseline = self._baseline(raffle_id)
        return baseline | frozenset(int(r["ticket_number"]) for r in self._rows(raffle_id))

    def reserve(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        baseline = self._baseline(raffle_id)
        taken = [n for n in numbers if n in baseline]
        if taken:
            raise InventoryConflict(f"Los boletos {sorted(taken)} ya no están disponibles", numbers=taken)

        rows = [
            {"raffle_id": raffle_id, "ticket_number": int(n), "order_id": order_id, "status": RESERVED}
            for n in numbers
        ]
        # un solo INSERT: o entran todas las filas o ninguna
        try:
            self.client.table("ticket_reservations").insert(rows).execute()
        except Exception as e:
            if not is_unique_violation(e):
                raise TransientError("No se pudo reservar los boletos") from e
            existing = self._rows(raffle_id, list(numbers))
            taken = [int(r["ticket_number"]) for r in existing if r.get("order_id") != order_id]
            logger.info("Conflicto de inventario raffle=%s order=%s tickets=%s", raffle_id, order_id, taken)
            raise InventoryConflict(f"Los boletos {sorted(taken)} ya no están disponibles", numbers=taken)

    def release(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        (
            self.client.table("ticket_reservations")
            .delete()
            .eq("raffle_id", raffle_id)
            .eq("order_id", order_id)
            .eq("status", RESERVED)
            .in_("ticket_number", list(numbers))
            .execute()
        )

    def mark_occupied(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        try:
            (
                self.client.table("ticket_reservations")
                .update({"status": SOLD})
                .eq("raffle_id", raffle_id)
                .eq("order_id", order_id)
                .in_("ticket_number", list(numbers))
                .execute()
            )
        except Exception as e:
            raise TransientError("No se pudo marcar los boletos como vendidos") from e

    def unmark_occupied(self, raffle_id: str, numbers: List[int], order_id: str) -> None:
        (
            self.client.table("ticket_reservations")
            .update({"status": RESERVED})
            .eq("raffle_id", raffle_id)
            .eq("order_id", order_id)
            .in_("ticket_number", list(numbers))
            .execute()
        )
