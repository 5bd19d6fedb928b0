"""Ocupación determinística de boletos.

Una rifa puede tener decenas de miles de boletos; en lugar de guardar una fila por
boleto, la ocupación base se regenera desde (raffle_id, occupied_count, seed).
"""
from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import Dict, FrozenSet, List, Optional

from rifas.core.errors import ValidationError
from rifas.core.logger import get_logger
from rifas.services.models import AllocationSeed, Raffle

logger = get_logger(__name__)

# LCG de periodo completo módulo 2**32 (Numerical Recipes)
_LCG_A = 1664525
_LCG_C = 1013904223
_LCG_M = 2 ** 32


def _initial_state(raffle_id: str, seed: int) -> int:
    digest = hashlib.sha256(f"{raffle_id}:{seed}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


@lru_cache(maxsize=256)
def occupied_set(raffle_id: str, total: int, occupied_count: int, seed: int) -> FrozenSet[int]:
    """Devuelve exactamente `occupied_count` números distintos en [0, total).

    Misma entrada, mismo conjunto. La memoria usada es proporcional a
    occupied_count, nunca a total.
    """
    if total <= 0:
        raise ValidationError(f"total debe ser > 0 (recibido {total})")
    if occupied_count < 0:
        raise ValidationError(f"occupied_count no puede ser negativo (recibido {occupied_count})")
    if occupied_count >= total:
        raise ValidationError(
            f"occupied_count ({occupied_count}) debe ser menor que total ({total})"
        )
    if occupied_count == 0:
        return frozenset()

    state = _initial_state(raffle_id, seed)
    taken = set()
    while len(taken) < occupied_count:
        state = (_LCG_A * state + _LCG_C) % _LCG_M
        taken.add(state % total)
    return frozenset(taken)


class AllocationService:
    """Resuelve y persiste la semilla de ocupación base de cada rifa."""

    def __init__(self, seeds, default_seeds: Optional[Dict[str, AllocationSeed]] = None):
        self.seeds = seeds
        self._defaults = dict(default_seeds or {})

    def seed_for(self, raffle: Raffle) -> AllocationSeed:
        stored = self.seeds.get(raffle.id)
        if stored:
            return stored
        seed = self._defaults.get(raffle.id) or AllocationSeed(raffle.id, 0, 0)
        # se guarda una sola vez: cambiar occupied_count cambia qué números salen
        self.seeds.save(seed)
        logger.info(
            "Semilla de ocupación registrada raffle=%s occupied=%s seed=%s",
            raffle.id, seed.occupied_count, seed.seed,
        )
        return seed

    def baseline(self, raffle: Raffle) -> FrozenSet[int]:
        s = self.seed_for(raffle)
        return occupied_set(raffle.id, raffle.total_tickets, s.occupied_count, s.seed)

    def reseed(self, raffle: Raffle, occupied_count: int, seed: int) -> AllocationSeed:
        occupied_set(raffle.id, raffle.total_tickets, occupied_count, seed)  # valida
        new_seed = AllocationSeed(raffle.id, occupied_count, seed)
        self.seeds.save(new_seed)
        logger.warning("Semilla de ocupación reemplazada raffle=%s occupied=%s", raffle.id, occupied_count)
        return new_seed


def ticket_page(raffle: Raffle, inventory, offset: int = 0, limit: int = 100) -> List[Dict[str, object]]:
    """Estado de una página visible de boletos sin recorrer toda la rifa."""
    if offset < 0 or limit < 1:
        raise ValidationError("offset debe ser >= 0 y limit >= 1")
    limit = min(limit, 1000)
    end = min(offset + limit, raffle.total_tickets)
    statuses = inventory.statuses(raffle.id, range(offset, end))
    return [{"number": n, "status": statuses[n]} for n in range(offset, end)]
