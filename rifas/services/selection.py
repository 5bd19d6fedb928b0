"""Selección de boletos de un comprador y cálculo de precio con descuentos."""
from __future__ import annotations

import datetime as dt
import random
from bisect import insort
from dataclasses import dataclass
from decimal import Decimal
from typing import AbstractSet, Iterable, Iterator, List, Optional, Sequence

from rifas.core.errors import API_ERROR_CODES, ValidationError
from rifas.services.models import Raffle
from rifas.services.utils import parse_iso, round2, to_decimal


class Selection:
    """Conjunto ordenado de números distintos elegidos por un comprador."""

    def __init__(self, numbers: Iterable[int] = ()):
        self._numbers: List[int] = sorted(set(int(n) for n in numbers))

    def __contains__(self, number: int) -> bool:
        return number in self._numbers

    def __len__(self) -> int:
        return len(self._numbers)

    def __iter__(self) -> Iterator[int]:
        return iter(self._numbers)

    def __repr__(self) -> str:
        return f"Selection({self._numbers!r})"

    @property
    def size(self) -> int:
        return len(self._numbers)

    @property
    def numbers(self) -> List[int]:
        return list(self._numbers)

    def _add(self, number: int) -> None:
        insort(self._numbers, number)

    def _remove(self, number: int) -> None:
        self._numbers.remove(number)

    def clear(self) -> None:
        self._numbers = []


def can_select(selection: Selection, number: int, occupied: AbstractSet[int], max_per_buyer: int) -> bool:
    if number in occupied:
        return False
    if number in selection:
        return False
    return selection.size < max_per_buyer


def select(selection: Selection, number: int, occupied: AbstractSet[int], max_per_buyer: int) -> bool:
    if not can_select(selection, number, occupied, max_per_buyer):
        return False
    selection._add(number)
    return True


def deselect(selection: Selection, number: int) -> bool:
    if number not in selection:
        return False
    selection._remove(number)
    return True


def toggle(selection: Selection, number: int, occupied: AbstractSet[int], max_per_buyer: int) -> bool:
    """Selecciona o deselecciona. Un número ocupado no hace nada."""
    if number in selection:
        return deselect(selection, number)
    return select(selection, number, occupied, max_per_buyer)


def bulk_select(
    selection: Selection,
    candidates: Iterable[int],
    occupied: AbstractSet[int],
    max_per_buyer: int,
) -> List[int]:
    """Agrega los candidatos elegibles que quepan en el límite; ignora el resto."""
    added: List[int] = []
    for n in candidates:
        if selection.size >= max_per_buyer:
            break
        if select(selection, n, occupied, max_per_buyer):
            added.append(n)
    return added


def consecutive_candidates(start: int, total: int) -> Iterator[int]:
    return iter(range(max(start, 0), total))


def random_candidates(total: int, rng: Optional[random.Random] = None) -> Iterator[int]:
    # Permutación perezosa: Fisher-Yates sobre un dict disperso, memoria ∝ extraídos
    rng = rng or random.Random()
    swapped = {}
    for i in range(total):
        j = rng.randrange(i, total)
        vi, vj = swapped.get(i, i), swapped.get(j, j)
        swapped[j] = vi
        swapped.pop(i, None)
        yield vj


# ---------- Descuentos ----------

@dataclass(frozen=True)
class DiscountTier:
    min_qty: int
    max_qty: Optional[int]
    percentage: float

    def contains(self, qty: int) -> bool:
        return qty >= self.min_qty and (self.max_qty is None or qty <= self.max_qty)


@dataclass(frozen=True)
class PromoCode:
    code: str
    percentage: float
    valid_from: Optional[dt.datetime] = None
    valid_until: Optional[dt.datetime] = None

    def is_valid_at(self, now: Optional[dt.datetime]) -> bool:
        if now is None:
            return True
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_until and now > self.valid_until:
            return False
        return True


@dataclass(frozen=True)
class Quote:
    quantity: int
    unit_price: float
    subtotal: float
    discount_percentage: float
    discount_amount: float
    total: float
    tier_percentage: float
    promo_percentage: float
    next_tier_quantity: Optional[int] = None
    next_tier_percentage: Optional[float] = None

    def to_dict(self):
        return {
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
            "discount_percentage": self.discount_percentage,
            "discount_amount": self.discount_amount,
            "total": self.total,
            "tier_percentage": self.tier_percentage,
            "promo_percentage": self.promo_percentage,
            "next_tier_quantity": self.next_tier_quantity,
            "next_tier_percentage": self.next_tier_percentage,
        }


def validate_tiers(tiers: Sequence[DiscountTier]) -> List[DiscountTier]:
    """Los tramos deben ser contiguos, sin solaparse y ordenados por min_qty."""
    ordered = list(tiers)
    for i, t in enumerate(ordered):
        if t.min_qty < 1 or (t.max_qty is not None and t.max_qty < t.min_qty):
            raise ValidationError(f"Tramo inválido: {t}")
        if not 0 <= t.percentage <= 100:
            raise ValidationError(f"Porcentaje fuera de rango: {t}")
        if i == 0:
            continue
        prev = ordered[i - 1]
        if prev.max_qty is None:
            raise ValidationError("Solo el último tramo puede no tener máximo")
        if t.min_qty != prev.max_qty + 1:
            raise ValidationError(f"Tramos no contiguos: {prev} -> {t}")
    return ordered


def parse_tiers(raw: str) -> List[DiscountTier]:
    """'3-4:5,5-9:10,50+:25' -> lista de DiscountTier."""
    tiers = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            qty, pct = chunk.split(":", 1)
            if qty.endswith("+"):
                lo, hi = int(qty[:-1]), None
            else:
                lo_s, hi_s = qty.split("-", 1)
                lo, hi = int(lo_s), int(hi_s)
            tiers.append(DiscountTier(lo, hi, float(pct)))
        except ValueError:
            raise ValidationError(f"Tramo de descuento mal formado: '{chunk}'")
    return validate_tiers(tiers)


def parse_promo_codes(raw: str) -> List[PromoCode]:
    """'VERANO:10,VIP:20@2026-01-01/2026-02-01' -> lista de PromoCode."""
    promos = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        window = None
        if "@" in chunk:
            chunk, window = chunk.split("@", 1)
        try:
            code, pct = chunk.split(":", 1)
            pct_value = float(pct)
        except ValueError:
            raise ValidationError(f"Código promocional mal formado: '{chunk}'")
        valid_from = valid_until = None
        if window:
            start, _, end = window.partition("/")
            valid_from, valid_until = parse_iso(start), parse_iso(end)
        promos.append(PromoCode(code.strip().upper(), pct_value, valid_from, valid_until))
    return promos


def tier_percentage_for(quantity: int, tiers: Sequence[DiscountTier]) -> float:
    for t in tiers:
        if t.contains(quantity):
            return t.percentage
    return 0.0


def _next_tier(quantity: int, tiers: Sequence[DiscountTier]) -> Optional[DiscountTier]:
    for t in tiers:
        if t.min_qty > quantity:
            return t
    return None


def price_for(
    selection: Selection,
    unit_price: float,
    tiers: Sequence[DiscountTier],
    promo: Optional[PromoCode] = None,
    now: Optional[dt.datetime] = None,
) -> Quote:
    """Precio de la selección.

    El descuento aplicado es max(tramo, promo); nunca se suman.
    """
    qty = selection.size
    tier_pct = tier_percentage_for(qty, tiers)
    promo_pct = promo.percentage if promo and promo.is_valid_at(now) else 0.0
    pct = max(tier_pct, promo_pct)

    subtotal = to_decimal(unit_price) * qty
    discount = subtotal * to_decimal(pct) / Decimal(100)
    nxt = _next_tier(qty, tiers)

    return Quote(
        quantity=qty,
        unit_price=round2(unit_price),
        subtotal=round2(subtotal),
        discount_percentage=pct,
        discount_amount=round2(discount),
        total=round2(subtotal - to_decimal(round2(discount))),
        tier_percentage=tier_pct,
        promo_percentage=promo_pct,
        next_tier_quantity=nxt.min_qty if nxt else None,
        next_tier_percentage=nxt.percentage if nxt else None,
    )


def validate_for_checkout(selection: Selection, raffle: Raffle, already_owned: int = 0) -> None:
    """Reglas de compra; lista todas las violaciones. Nunca recorta la selección."""
    violations = []
    qty = selection.size
    if qty == 0:
        violations.append("Debes seleccionar al menos un boleto")
    elif qty < raffle.min_per_purchase:
        violations.append(f"Debes seleccionar al menos {raffle.min_per_purchase} boletos")
    if qty > raffle.max_per_transaction:
        violations.append(f"No puedes comprar más de {raffle.max_per_transaction} boletos por transacción")
    if qty + already_owned > raffle.max_per_buyer:
        violations.append(
            f"Máximo {raffle.max_per_buyer} boletos por persona (ya tienes {already_owned})"
        )
    out_of_range = [n for n in selection if n < 0 or n >= raffle.total_tickets]
    if out_of_range:
        violations.append(f"Los boletos {out_of_range} no existen en esta rifa")
    if violations:
        code = API_ERROR_CODES["MAX_TICKETS_EXCEEDED"] if qty > raffle.max_per_transaction or \
            qty + already_owned > raffle.max_per_buyer else None
        raise ValidationError("Selección inválida", violations=violations, code=code)
