"""Ciclo de vida de una orden de compra de boletos.

draft -> pending_payment -> pending_verification -> completed
cancelled / expired se alcanzan desde cualquier estado no terminal.
completed, cancelled y expired son terminales.
"""
from __future__ import annotations

import datetime as dt
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from rifas.core.errors import (
    API_ERROR_CODES, InvalidTransition, NotFoundError, RaffleError, TransientError, ValidationError,
)
from rifas.core.logger import get_logger
from rifas.services.models import (
    BuyerInfo, CanonicalPaymentEvent, EventOutcome, Order, OrderState, OrderStateChanged,
    PaymentEvent, PaymentStatus, RaffleStatus, active_ticket_count,
)
from rifas.services.selection import (
    DiscountTier, PromoCode, Selection, price_for, validate_for_checkout,
)
from rifas.services.utils import generate_order_id, now_utc, round2, to_decimal
from rifas.services.validators import validate_buyer, validate_provider

logger = get_logger(__name__)

_USD_LIKE = {"USD", "USDT", "BUSD"}


class KeyedLocks:
    """Un candado por clave (orden o rifa); claves distintas no se bloquean entre sí.

    La entrada se borra cuando nadie la usa, así ids inventados no se acumulan.
    """

    def __init__(self):
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    @contextmanager
    def __call__(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass(frozen=True)
class ApplyResult:
    order: Order
    applied: bool
    duplicate: bool = False
    note: Optional[str] = None


class OrderLifecycle:
    def __init__(
        self,
        catalog,
        inventory,
        orders,
        events,
        dispatcher,
        tiers: Iterable[DiscountTier] = (),
        promos: Iterable[PromoCode] = (),
        order_ttl_hours: int = 48,
        reference_prefix: str = "RIFA-",
        usd_rate: float = 17.0,
        enforce_amount_match: bool = False,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ):
        self.catalog = catalog
        self.inventory = inventory
        self.orders = orders
        self.events = events
        self.dispatcher = dispatcher
        self.tiers = list(tiers)
        self.promos = {p.code.upper(): p for p in promos}
        self.order_ttl = dt.timedelta(hours=order_ttl_hours)
        self.reference_prefix = reference_prefix
        self.usd_rate = usd_rate
        self.enforce_amount_match = enforce_amount_match
        self._clock = clock or now_utc
        self._order_locks = KeyedLocks()

    def _now_utc(self) -> dt.datetime:
        return self._clock()

    # ---------- Consultas ----------
    def get(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if not order:
            raise NotFoundError(f"Orden {order_id} no encontrada", code=API_ERROR_CODES["ORDER_NOT_FOUND"])
        return order

    def events_for(self, order_id: str, provider: Optional[str] = None, limit: int = 20) -> List[PaymentEvent]:
        return self.events.list_for_order(order_id, provider=provider, limit=limit)

    def resolve_promo(self, code: Optional[str]) -> Optional[PromoCode]:
        if not code:
            return None
        promo = self.promos.get(code.strip().upper())
        if not promo:
            raise ValidationError(f"Código promocional '{code}' no existe")
        if not promo.is_valid_at(self._now_utc()):
            raise ValidationError(f"Código promocional '{code}' no está vigente")
        return promo

    def quote(self, raffle_id: Optional[str], ticket_numbers: List[int], promo_code: Optional[str] = None):
        raffle = self.raffle(raffle_id)
        return price_for(
            Selection(ticket_numbers), raffle.unit_price, self.tiers,
            self.resolve_promo(promo_code), self._now_utc(),
        )

    def raffle(self, raffle_id: Optional[str]):
        raffle = self.catalog.get(raffle_id)
        if not raffle:
            raise NotFoundError(f"Rifa {raffle_id} no encontrada", code=API_ERROR_CODES["RAFFLE_NOT_FOUND"])
        return raffle

    # ---------- Creación ----------
    def create(
        self,
        raffle_id: Optional[str],
        ticket_numbers: List[int],
        buyer: Dict[str, Any] | BuyerInfo,
        provider: str,
        promo_code: Optional[str] = None,
    ) -> Order:
        raffle = self.raffle(raffle_id)
        if raffle.status != RaffleStatus.ACTIVE:
            raise ValidationError(
                f"La rifa {raffle.id} no está activa ({raffle.status.value})",
                code=API_ERROR_CODES["RAFFLE_ENDED"],
            )

        violations = []
        try:
            buyer_info = buyer if isinstance(buyer, BuyerInfo) else validate_buyer(buyer)
        except ValidationError as e:
            violations.extend(e.violations)
            buyer_info = None
        try:
            provider = validate_provider(provider)
        except ValidationError as e:
            violations.extend(e.violations)
        numbers = [int(n) for n in ticket_numbers or []]
        if len(set(numbers)) != len(numbers):
            violations.append("Hay boletos duplicados en tu selección")
        if violations:
            raise ValidationError("Orden inválida", violations=violations)

        selection = Selection(numbers)
        owned = active_ticket_count(self.orders.list_by_buyer(raffle.id, buyer_info.email))
        validate_for_checkout(selection, raffle, already_owned=owned)

        now = self._now_utc()
        quote = price_for(selection, raffle.unit_price, self.tiers, self.resolve_promo(promo_code), now)
        order_id = generate_order_id()
        draft = Order(
            id=order_id,
            raffle_id=raffle.id,
            buyer=buyer_info,
            tickets=tuple(selection.numbers),
            subtotal=quote.subtotal,
            discount_percentage=quote.discount_percentage,
            discount_amount=quote.discount_amount,
            total=quote.total,
            currency=raffle.currency,
            provider=provider,
            state=OrderState.DRAFT,
            created_at=now,
            expires_at=now + self.order_ttl,
            reference_code=f"{self.reference_prefix}{order_id}",
            promo_code=promo_code.strip().upper() if promo_code else None,
            updated_at=now,
        )

        # re-verificación y reserva atómicas: aquí se detecta la doble venta
        self.inventory.reserve(raffle.id, selection.numbers, order_id)
        order = draft.moved_to(OrderState.PENDING_PAYMENT, now)
        try:
            self.orders.save(order)
        except Exception:
            self.inventory.release(raffle.id, selection.numbers, order_id)
            raise

        logger.info(
            "Orden creada id=%s rifa=%s boletos=%s total=%s %s proveedor=%s",
            order.id, raffle.id, len(order.tickets), order.total, order.currency, provider,
        )
        self._emit(OrderState.DRAFT, order)
        return order

    # ---------- Transiciones ----------
    def attach_proof(self, order_id: str, proof_reference: str) -> Order:
        if not (proof_reference or "").strip():
            raise ValidationError("proof_reference requerida")
        with self._order_locks(order_id):
            order = self._expire_if_due(self.get(order_id))
            if order.state != OrderState.PENDING_PAYMENT:
                # envíos duplicados o tardíos no son error
                return order
            now = self._now_utc()
            moved = replace(order, proof_reference=proof_reference.strip()).moved_to(
                OrderState.PENDING_VERIFICATION, now, reason="proof",
            )
            self._commit(order, moved)
            self._emit(order.state, moved)
            return moved

    def apply_payment_event(self, order_id: str, event: CanonicalPaymentEvent) -> ApplyResult:
        """Única entrada con la que los webhooks avanzan una orden. Idempotente."""
        with self._order_locks(order_id):
            order = self.get(order_id)
            if self.events.exists(*event.dedupe_key):
                logger.info("Evento repetido %s/%s orden=%s", event.provider, event.provider_event_id, order_id)
                return ApplyResult(order, applied=False, duplicate=True)

            order = self._expire_if_due(order)
            now = self._now_utc()
            detail = {"provider": event.provider, "event_id": event.provider_event_id, "status": event.status.value}

            if order.is_terminal:
                note = f"orden en estado terminal {order.state.value}"
                record = PaymentEvent.from_canonical(event, EventOutcome.IGNORED, note)
                noted = order.with_note(now, "payment_event_ignored", **detail)
                if not self._commit(order, noted, record):
                    return ApplyResult(order, applied=False, duplicate=True)
                logger.warning("Evento ignorado orden=%s: %s", order_id, note)
                return ApplyResult(noted, applied=False, note=note)

            target, note = self._target_for(order, event)
            if target == order.state:
                new = order.with_note(now, "payment_event", **detail)
            else:
                new = order.moved_to(target, now, **detail)
            if note:
                new = new.with_note(now, "amount_mismatch", message=note)

            record = PaymentEvent.from_canonical(event, EventOutcome.APPLIED, note)
            if not self._commit(order, new, record):
                return ApplyResult(order, applied=False, duplicate=True)

            logger.info(
                "Evento aplicado %s/%s orden=%s %s -> %s",
                event.provider, event.provider_event_id, order_id, order.state.value, new.state.value,
            )
            if new.state != order.state:
                self._emit(order.state, new)
            return ApplyResult(new, applied=True, note=note)

    def expire(self, order_id: str, now: Optional[dt.datetime] = None) -> Order:
        with self._order_locks(order_id):
            return self._expire_if_due(self.get(order_id), now)

    def sweep_expired(self, now: Optional[dt.datetime] = None) -> List[str]:
        now = now or self._now_utc()
        expired = []
        for order in self.orders.list_open():
            if now > order.expires_at:
                if self.expire(order.id, now).state == OrderState.EXPIRED:
                    expired.append(order.id)
        if expired:
            logger.info("Órdenes expiradas: %s", expired)
        return expired

    def cancel(self, order_id: str, reason: str = "") -> Order:
        with self._order_locks(order_id):
            order = self._expire_if_due(self.get(order_id))
            if order.is_terminal:
                raise InvalidTransition(f"La orden {order_id} ya está en estado {order.state.value}")
            moved = order.moved_to(OrderState.CANCELLED, self._now_utc(), reason=reason or "manual")
            self._commit(order, moved)
            logger.info("Orden cancelada id=%s motivo=%s", order_id, reason or "manual")
            self._emit(order.state, moved)
            return moved

    def record_rejected_event(self, order_id: str, kind: str, **detail: Any) -> None:
        """Deja constancia en el historial de la orden sin tocar su estado."""
        with self._order_locks(order_id):
            order = self.orders.get(order_id)
            if not order:
                return
            self.orders.save(order.with_note(self._now_utc(), kind, **detail))

    # ---------- Internos ----------
    def _target_for(self, order: Order, event: CanonicalPaymentEvent):
        if event.status == PaymentStatus.REJECTED:
            return OrderState.CANCELLED, None
        if event.status == PaymentStatus.PENDING:
            return OrderState.PENDING_VERIFICATION, None
        if self.enforce_amount_match and not self._amount_covers(order, event):
            return OrderState.PENDING_VERIFICATION, (
                f"monto {event.amount} {event.currency} menor al total {order.total} {order.currency}"
            )
        return OrderState.COMPLETED, None

    def _amount_covers(self, order: Order, event: CanonicalPaymentEvent) -> bool:
        if event.amount is None:
            return True
        paid = to_decimal(event.amount)
        src = (event.currency or order.currency).upper()
        dst = order.currency.upper()
        if src != dst:
            # conversión a tasa fija
            if src in _USD_LIKE and dst not in _USD_LIKE:
                paid = paid * to_decimal(self.usd_rate)
            elif dst in _USD_LIKE and src not in _USD_LIKE:
                paid = paid / to_decimal(self.usd_rate)
        return round2(paid) >= order.total

    def _expire_if_due(self, order: Order, now: Optional[dt.datetime] = None) -> Order:
        now = now or self._now_utc()
        if order.is_terminal or now <= order.expires_at:
            return order
        moved = order.moved_to(OrderState.EXPIRED, now, reason="ttl")
        self._commit(order, moved)
        logger.info("Orden expirada id=%s", order.id)
        self._emit(order.state, moved)
        return moved

    def _commit(self, previous: Order, new: Order, record: Optional[PaymentEvent] = None) -> bool:
        """Aplica evento + inventario + orden como una unidad; revierte si algo falla."""
        if previous.tickets != new.tickets:
            raise InvalidTransition("Los boletos de una orden no pueden cambiar")

        undo: List[Callable[[], Any]] = []
        numbers = list(new.tickets)
        try:
            if record is not None:
                if not self.events.add(record):
                    return False
                undo.append(lambda: self.events.remove(*record.dedupe_key))
            if new.state == OrderState.COMPLETED and previous.state != OrderState.COMPLETED:
                self.inventory.mark_occupied(new.raffle_id, numbers, new.id)
                undo.append(lambda: self.inventory.unmark_occupied(new.raffle_id, numbers, new.id))
            self.orders.save(new)
            undo.append(lambda: self.orders.save(previous))
            if new.state in (OrderState.CANCELLED, OrderState.EXPIRED) and not previous.is_terminal:
                self.inventory.release(new.raffle_id, numbers, new.id)
            return True
        except Exception as e:
            for step in reversed(undo):
                try:
                    step()
                except Exception:
                    logger.exception("No se pudo revertir un paso de la orden %s", new.id)
            if isinstance(e, RaffleError) and not isinstance(e, TransientError):
                raise
            raise TransientError(f"No se pudo actualizar la orden {new.id}") from e

    def _emit(self, previous: Optional[OrderState], order: Order) -> None:
        event = OrderStateChanged(
            order_id=order.id,
            raffle_id=order.raffle_id,
            previous_state=previous,
            new_state=order.state,
            buyer_contact=order.buyer.contact(),
            at=self._now_utc(),
        )
        try:
            self.dispatcher.dispatch(event)
        except Exception:
            # la entrega es responsabilidad del despachador; la transición ya quedó
            logger.exception("Falló el despacho de la notificación de la orden %s", order.id)
