"""Modelos de dominio: rifas, órdenes y eventos de pago."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from rifas.services.utils import parse_iso, to_iso


class RaffleStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class OrderState(str, Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PENDING_VERIFICATION = "pending_verification"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({OrderState.COMPLETED, OrderState.CANCELLED, OrderState.EXPIRED})


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED_SIGNATURE = "rejected_signature"
    ERROR = "error"


@dataclass
class Raffle:
    """Rifa del catálogo. El núcleo solo la lee."""

    id: str
    name: str
    total_tickets: int
    unit_price: float
    currency: str = "MXN"
    max_per_buyer: int = 100
    min_per_purchase: int = 1
    max_per_transaction: int = 50
    starts_at: Optional[dt.datetime] = None
    ends_at: Optional[dt.datetime] = None
    draw_at: Optional[dt.datetime] = None
    status: RaffleStatus = RaffleStatus.ACTIVE

    @property
    def selection_limit(self) -> int:
        return min(self.max_per_buyer, self.max_per_transaction)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "total_tickets": self.total_tickets,
            "unit_price": self.unit_price,
            "currency": self.currency,
            "max_per_buyer": self.max_per_buyer,
            "min_per_purchase": self.min_per_purchase,
            "max_per_transaction": self.max_per_transaction,
            "starts_at": to_iso(self.starts_at),
            "ends_at": to_iso(self.ends_at),
            "draw_at": to_iso(self.draw_at),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class AllocationSeed:
    raffle_id: str
    occupied_count: int
    seed: int


@dataclass(frozen=True)
class BuyerInfo:
    name: str
    email: str
    phone: str
    whatsapp: Optional[str] = None

    def contact(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "email": self.email, "phone": self.phone, "whatsapp": self.whatsapp}


@dataclass(frozen=True)
class Order:
    id: str
    raffle_id: str
    buyer: BuyerInfo
    tickets: Tuple[int, ...]
    subtotal: float
    discount_percentage: float
    discount_amount: float
    total: float
    currency: str
    provider: str
    state: OrderState
    created_at: dt.datetime
    expires_at: dt.datetime
    reference_code: Optional[str] = None
    promo_code: Optional[str] = None
    proof_reference: Optional[str] = None
    updated_at: Optional[dt.datetime] = None
    history: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def with_note(self, at: dt.datetime, kind: str, **detail: Any) -> "Order":
        entry = {"at": to_iso(at), "kind": kind, **detail}
        return replace(self, history=self.history + (entry,), updated_at=at)

    def moved_to(self, state: OrderState, at: dt.datetime, **detail: Any) -> "Order":
        moved = replace(self, state=state)
        return moved.with_note(at, "transition", **{"from": self.state.value, "to": state.value, **detail})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "raffle_id": self.raffle_id,
            "buyer": self.buyer.contact(),
            "tickets": list(self.tickets),
            "subtotal": self.subtotal,
            "discount_percentage": self.discount_percentage,
            "discount_amount": self.discount_amount,
            "total": self.total,
            "currency": self.currency,
            "provider": self.provider,
            "state": self.state.value,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "reference_code": self.reference_code,
            "promo_code": self.promo_code,
            "proof_reference": self.proof_reference,
            "updated_at": to_iso(self.updated_at),
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Order":
        buyer = row.get("buyer") or {}
        return cls(
            id=row["id"],
            raffle_id=row["raffle_id"],
            buyer=BuyerInfo(
                name=buyer.get("name", ""),
                email=buyer.get("email", ""),
                phone=buyer.get("phone", ""),
                whatsapp=buyer.get("whatsapp"),
            ),
            tickets=tuple(int(n) for n in row.get("tickets") or []),
            subtotal=float(row["subtotal"]),
            discount_percentage=float(row.get("discount_percentage") or 0),
            discount_amount=float(row.get("discount_amount") or 0),
            total=float(row["total"]),
            currency=row.get("currency") or "MXN",
            provider=row["provider"],
            state=OrderState(row["state"]),
            created_at=parse_iso(row["created_at"]),
            expires_at=parse_iso(row["expires_at"]),
            reference_code=row.get("reference_code"),
            promo_code=row.get("promo_code"),
            proof_reference=row.get("proof_reference"),
            updated_at=parse_iso(row.get("updated_at")),
            history=tuple(dict(h) for h in row.get("history") or []),
        )


@dataclass(frozen=True)
class CanonicalPaymentEvent:
    """Forma normalizada de una notificación de pago, sin importar el proveedor."""

    provider: str
    provider_event_id: str
    order_id: str
    status: PaymentStatus
    amount: Optional[float]
    currency: Optional[str]
    raw_payload_hash: str
    received_at: dt.datetime
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> Tuple[str, str]:
        return (self.provider, self.provider_event_id)


@dataclass(frozen=True)
class PaymentEvent:
    provider: str
    provider_event_id: str
    raw_payload_hash: str
    claimed_order_id: Optional[str]
    claimed_status: Optional[str]
    claimed_amount: Optional[float]
    claimed_currency: Optional[str]
    received_at: dt.datetime
    outcome: EventOutcome = EventOutcome.APPLIED
    note: Optional[str] = None

    @property
    def dedupe_key(self) -> Tuple[str, str]:
        return (self.provider, self.provider_event_id)

    @classmethod
    def from_canonical(cls, ev: CanonicalPaymentEvent, outcome: EventOutcome, note: Optional[str] = None) -> "PaymentEvent":
        return cls(
            provider=ev.provider,
            provider_event_id=ev.provider_event_id,
            raw_payload_hash=ev.raw_payload_hash,
            claimed_order_id=ev.order_id,
            claimed_status=ev.status.value,
            claimed_amount=ev.amount,
            claimed_currency=ev.currency,
            received_at=ev.received_at,
            outcome=outcome,
            note=note,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "provider_event_id": self.provider_event_id,
            "raw_payload_hash": self.raw_payload_hash,
            "claimed_order_id": self.claimed_order_id,
            "claimed_status": self.claimed_status,
            "claimed_amount": self.claimed_amount,
            "claimed_currency": self.claimed_currency,
            "received_at": to_iso(self.received_at),
            "outcome": self.outcome.value,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "PaymentEvent":
        amount = row.get("claimed_amount")
        return cls(
            provider=row["provider"],
            provider_event_id=row["provider_event_id"],
            raw_payload_hash=row.get("raw_payload_hash") or "",
            claimed_order_id=row.get("claimed_order_id"),
            claimed_status=row.get("claimed_status"),
            claimed_amount=float(amount) if amount is not None else None,
            claimed_currency=row.get("claimed_currency"),
            received_at=parse_iso(row.get("received_at")),
            outcome=EventOutcome(row.get("outcome") or EventOutcome.APPLIED.value),
            note=row.get("note"),
        )


@dataclass(frozen=True)
class OrderStateChanged:
    order_id: str
    raffle_id: str
    previous_state: Optional[OrderState]
    new_state: OrderState
    buyer_contact: Dict[str, Optional[str]]
    at: dt.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "raffleId": self.raffle_id,
            "previousState": self.previous_state.value if self.previous_state else None,
            "newState": self.new_state.value,
            "buyerContact": dict(self.buyer_contact),
            "at": to_iso(self.at),
        }


def active_ticket_count(orders: List[Order]) -> int:
    return sum(len(o.tickets) for o in orders if o.state in (
        OrderState.PENDING_PAYMENT, OrderState.PENDING_VERIFICATION, OrderState.COMPLETED,
    ))
