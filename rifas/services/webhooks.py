"""Recepción de webhooks de pago (Binance Pay, OXXO, Banco Azteca, BanCoppel).

Cada proveedor manda su propia forma de payload; aquí se autentica, se normaliza a
CanonicalPaymentEvent y se entrega al ciclo de vida de la orden.
"""
from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PayloadError

from rifas.core.errors import AuthenticityError, NotFoundError, ValidationError
from rifas.core.logger import get_logger
from rifas.core.settings import PROVIDERS, WebhookConfig
from rifas.services.models import CanonicalPaymentEvent, EventOutcome, PaymentStatus
from rifas.services.orders import OrderLifecycle
from rifas.services.utils import now_utc, stable_hash, to_iso
from rifas.services.validators import validate_provider

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
PROVIDER_HEADER = "x-webhook-provider"

_OXXO_STATUS = {
    "charge.paid": PaymentStatus.CONFIRMED,
    "charge.pending": PaymentStatus.PENDING,
    "charge.expired": PaymentStatus.REJECTED,
}


# ---------- Payloads por proveedor ----------
class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class BinanceData(_Payload):
    orderCode: str
    totalFee: Optional[Union[str, float]] = None
    currency: Optional[str] = None


class BinancePayload(_Payload):
    bizType: Optional[str] = None
    bizId: Optional[Union[str, int]] = None
    bizStatus: str
    data: BinanceData

    @field_validator("data", mode="before")
    @classmethod
    def _decode_data(cls, v):
        # Binance a veces manda `data` como string JSON
        if isinstance(v, str):
            return json.loads(v)
        return v


class OxxoPaymentMethod(_Payload):
    type: Optional[str] = None
    reference: Optional[str] = None
    barcode: Optional[str] = None


class OxxoObject(_Payload):
    id: str
    amount: Optional[int] = None  # centavos
    currency: Optional[str] = None
    payment_method: Optional[OxxoPaymentMethod] = None
    status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class OxxoData(_Payload):
    object: OxxoObject


class OxxoPayload(_Payload):
    id: Optional[str] = None
    type: str
    created_at: Optional[Union[int, str]] = None
    data: OxxoData


class BankPayload(_Payload):
    transaction_id: Optional[str] = None
    account_number: Optional[str] = None
    reference: str
    amount: Optional[float] = None
    timestamp: Optional[str] = None
    bank: str
    status: Literal["confirmed", "pending", "rejected"]


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class IngestResult:
    order_id: str
    status: str
    duplicate: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "orderId": self.order_id, "status": self.status, "duplicate": self.duplicate}


class PaymentWebhookIngestor:
    def __init__(
        self,
        lifecycle: OrderLifecycle,
        configs: Dict[str, WebhookConfig],
        bank_reference_prefix: str = "RIFA-",
        log_size: int = 100,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ):
        self.lifecycle = lifecycle
        self.configs = dict(configs)
        self.bank_reference_prefix = bank_reference_prefix
        self._clock = clock or now_utc
        self._logs: Dict[str, Deque[Dict[str, Any]]] = {p: deque(maxlen=log_size) for p in PROVIDERS}
        self._logs_lock = threading.Lock()

    def unverified_providers(self) -> List[str]:
        return [p for p in PROVIDERS if not self.configs[p].verify_signature]

    # ---------- Autenticidad ----------
    def verify_signature(self, provider: str, body: bytes, signature: Optional[str]) -> None:
        cfg = self.configs[provider]
        if not cfg.verify_signature:
            return
        if not signature:
            raise AuthenticityError(f"Falta la firma del webhook de {provider}")
        expected = sign(body, cfg.secret).encode("ascii")
        # los headers llegan decodificados como latin-1; se comparan bytes
        given = signature.strip().lower().encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected, given):
            raise AuthenticityError(f"Firma inválida para {provider}")

    # ---------- Normalización ----------
    def _order_from_reference(self, reference: str) -> str:
        ref = reference.strip()
        if ref.upper().startswith(self.bank_reference_prefix.upper()):
            return ref[len(self.bank_reference_prefix):]
        return ref

    def normalize(self, provider: str, payload: Dict[str, Any], raw_hash: str) -> CanonicalPaymentEvent:
        try:
            if provider == "binance":
                p = BinancePayload.model_validate(payload)
                status = PaymentStatus.CONFIRMED if p.bizStatus == "PAY_SUCCESS" else PaymentStatus.PENDING
                fields = {
                    "order_id": p.data.orderCode,
                    "event_id": str(p.bizId) if p.bizId is not None else None,
                    "amount": float(p.data.totalFee) if p.data.totalFee not in (None, "") else None,
                    "currency": p.data.currency,
                    "details": {"bizType": p.bizType, "bizStatus": p.bizStatus},
                }
            elif provider == "oxxo":
                p = OxxoPayload.model_validate(payload)
                obj = p.data.object
                status = _OXXO_STATUS.get(p.type, PaymentStatus.PENDING)
                method = obj.payment_method
                fields = {
                    "order_id": str((obj.metadata or {}).get("orderId") or obj.id),
                    "event_id": p.id,
                    "amount": obj.amount / 100.0 if obj.amount is not None else None,
                    "currency": obj.currency,
                    "details": {"type": p.type, "reference": method.reference if method else None},
                }
            else:
                p = BankPayload.model_validate(payload)
                if p.bank.strip().lower() != provider:
                    raise ValidationError(f"El banco '{p.bank}' no coincide con el proveedor '{provider}'")
                status = PaymentStatus(p.status)
                fields = {
                    "order_id": self._order_from_reference(p.reference),
                    "event_id": p.transaction_id,
                    "amount": p.amount,
                    "currency": None,
                    "details": {"reference": p.reference, "account_number": p.account_number},
                }
        except PayloadError as e:
            violations = [f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(f"Payload de {provider} inválido", violations=violations) from e
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload de {provider} inválido: {e}") from e

        if not fields["order_id"]:
            raise ValidationError("El webhook no indica la orden")

        event_id = fields["event_id"]
        if not event_id:
            # sin id del proveedor: hash estable de lo normalizado
            event_id = stable_hash({
                "provider": provider,
                "order_id": fields["order_id"],
                "status": status.value,
                "amount": fields["amount"],
                "currency": fields["currency"],
                "details": fields["details"],
            })

        return CanonicalPaymentEvent(
            provider=provider,
            provider_event_id=event_id,
            order_id=fields["order_id"],
            status=status,
            amount=fields["amount"],
            currency=fields["currency"],
            raw_payload_hash=raw_hash,
            received_at=self._clock(),
            details=fields["details"],
        )

    # ---------- Entrada ----------
    def ingest(self, provider: Optional[str], body: bytes, signature: Optional[str] = None) -> IngestResult:
        if not provider:
            raise ValidationError("Proveedor de pago no especificado")
        provider = validate_provider(provider)

        try:
            payload = json.loads(body or b"")
        except ValueError as e:
            raise ValidationError("El cuerpo del webhook no es JSON válido") from e
        if not isinstance(payload, dict):
            raise ValidationError("El cuerpo del webhook debe ser un objeto JSON")

        raw_hash = stable_hash(body)
        try:
            self.verify_signature(provider, body, signature)
        except AuthenticityError as e:
            order_id = self._claimed_order_id(provider, payload)
            self._log(provider, order_id, None, EventOutcome.REJECTED_SIGNATURE, note=e.message)
            logger.warning("Webhook rechazado por firma proveedor=%s orden=%s", provider, order_id)
            self._audit(order_id, "authenticity_error", provider=provider, payload_hash=raw_hash)
            raise

        try:
            event = self.normalize(provider, payload, raw_hash)
        except ValidationError as e:
            order_id = self._claimed_order_id(provider, payload)
            self._log(provider, order_id, None, EventOutcome.ERROR, note=e.message)
            self._audit(order_id, "payment_error", provider=provider, payload_hash=raw_hash, error=e.message)
            raise

        try:
            result = self.lifecycle.apply_payment_event(event.order_id, event)
        except NotFoundError as e:
            self._log(provider, event.order_id, event.provider_event_id, EventOutcome.ERROR, note=e.message)
            raise
        except Exception as e:
            self._log(provider, event.order_id, event.provider_event_id, EventOutcome.ERROR, note=str(e))
            self._audit(
                event.order_id, "payment_error",
                provider=provider, event_id=event.provider_event_id, payload_hash=raw_hash, error=str(e),
            )
            raise

        if result.duplicate:
            outcome = EventOutcome.DUPLICATE
        elif result.applied:
            outcome = EventOutcome.APPLIED
        else:
            outcome = EventOutcome.IGNORED
        self._log(provider, event.order_id, event.provider_event_id, outcome, note=result.note)
        return IngestResult(event.order_id, result.order.state.value, result.duplicate)

    def _claimed_order_id(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        """Orden que dice el payload, sin validarlo (para auditar rechazos)."""
        try:
            if provider == "binance":
                data = payload.get("data")
                if isinstance(data, str):
                    data = json.loads(data)
                order_id = (data or {}).get("orderCode")
            elif provider == "oxxo":
                obj = (payload.get("data") or {}).get("object") or {}
                order_id = (obj.get("metadata") or {}).get("orderId") or obj.get("id")
            else:
                ref = payload.get("reference")
                order_id = self._order_from_reference(ref) if isinstance(ref, str) else None
        except (AttributeError, TypeError, ValueError):
            return None
        return str(order_id) if order_id else None

    def _audit(self, order_id: Optional[str], kind: str, **detail: Any) -> None:
        if not order_id:
            return
        try:
            self.lifecycle.record_rejected_event(order_id, kind, **detail)
        except Exception:
            # el error original es el que se reporta al proveedor
            logger.exception("No se pudo registrar %s en la orden %s", kind, order_id)

    # ---------- Bitácora / consultas ----------
    def _log(self, provider, order_id, event_id, outcome: EventOutcome, note: Optional[str] = None) -> None:
        entry = {
            "provider": provider,
            "orderId": order_id,
            "eventId": event_id,
            "outcome": outcome.value,
            "note": note,
            "receivedAt": to_iso(self._clock()),
        }
        with self._logs_lock:
            self._logs[provider].append(entry)

    def recent(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._logs_lock:
            if provider:
                return list(self._logs[validate_provider(provider)])
            return [e for p in PROVIDERS for e in self._logs[p]]

    def status(self, order_id: str, provider: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        if provider:
            provider = validate_provider(provider)
        order = self.lifecycle.get(order_id)
        events = self.lifecycle.events_for(order_id, provider=provider, limit=limit)
        return {
            "orderId": order.id,
            "status": order.state.value,
            "order": order.to_dict(),
            "events": [e.to_dict() for e in events],
        }

    # ---------- Simulación (solo desarrollo) ----------
    def mock_payload(self, provider: str, order_id: str, status: str = "confirmed") -> Dict[str, Any]:
        provider = validate_provider(provider)
        try:
            wanted = PaymentStatus(status)
        except ValueError as e:
            raise ValidationError(f"Estado simulado inválido: '{status}'") from e
        order = self.lifecycle.get(order_id)
        event_id = f"sim_{uuid.uuid4().hex[:12]}"

        if provider == "binance":
            return {
                "bizType": "PAY",
                "bizId": event_id,
                "bizStatus": "PAY_SUCCESS" if wanted == PaymentStatus.CONFIRMED else "PAY_PENDING",
                "data": {"orderCode": order.id, "totalFee": f"{order.total:.2f}", "currency": order.currency},
            }
        if provider == "oxxo":
            kind = {v: k for k, v in _OXXO_STATUS.items()}[wanted]
            return {
                "id": event_id,
                "type": kind,
                "created_at": int(self._clock().timestamp()),
                "data": {"object": {
                    "id": f"ord_{event_id}",
                    "amount": int(round(order.total * 100)),
                    "currency": order.currency,
                    "payment_method": {"type": "oxxo", "reference": order.reference_code},
                    "status": wanted.value,
                    "metadata": {"orderId": order.id},
                }},
            }
        return {
            "transaction_id": event_id,
            "account_number": "0000000000",
            "reference": order.reference_code or f"{self.bank_reference_prefix}{order.id}",
            "amount": order.total,
            "timestamp": to_iso(self._clock()),
            "bank": provider,
            "status": wanted.value,
        }

    def simulate(self, provider: str, order_id: str, status: str = "confirmed") -> IngestResult:
        """Firma un payload de prueba y lo pasa por la misma ruta que un webhook real."""
        payload = self.mock_payload(provider, order_id, status)
        body = json.dumps(payload).encode("utf-8")
        provider = provider.strip().lower()
        logger.info("Simulando webhook proveedor=%s orden=%s estado=%s", provider, order_id, status)
        return self.ingest(provider, body, sign(body, self.configs[provider].secret))

