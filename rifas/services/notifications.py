"""Despacho de eventos "cambio de estado de orden".

El núcleo solo decide que hay que notificar; la entrega (email, WhatsApp, push)
la hace el receptor externo.
"""
from typing import Dict, List

import requests

from rifas.core.logger import get_logger
from rifas.services.models import OrderState, OrderStateChanged

logger = get_logger(__name__)

_HTTP_TIMEOUT = 8  # seg

_STATUS_MESSAGES: Dict[OrderState, str] = {
    OrderState.PENDING_PAYMENT: "Tu orden #{order_id} fue creada. Realiza tu pago antes de que expire.",
    OrderState.PENDING_VERIFICATION: "Tu pago para la orden #{order_id} está pendiente de confirmación.",
    OrderState.COMPLETED: (
        "¡Excelente! Tu pago para la orden #{order_id} ha sido confirmado. Tus boletos están asegurados."
    ),
    OrderState.CANCELLED: "El pago para la orden #{order_id} ha sido cancelado.",
    OrderState.EXPIRED: "La orden #{order_id} expiró y sus boletos fueron liberados.",
}


def status_message(state: OrderState, order_id: str) -> str:
    template = _STATUS_MESSAGES.get(state)
    if not template:
        return f"Estado de la orden #{order_id} actualizado: {state.value}"
    return template.format(order_id=order_id)


class LoggingDispatcher:
    """Solo registra el evento; útil en local y cuando no hay receptor."""

    def __init__(self):
        self.sent: List[OrderStateChanged] = []

    def dispatch(self, event: OrderStateChanged) -> None:
        self.sent.append(event)
        logger.info(
            "Notificación orden=%s estado=%s contacto=%s",
            event.order_id, event.new_state.value, event.buyer_contact.get("email"),
        )


class WebhookDispatcher:
    """Reenvía el evento a un receptor HTTP (p.ej. un flujo de n8n)."""

    def __init__(self, url: str, session: requests.Session = None, timeout: float = _HTTP_TIMEOUT):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def dispatch(self, event: OrderStateChanged) -> None:
        body = event.to_dict()
        body["message"] = status_message(event.new_state, event.order_id)
        r = self.session.post(self.url, json=body, timeout=self.timeout)
        r.raise_for_status()
        logger.info("Notificación enviada orden=%s estado=%s", event.order_id, event.new_state.value)
