from typing import Optional, Any, Dict
import random
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Header, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from rifas.api.schemas import (
    OrderCreateRequest, ProofRequest, CancelRequest, ExpireRequest,
    QuickPickRequest, QuickPickResponse, QuoteRequest, QuoteResponse,
    CheckRequest, WebhookResponse, SimulateRequest, WebhookStatusResponse,
)
from rifas.core.errors import RaffleError, ValidationError
from rifas.core.logger import get_logger
from rifas.core.settings import settings, PROVIDERS
from rifas.services.allocation import ticket_page
from rifas.services.container import Services, build_services
from rifas.services.selection import (
    Selection, bulk_select, consecutive_candidates, random_candidates,
)
from rifas.services.utils import mask_email
from rifas.services.webhooks import PROVIDER_HEADER, SIGNATURE_HEADER

logger = get_logger(__name__)

# ---------------- Limpieza periódica ----------------
_stop_cleanup = threading.Event()


def _cleanup_loop(interval: int):
    while not _stop_cleanup.wait(interval):
        try:
            svc().lifecycle.sweep_expired()
        except Exception:
            logger.exception("Falló la limpieza de órdenes expiradas")


@asynccontextmanager
async def lifespan(app: FastAPI):
    interval = svc().settings.cleanup_interval_seconds
    if interval > 0:
        _stop_cleanup.clear()
        threading.Thread(target=_cleanup_loop, args=(interval,), daemon=True, name="order-cleanup").start()
        logger.info("Limpieza de órdenes cada %ss", interval)
    yield
    _stop_cleanup.set()


app = FastAPI(title="Rifas API", version="1.0.0", lifespan=lifespan)

# ---------------- CORS ----------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------- Servicios ----------------
app.state.services = build_services(settings)


def svc() -> Services:
    return app.state.services


def require_admin(x_admin_key: str = ""):
    key = svc().settings.admin_api_key
    if not key or x_admin_key != key:
        raise HTTPException(401, "Admin key inválida")


def _fail(e: Exception, action: str) -> HTTPException:
    """Traduce errores del dominio a HTTP; lo inesperado se registra y sale como 500."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, RaffleError):
        if e.status_code >= 500:
            logger.error("Falla transitoria al %s: %s", action, e.message)
        return HTTPException(e.status_code, e.to_detail())
    logger.exception("Error inesperado al %s", action)
    return HTTPException(500, "Error interno")


# ---------------- Salud / Config ----------------
@app.get("/health")
def health():
    try:
        raffle = svc().catalog.current()
        return {"status": "ok", "active_raffle": bool(raffle)}
    except Exception as e:
        return {"status": "degraded", "error": str(e)}


@app.get("/config")
def public_config(raffle_id: Optional[str] = Query(default=None)):
    """Config pública para el front: rifa, descuentos y métodos de pago."""
    s = svc()
    base: Dict[str, Any] = {
        "raffle_active": False,
        "raffle": None,
        "currency": s.settings.currency,
        "order_ttl_hours": s.settings.order_ttl_hours,
        "providers": list(PROVIDERS),
        "discount_tiers": [
            {"min_qty": t.min_qty, "max_qty": t.max_qty, "percentage": t.percentage}
            for t in s.lifecycle.tiers
        ],
        "progress": {},
    }
    try:
        raffle = s.catalog.get(raffle_id)
        if raffle:
            occupied = len(s.inventory.occupied_numbers(raffle.id))
            base.update({
                "raffle_active": True,
                "raffle": raffle.to_dict(),
                "progress": {
                    "total": raffle.total_tickets,
                    "occupied": occupied,
                    "available": raffle.total_tickets - occupied,
                },
            })
    except Exception as e:
        base["error"] = f"/config fallback: {e}"
    return base


# ---------------- Boletos ----------------
@app.get("/raffles/{raffle_id}/tickets")
def raffle_tickets(raffle_id: str, offset: int = Query(default=0), limit: int = Query(default=100)):
    try:
        raffle = svc().lifecycle.raffle(raffle_id)
        return {
            "raffle_id": raffle.id,
            "total": raffle.total_tickets,
            "offset": offset,
            "tickets": ticket_page(raffle, svc().inventory, offset, limit),
        }
    except Exception as e:
        raise _fail(e, "listar boletos")


@app.post("/raffles/{raffle_id}/quick_pick", response_model=QuickPickResponse)
def quick_pick(raffle_id: str, req: QuickPickRequest):
    """Selección rápida: agrega `quantity` boletos libres (al azar o consecutivos)."""
    try:
        raffle = svc().lifecycle.raffle(raffle_id)
        if req.quantity < 1:
            raise ValidationError("quantity debe ser >= 1")
        selection = Selection(req.selected)
        limit = min(raffle.selection_limit, selection.size + req.quantity)
        occupied = svc().inventory.occupied_numbers(raffle.id)
        if req.mode == "consecutive":
            candidates = consecutive_candidates(req.start, raffle.total_tickets)
        else:
            candidates = random_candidates(raffle.total_tickets, random.SystemRandom())
        added = bulk_select(selection, candidates, occupied, limit)
        return QuickPickResponse(
            raffle_id=raffle.id,
            added=added,
            selection=selection.numbers,
            limit_reached=selection.size >= raffle.selection_limit,
        )
    except Exception as e:
        raise _fail(e, "seleccionar boletos")


# ---------------- Cotización (soft-fail) ----------------
@app.post("/quote", response_model=QuoteResponse)
def quote_amount(req: QuoteRequest):
    try:
        raffle = svc().lifecycle.raffle(req.raffle_id)
        q = svc().lifecycle.quote(raffle.id, req.ticket_numbers, req.promo_code)
        return QuoteResponse(
            raffle_id=raffle.id,
            quantity=q.quantity,
            unit_price=q.unit_price,
            subtotal=q.subtotal,
            discount_percentage=q.discount_percentage,
            discount_amount=q.discount_amount,
            total=q.total,
            currency=raffle.currency,
            next_tier_quantity=q.next_tier_quantity,
            next_tier_percentage=q.next_tier_percentage,
        )
    except RaffleError as e:
        return QuoteResponse(
            raffle_id=req.raffle_id, quantity=len(req.ticket_numbers),
            unit_price=None, subtotal=None, total=None,
            error=e.message,
        )


# ---------------- Órdenes ----------------
@app.post("/orders", status_code=201)
def create_order(req: OrderCreateRequest):
    try:
        order = svc().lifecycle.create(
            raffle_id=req.raffle_id,
            ticket_numbers=req.ticket_numbers,
            buyer=req.buyer.model_dump(),
            provider=req.provider,
            promo_code=req.promo_code,
        )
        return order.to_dict()
    except Exception as e:
        raise _fail(e, "crear la orden")


@app.get("/orders/{order_id}")
def get_order(order_id: str):
    try:
        # la consulta también aplica la expiración perezosa
        return svc().lifecycle.expire(order_id).to_dict()
    except Exception as e:
        raise _fail(e, "consultar la orden")


@app.post("/orders/check")
def check_orders(req: CheckRequest):
    """Órdenes de un comprador (por email) en la rifa indicada o la actual."""
    try:
        raffle = svc().lifecycle.raffle(req.raffle_id)
        orders = svc().orders.list_by_buyer(raffle.id, str(req.email).lower())
        return {
            "raffle_id": raffle.id,
            "email": mask_email(str(req.email)),
            "orders": [
                {"id": o.id, "state": o.state.value, "tickets": list(o.tickets), "total": o.total}
                for o in orders
            ],
        }
    except Exception as e:
        raise _fail(e, "consultar órdenes")


@app.post("/orders/{order_id}/proof")
def attach_proof(order_id: str, req: ProofRequest):
    try:
        return svc().lifecycle.attach_proof(order_id, req.proof_reference).to_dict()
    except Exception as e:
        raise _fail(e, "registrar el comprobante")


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, req: CancelRequest, x_admin_key: str = Header(default="")):
    require_admin(x_admin_key)
    try:
        return svc().lifecycle.cancel(order_id, req.reason or "admin").to_dict()
    except Exception as e:
        raise _fail(e, "cancelar la orden")


@app.post("/admin/orders/expire")
def admin_expire_orders(req: Optional[ExpireRequest] = None, x_admin_key: str = Header(default="")):
    """Expira órdenes vencidas (además del barrido periódico)."""
    require_admin(x_admin_key)
    try:
        if req and req.order_id:
            order = svc().lifecycle.expire(req.order_id)
            return {"ok": True, "expired": [order.id] if order.state.value == "expired" else []}
        return {"ok": True, "expired": svc().lifecycle.sweep_expired()}
    except Exception as e:
        raise _fail(e, "expirar órdenes")


# ---------------- Webhooks de pago ----------------
@app.post("/webhooks/payments", response_model=WebhookResponse)
async def payment_webhook(request: Request, provider: Optional[str] = Query(default=None)):
    body = await request.body()
    selector = request.headers.get(PROVIDER_HEADER) or provider
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        result = await run_in_threadpool(svc().webhooks.ingest, selector, body, signature)
        return result.to_dict()
    except Exception as e:
        raise _fail(e, "procesar el webhook")


@app.get("/webhooks/payments")
def payment_webhook_status(
    orderId: Optional[str] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    x_admin_key: str = Header(default=""),
):
    """Con orderId: estado de la orden y sus eventos. Sin orderId (admin): bitácora reciente."""
    try:
        if orderId:
            data = svc().webhooks.status(orderId, provider, limit=svc().settings.status_events_limit)
            return WebhookStatusResponse(**data)
        require_admin(x_admin_key)
        return {"logs": svc().webhooks.recent(provider)}
    except Exception as e:
        raise _fail(e, "consultar webhooks")


@app.put("/webhooks/payments/simulate", response_model=WebhookResponse)
def simulate_webhook(req: SimulateRequest, x_admin_key: str = Header(default="")):
    if svc().settings.is_production:
        raise HTTPException(403, "Simulación deshabilitada en producción")
    require_admin(x_admin_key)
    try:
        return svc().webhooks.simulate(req.provider, req.order_id, req.status).to_dict()
    except Exception as e:
        raise _fail(e, "simular el webhook")
