"""Arma el grafo de servicios según STORAGE_BACKEND (memory | supabase)."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Callable, Optional

from supabase import Client

from rifas.core.logger import get_logger
from rifas.core.settings import Settings, make_client, settings
from rifas.services.allocation import AllocationService
from rifas.services.inventory import InMemoryInventory, SupabaseInventory
from rifas.services.models import AllocationSeed, Raffle
from rifas.services.notifications import LoggingDispatcher, WebhookDispatcher
from rifas.services.orders import OrderLifecycle
from rifas.services.repositories import (
    InMemoryAllocationSeedRepository, InMemoryOrderRepository, InMemoryPaymentEventRepository,
    InMemoryRaffleCatalog, SupabaseAllocationSeedRepository, SupabaseOrderRepository,
    SupabasePaymentEventRepository, SupabaseRaffleCatalog,
)
from rifas.services.selection import parse_promo_codes, parse_tiers
from rifas.services.webhooks import PaymentWebhookIngestor

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    catalog: Any
    allocation: AllocationService
    inventory: Any
    orders: Any
    events: Any
    dispatcher: Any
    lifecycle: OrderLifecycle
    webhooks: PaymentWebhookIngestor


def demo_raffle(cfg: Settings) -> Raffle:
    return Raffle(
        id=cfg.demo_raffle_id,
        name=cfg.demo_raffle_name,
        total_tickets=cfg.demo_raffle_total,
        unit_price=cfg.demo_raffle_price,
        currency=cfg.currency,
        max_per_buyer=cfg.demo_max_per_buyer,
        min_per_purchase=cfg.demo_min_per_purchase,
        max_per_transaction=cfg.demo_max_per_transaction,
    )


def build_services(
    cfg: Settings = settings,
    client: Optional[Client] = None,
    dispatcher: Any = None,
    clock: Optional[Callable[[], dt.datetime]] = None,
) -> Services:
    backend = cfg.storage_backend.strip().lower()
    default_seeds = {
        cfg.demo_raffle_id: AllocationSeed(cfg.demo_raffle_id, cfg.demo_raffle_sold, cfg.demo_raffle_seed),
    }

    if backend == "supabase":
        client = client or make_client(cfg)
        catalog = SupabaseRaffleCatalog(client)
        seeds = SupabaseAllocationSeedRepository(client)
        allocation = AllocationService(seeds, default_seeds)
        inventory = SupabaseInventory(client, catalog, allocation)
        orders = SupabaseOrderRepository(client)
        events = SupabasePaymentEventRepository(client)
    elif backend == "memory":
        catalog = InMemoryRaffleCatalog([demo_raffle(cfg)])
        seeds = InMemoryAllocationSeedRepository()
        allocation = AllocationService(seeds, default_seeds)
        inventory = InMemoryInventory(catalog, allocation)
        orders = InMemoryOrderRepository()
        events = InMemoryPaymentEventRepository()
    else:
        raise RuntimeError(f"STORAGE_BACKEND desconocido: {cfg.storage_backend}")

    if dispatcher is None:
        if cfg.notification_webhook_url:
            dispatcher = WebhookDispatcher(cfg.notification_webhook_url)
        else:
            dispatcher = LoggingDispatcher()

    lifecycle = OrderLifecycle(
        catalog=catalog,
        inventory=inventory,
        orders=orders,
        events=events,
        dispatcher=dispatcher,
        tiers=parse_tiers(cfg.discount_tiers),
        promos=parse_promo_codes(cfg.promo_codes),
        order_ttl_hours=cfg.order_ttl_hours,
        reference_prefix=cfg.bank_reference_prefix,
        usd_rate=cfg.usd_mxn_rate,
        enforce_amount_match=cfg.enforce_amount_match,
        clock=clock,
    )
    webhooks = PaymentWebhookIngestor(
        lifecycle,
        cfg.webhook_configs(),
        bank_reference_prefix=cfg.bank_reference_prefix,
        log_size=cfg.webhook_log_size,
        clock=clock,
    )

    unverified = webhooks.unverified_providers()
    if unverified:
        logger.warning("Webhooks sin verificación de firma: %s", ", ".join(unverified))
    logger.info("Servicios listos backend=%s notificaciones=%s", backend, type(dispatcher).__name__)

    return Services(
        settings=cfg,
        catalog=catalog,
        allocation=allocation,
        inventory=inventory,
        orders=orders,
        events=events,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        webhooks=webhooks,
    )
