from os import getenv, path
from typing import Dict, NamedTuple

from pydantic import BaseModel
from supabase import create_client, Client
from dotenv import load_dotenv

# =====================================================
# Cargar archivo .env desde la carpeta rifas/
# =====================================================
BASE_DIR = path.dirname(path.abspath(__file__))        # rifas/core
ROOT_DIR = path.dirname(BASE_DIR)                      # rifas/
ENV_PATH = path.join(ROOT_DIR, ".env")                 # rifas/.env
load_dotenv(ENV_PATH)
# =====================================================

PROVIDERS = ("binance", "oxxo", "azteca", "bancoppel")
BANK_PROVIDERS = ("azteca", "bancoppel")


def _flag(name: str, default: str) -> bool:
    return getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class WebhookConfig(NamedTuple):
    secret: str
    verify_signature: bool


class Settings(BaseModel):
    environment: str = getenv("ENVIRONMENT", "development")

    # Persistencia: "memory" (local/tests) o "supabase"
    storage_backend: str = getenv("STORAGE_BACKEND", "memory")
    supabase_url: str = getenv("SUPABASE_URL", "")
    supabase_service_key: str = getenv("SUPABASE_SERVICE_KEY", "")

    admin_api_key: str = getenv("ADMIN_API_KEY", "")

    # Órdenes / precios
    order_ttl_hours: int = int(getenv("ORDER_TTL_HOURS", "48"))
    currency: str = getenv("CURRENCY", "MXN")
    usd_mxn_rate: float = float(getenv("USD_MXN_RATE", "17.0"))
    enforce_amount_match: bool = _flag("ENFORCE_AMOUNT_MATCH", "false")
    discount_tiers: str = getenv("DISCOUNT_TIERS", "3-4:5,5-9:10,10-19:15,20-49:20,50+:25")
    promo_codes: str = getenv("PROMO_CODES", "")

    # Webhooks de pago
    bank_reference_prefix: str = getenv("BANK_REFERENCE_PREFIX", "RIFA-")
    binance_webhook_secret: str = getenv("BINANCE_WEBHOOK_SECRET", "binance-secret-key")
    binance_verify_signature: bool = _flag("BINANCE_VERIFY_SIGNATURE", "true")
    oxxo_webhook_secret: str = getenv("OXXO_WEBHOOK_SECRET", "oxxo-secret-key")
    oxxo_verify_signature: bool = _flag("OXXO_VERIFY_SIGNATURE", "true")
    azteca_webhook_secret: str = getenv("AZTECA_WEBHOOK_SECRET", "azteca-secret-key")
    azteca_verify_signature: bool = _flag("AZTECA_VERIFY_SIGNATURE", "false")
    bancoppel_webhook_secret: str = getenv("BANCOPPEL_WEBHOOK_SECRET", "bancoppel-secret-key")
    bancoppel_verify_signature: bool = _flag("BANCOPPEL_VERIFY_SIGNATURE", "false")
    webhook_log_size: int = int(getenv("WEBHOOK_LOG_SIZE", "100"))
    status_events_limit: int = int(getenv("STATUS_EVENTS_LIMIT", "20"))

    # Notificaciones (n8n u otro receptor HTTP)
    notification_webhook_url: str = getenv("NOTIFICATION_WEBHOOK_URL", "")

    cleanup_interval_seconds: int = int(getenv("CLEANUP_INTERVAL_SECONDS", "60"))

    # Rifa demo para el catálogo en memoria
    demo_raffle_id: str = getenv("DEMO_RAFFLE_ID", "rifa-demo")
    demo_raffle_name: str = getenv("DEMO_RAFFLE_NAME", "Silverado z71 + PS5 + $3,000 USD")
    demo_raffle_total: int = int(getenv("DEMO_RAFFLE_TOTAL", "10000"))
    demo_raffle_price: float = float(getenv("DEMO_RAFFLE_PRICE", "150"))
    demo_raffle_sold: int = int(getenv("DEMO_RAFFLE_SOLD", "0"))
    demo_raffle_seed: int = int(getenv("DEMO_RAFFLE_SEED", "42"))
    demo_max_per_buyer: int = int(getenv("DEMO_MAX_PER_BUYER", "100"))
    demo_min_per_purchase: int = int(getenv("DEMO_MIN_PER_PURCHASE", "1"))
    demo_max_per_transaction: int = int(getenv("DEMO_MAX_PER_TRANSACTION", "50"))

    def webhook_config(self, provider: str) -> WebhookConfig:
        return WebhookConfig(
            secret=getattr(self, f"{provider}_webhook_secret"),
            verify_signature=getattr(self, f"{provider}_verify_signature"),
        )

    def webhook_configs(self) -> Dict[str, WebhookConfig]:
        return {p: self.webhook_config(p) for p in PROVIDERS}

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


settings = Settings()


def make_client(cfg: Settings = settings) -> Client:
    if not cfg.supabase_url or not cfg.supabase_service_key:
        raise RuntimeError("Faltan SUPABASE_URL o SUPABASE_SERVICE_KEY")
    return create_client(cfg.supabase_url, cfg.supabase_service_key)
