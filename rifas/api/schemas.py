# rifas/api/schemas.py
from typing import Optional, Any, Dict, List, Literal
from pydantic import BaseModel, EmailStr

# -------- Comprador --------
class BuyerIn(BaseModel):
    # el email se valida junto con el resto de reglas del comprador
    name: str
    email: str
    phone: str
    whatsapp: Optional[str] = None

# -------- Órdenes --------
class OrderCreateRequest(BaseModel):
    raffle_id: Optional[str] = None
    ticket_numbers: List[int]
    buyer: BuyerIn
    provider: str
    promo_code: Optional[str] = None

class ProofRequest(BaseModel):
    proof_reference: str

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class ExpireRequest(BaseModel):
    order_id: Optional[str] = None  # sin order_id se barren todas las vencidas

# -------- Selección / Cotización --------
class QuickPickRequest(BaseModel):
    mode: Literal["random", "consecutive"] = "random"
    quantity: int
    start: int = 0
    selected: List[int] = []

class QuickPickResponse(BaseModel):
    raffle_id: str
    added: List[int]
    selection: List[int]
    limit_reached: bool

class QuoteRequest(BaseModel):
    raffle_id: Optional[str] = None
    ticket_numbers: List[int]
    promo_code: Optional[str] = None

class QuoteResponse(BaseModel):
    raffle_id: Optional[str]
    quantity: int
    unit_price: Optional[float]
    subtotal: Optional[float]
    discount_percentage: float = 0.0
    discount_amount: float = 0.0
    total: Optional[float]
    currency: Optional[str] = None
    next_tier_quantity: Optional[int] = None
    next_tier_percentage: Optional[float] = None
    error: Optional[str] = None

# -------- Consultas --------
class CheckRequest(BaseModel):
    email: EmailStr
    raffle_id: Optional[str] = None

# -------- Webhooks --------
class WebhookResponse(BaseModel):
    success: bool
    orderId: str
    status: str
    duplicate: bool

class SimulateRequest(BaseModel):
    provider: str
    order_id: str
    status: Literal["confirmed", "pending", "rejected"] = "confirmed"

class WebhookStatusResponse(BaseModel):
    orderId: str
    status: str
    order: Dict[str, Any]
    events: List[Dict[str, Any]]
