import re
from typing import Any, Dict

from rifas.core.errors import ValidationError
from rifas.core.settings import PROVIDERS
from rifas.services.models import BuyerInfo
from rifas.services.utils import digits_only

_NAME_RE = re.compile(r"^[a-zA-ZáéíóúÁÉÍÓÚüÜñÑ\s]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[2-9]\d{9}$")


def validate_buyer(data: Dict[str, Any]) -> BuyerInfo:
    """Valida nombre, email y teléfono del comprador (reglas iguales para todo proveedor)."""
    errors = []

    name = (data.get("name") or "").strip()
    if len(name) < 3:
        errors.append("El nombre debe tener al menos 3 caracteres")
    elif len(name) > 100:
        errors.append("El nombre es muy largo")
    elif not _NAME_RE.match(name):
        errors.append("El nombre solo puede contener letras")

    email = (data.get("email") or "").strip().lower()
    if not email:
        errors.append("El email es requerido")
    elif len(email) > 100:
        errors.append("El email es muy largo")
    elif not _EMAIL_RE.match(email):
        errors.append("Email inválido")

    phone = digits_only(data.get("phone"))
    if not phone:
        errors.append("El teléfono es requerido")
    elif len(phone) != 10:
        errors.append("El teléfono debe tener 10 dígitos")
    elif not _PHONE_RE.match(phone):
        errors.append("Teléfono inválido")

    whatsapp = digits_only(data.get("whatsapp")) or None
    if whatsapp and len(whatsapp) not in (10, 12):
        errors.append("WhatsApp debe tener 10 o 12 dígitos")

    if errors:
        raise ValidationError("Datos del comprador inválidos", violations=errors)
    return BuyerInfo(name=name, email=email, phone=phone, whatsapp=whatsapp)


def validate_provider(provider: str) -> str:
    p = (provider or "").strip().lower()
    if p not in PROVIDERS:
        raise ValidationError(f"Método de pago inválido: '{provider}'")
    return p
