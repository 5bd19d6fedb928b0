import datetime as dt
import hashlib
import json
import random
import re
import string
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

_B36 = string.digits + string.ascii_uppercase


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return email
    user, dom = email.split("@", 1)

    def _mask(s: str) -> str:
        if len(s) <= 2:
            return s[:1] + "*"
        return s[:2] + "***"

    dom_parts = dom.split(".")
    dom_parts[0] = _mask(dom_parts[0])
    return f"{_mask(user)}@{'.'.join(dom_parts)}"


def to_decimal(x: float | int | str | Decimal) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def cents_to_amount(cents: int) -> float:
    return round(cents / 100.0, 2)


def round2(x: float | Decimal) -> float:
    return float(to_decimal(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def digits_only(s: Optional[str]) -> str:
    return re.sub(r"\D", "", s or "")


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(d: Optional[dt.datetime]) -> Optional[str]:
    # PostgREST espera ISO 8601 con 'Z'
    if d is None:
        return None
    return d.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(s: Any) -> Optional[dt.datetime]:
    if not s:
        return None
    if isinstance(s, dt.datetime):
        return s
    try:
        d = dt.datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except ValueError:
        return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return d


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _B36[r] + out
    return out or "0"


def generate_order_id(rng: Optional[random.Random] = None) -> str:
    """Id legible de orden: RA-<timestamp base36>-<5 caracteres>."""
    rng = rng or random.SystemRandom()
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(rng.choice(_B36) for _ in range(5))
    return f"RA-{stamp}-{suffix}"


def stable_hash(payload: Any) -> str:
    """sha256 del JSON canónico (claves ordenadas, sin espacios)."""
    if isinstance(payload, (bytes, bytearray)):
        raw = bytes(payload)
    else:
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()
