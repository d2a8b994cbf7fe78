import time
import re
import hmac
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def major_to_minor(amount: Any) -> int:
    """12.345 -> 1235 (half-up, like the checkout pages round it)."""
    d = Decimal(str(amount)) * 100
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_limit(limit: Optional[int], default: int = 10,
                maximum: int = 100) -> int:
    if not limit:
        return default
    return max(1, min(int(limit), maximum))


def safe_filename_part(s: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", s)[:120] or "receipt"
