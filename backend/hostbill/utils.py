# 📂 backend/hostbill/utils.py — shared helpers (Decimal, rounding, ids, time, pagination, logging)
# -----------------------------------------------------------------------------
# Here:
# - safe Decimal handling for money (2 dp) and energy (3 dp),
# - UUID / invoice suffix / temporary password generation,
# - naive-UTC "now" used for every timestamp column,
# - pagination maths shared by list endpoints,
# - project loggers with a single stream handler.

from __future__ import annotations

import logging
import math
import secrets
import string
import sys
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, getcontext
from typing import Any, Dict, Optional

getcontext().prec = 28  # high precision for intermediate maths

# =========================
# 🔢 Decimal
# =========================
MONEY_Q = Decimal("0.01")
ENERGY_Q = Decimal("0.001")


def dec(x: Any) -> Decimal:
    """Safe Decimal conversion (None -> 0)."""
    if x is None:
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def d2(x: Any) -> Decimal:
    """Money rounding: 2 dp, HALF_UP."""
    return dec(x).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def d3(x: Any) -> Decimal:
    """Energy rounding (kW / kWh): 3 dp, HALF_UP."""
    return dec(x).quantize(ENERGY_Q, rounding=ROUND_HALF_UP)


def money(x: Any) -> float:
    """JSON-friendly money value."""
    return float(d2(x))


# =========================
# 🆔 Ids / secrets
# =========================
_ALNUM_UPPER = string.ascii_uppercase + string.digits


def gen_uuid() -> str:
    return str(uuid.uuid4())


def random_code(length: int = 5, alphabet: str = _ALNUM_UPPER) -> str:
    """Random upper-case alphanumeric code (invoice number suffixes, backup codes)."""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def temporary_password(length: int = 12) -> str:
    """Temporary password for welcome / forgot-password mails."""
    alphabet = string.ascii_letters + string.digits
    while True:
        pwd = "".join(secrets.choice(alphabet) for _ in range(length))
        if any(c.isdigit() for c in pwd) and any(c.isupper() for c in pwd):
            return pwd


# =========================
# 🕒 Time
# =========================
def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all DateTime columns store UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes from requests are converted to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =========================
# 📄 Pagination
# =========================
def page_window(page: int, limit: int) -> tuple[int, int]:
    """(offset, limit) for 1-based pages; non-positive inputs fall back to 1/10."""
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else 10
    return (page - 1) * limit, limit


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else 10
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


# =========================
# 📝 Logging
# =========================
def get_logger(name: str) -> logging.Logger:
    """
    Project logger under the "hostbill" namespace. The stream handler is
    attached once to the root "hostbill" logger.
    """
    root = logging.getLogger("hostbill")
    if not root.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(h)
        root.setLevel(logging.INFO)
    if name == "hostbill" or name.startswith("hostbill."):
        return logging.getLogger(name)
    return logging.getLogger(f"hostbill.{name}")
