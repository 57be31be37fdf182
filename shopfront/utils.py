import math
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

from .errors import ValidationError

ALLOWED_USER_ROLES = {"admin", "vendor", "customer", "manager", "support"}
STAFF_ROLES = {"admin", "manager", "support"}
CENTS = Decimal("0.01")
CART_NAME_SUFFIX = "_cart"

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else "customer"


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def to_money(value) -> Decimal:
    """Convert a stored price to a cent-quantized Decimal.

    Going through ``str`` keeps 19.99 as 19.99 instead of the binary
    float expansion.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def money_to_float(amount: Decimal) -> float:
    return float(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def parse_object_id(value, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}.")


def normalize_object_id_value(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def cart_name_for(username: Optional[str]) -> str:
    return f"{str(username or '').strip()}{CART_NAME_SUFFIX}"


def serialize_user(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    return {
        "id": str(user_document.get("_id")),
        "username": user_document.get("username", "") or "",
        "email": user_document.get("email", "") or "",
        "role": normalize_role(user_document.get("role")),
        "profileImageUrl": user_document.get("profile_image_url", "") or "",
        "createdAt": isoformat(user_document.get("created_at")),
    }
