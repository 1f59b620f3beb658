"""
Discount coupons
"""

from datetime import date, datetime
from typing import Optional

ACTIVE = "active"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
INACTIVE = "inactive"


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _expiry(coupon: dict) -> Optional[date]:
    value = coupon.get("expiry_date")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def coupon_status(coupon: dict, today: date) -> str:
    if not coupon.get("is_active", True):
        return INACTIVE
    expiry = _expiry(coupon)
    if expiry is None or expiry < today:
        return EXPIRED
    if coupon.get("used_count", 0) >= coupon.get("usage_limit", 0):
        return EXHAUSTED
    return ACTIVE


def is_redeemable(coupon: dict, today: date) -> bool:
    return coupon_status(coupon, today) == ACTIVE
