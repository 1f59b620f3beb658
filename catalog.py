"""
Product catalog rules: price history, ordering and day availability.
"""

from datetime import date
from typing import Iterable, List, Tuple

from schemas import Product, ProductInput

UP = "up"
DOWN = "down"
SAME = "same"


def price_change(previous: float, current: float) -> Tuple[str, float]:
    """Direction and percentage of a price move, always computed together."""
    delta = current - previous
    if delta > 0:
        direction = UP
    elif delta < 0:
        direction = DOWN
    else:
        direction = SAME
    if previous <= 0:
        return direction, 0
    return direction, round(abs(delta) / previous * 100, 2)


def _catalog_fields(payload: ProductInput, **pricing) -> dict:
    data = payload.model_dump(exclude={"price"})
    data["available_days"] = sorted(set(data["available_days"]))
    data["cutting_types"] = list(dict.fromkeys(data["cutting_types"]))
    return Product(**data, **pricing).model_dump(exclude={"id"})


def new_product_fields(payload: ProductInput) -> dict:
    return _catalog_fields(
        payload,
        current_price=payload.price,
        previous_price=payload.price,
        price_direction=SAME,
        price_change_percentage=0,
    )


def edit_product_fields(existing: dict, payload: ProductInput) -> dict:
    # Only one step of history: the price being replaced becomes previous_price.
    previous = existing.get("current_price") or 0
    direction, percentage = price_change(previous, payload.price)
    return _catalog_fields(
        payload,
        current_price=payload.price,
        previous_price=previous,
        price_direction=direction,
        price_change_percentage=percentage,
    )


def weekday_of(day: date) -> int:
    """0=Sunday .. 6=Saturday, the numbering stored in available_days."""
    return (day.weekday() + 1) % 7


def is_available_on(product: dict, weekday: int) -> bool:
    if not product.get("availability", True):
        return False
    days = product.get("available_days") or []
    return not days or weekday in days


def sort_catalog(products: Iterable[dict]) -> List[dict]:
    # sorted() is stable, so equal display_order keeps insertion order
    return sorted(products, key=lambda p: p.get("display_order") or 0)


def categories(products: Iterable[dict]) -> List[str]:
    return list(dict.fromkeys(p.get("category") or "Uncategorized" for p in products))
