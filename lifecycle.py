"""
Order lifecycle

RECEIVED -> CUTTING -> PACKING -> OUT_FOR_DELIVERY -> DELIVERED, plus the
side state CANCELLED that only the customer app sets. Advancing writes the
next status to the order document and nothing else; the new status shows up
when the next orders snapshot arrives.
"""

import logging
from typing import List, Optional

from pymongo.errors import PyMongoError

from database import DocumentStore

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
CUTTING = "CUTTING"
PACKING = "PACKING"
OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"

STATUS_FLOW = [RECEIVED, CUTTING, PACKING, OUT_FOR_DELIVERY, DELIVERED]
TERMINAL_STATUSES = {DELIVERED, CANCELLED}

# Older customer app builds still write "pending" for new orders.
LEGACY_ALIASES = {"pending": RECEIVED}

STATUS_LABELS = {
    RECEIVED: "Received",
    CUTTING: "Cutting",
    PACKING: "Packing",
    OUT_FOR_DELIVERY: "Out for Delivery",
    DELIVERED: "Delivered",
    CANCELLED: "Cancelled",
}


def normalize_status(status: Optional[str]) -> str:
    if not status:
        return RECEIVED
    return LEGACY_ALIASES.get(status, status)


def next_status(status: Optional[str]) -> Optional[str]:
    """Status that follows `status`, or None when the order cannot advance."""
    current = normalize_status(status)
    if current in TERMINAL_STATUSES or current not in STATUS_FLOW:
        return None
    return STATUS_FLOW[STATUS_FLOW.index(current) + 1]


def status_label(status: Optional[str]) -> str:
    current = normalize_status(status)
    return STATUS_LABELS.get(current, current)


async def advance(store: DocumentStore, order: dict) -> Optional[str]:
    """Write the next status for `order` to the store.

    Returns the status written, or None if the order is terminal, has an
    unknown status, or the write failed. Failures are logged and dropped; the
    order keeps its previous status until someone retries.
    """
    target = next_status(order.get("status"))
    if target is None:
        return None
    order_id = order.get("_id")
    try:
        ok = await store.write("orders", order_id, {"status": target})
    except PyMongoError:
        logger.exception("Failed to move order %s to %s", order_id, target)
        return None
    if not ok:
        logger.warning("Order %s not found while moving to %s", order_id, target)
        return None
    logger.info("Order %s moved to %s", order_id, target)
    return target


def timeline(status: Optional[str]) -> dict:
    current = normalize_status(status)
    position = STATUS_FLOW.index(current) if current in STATUS_FLOW else -1
    steps: List[dict] = []
    for index, step in enumerate(STATUS_FLOW):
        steps.append({
            "status": step,
            "label": STATUS_LABELS[step],
            "completed": index <= position,
            "current": step == current,
        })
    return {
        "status": current,
        "cancelled": current == CANCELLED,
        "next_status": next_status(current),
        "steps": steps,
    }
