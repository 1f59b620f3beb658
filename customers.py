"""
Customer records: wallet point adjustments and customer-name joins for order rows.
"""

import asyncio
import logging
from collections import Counter
from typing import Iterable, List, Optional

from pymongo.errors import PyMongoError

from database import DocumentStore, Query
from schemas import WalletLog

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "Unknown"


def adjust_wallet(balance: int, delta: int) -> int:
    """New wallet balance after a manual adjustment, never below zero."""
    return max(0, (balance or 0) + delta)


async def apply_wallet_adjustment(store: DocumentStore, user: dict, delta: int,
                                  admin: str, reason: str = "") -> Optional[int]:
    """Overwrite the user's wallet_points with the adjusted balance.

    This is a read-modify-write of the snapshot the admin was looking at, not
    an atomic $inc, so a concurrent adjustment can be lost.
    Returns the new balance, or None if the write failed.
    """
    current = int(user.get("wallet_points") or 0)
    balance = adjust_wallet(current, delta)
    user_id = user["_id"]
    try:
        ok = await store.write("users", user_id, {"wallet_points": balance})
    except PyMongoError:
        logger.exception("Wallet adjustment failed for user %s", user_id)
        return None
    if not ok:
        logger.warning("User %s not found for wallet adjustment", user_id)
        return None

    moved = balance - current
    if moved:
        entry = WalletLog(
            user_id=user_id,
            action="credit" if moved > 0 else "debit",
            points=abs(moved),
            balance=balance,
            reason=reason or "Manual adjustment",
            admin=admin,
        )
        try:
            await store.create("wallet_logs", entry)
        except PyMongoError:
            logger.exception("Could not record wallet log for user %s", user_id)
    return balance


async def customer_name(store: DocumentStore, user_id: Optional[str]) -> str:
    if not user_id:
        return UNKNOWN_CUSTOMER
    try:
        user = await store.get("users", user_id)
    except PyMongoError:
        logger.warning("Customer lookup failed for %s", user_id, exc_info=True)
        return UNKNOWN_CUSTOMER
    if not user:
        return UNKNOWN_CUSTOMER
    return user.get("name") or UNKNOWN_CUSTOMER


async def with_customer_names(store: DocumentStore, orders: List[dict]) -> List[dict]:
    """Attach `customer` to each order row; each lookup fails on its own."""
    names = await asyncio.gather(*(customer_name(store, o.get("user_id")) for o in orders))
    return [{**order, "customer": name} for order, name in zip(orders, names)]


async def recent_orders(store: DocumentStore, limit: int = 5) -> List[dict]:
    orders = await store.get_once("orders", Query().order_by("created_at", descending=True).limit(limit))
    return await with_customer_names(store, orders)


def order_counts(orders: Iterable[dict]) -> Counter:
    return Counter(o.get("user_id") for o in orders if o.get("user_id"))
