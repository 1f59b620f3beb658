from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import AutoReconnect

from customers import (
    UNKNOWN_CUSTOMER,
    adjust_wallet,
    apply_wallet_adjustment,
    customer_name,
    order_counts,
    recent_orders,
    with_customer_names,
)


@pytest.mark.parametrize("balance, delta, expected", [
    (10, -50, 0),
    (10, 15, 25),
    (125, -25, 100),
    (0, 0, 0),
    (None, 5, 5),
])
def test_adjust_wallet_clamps_at_zero(balance, delta, expected):
    assert adjust_wallet(balance, delta) == expected


@pytest.mark.asyncio
async def test_wallet_adjustment_overwrites_balance_and_logs(store):
    user_id = await store.create("users", {"name": "Amit", "wallet_points": 10})
    user = await store.get("users", user_id)

    assert await apply_wallet_adjustment(store, user, -50, "admin@example.com", "Points expired") == 0
    assert (await store.get("users", user_id))["wallet_points"] == 0

    logs = await store.get_once("wallet_logs")
    assert len(logs) == 1
    assert logs[0]["action"] == "debit"
    assert logs[0]["points"] == 10
    assert logs[0]["balance"] == 0
    assert logs[0]["reason"] == "Points expired"
    assert logs[0]["admin"] == "admin@example.com"


@pytest.mark.asyncio
async def test_zero_movement_is_not_logged(store):
    user_id = await store.create("users", {"name": "Sneha", "wallet_points": 0})
    user = await store.get("users", user_id)
    assert await apply_wallet_adjustment(store, user, -20, "admin@example.com") == 0
    assert await store.get_once("wallet_logs") == []


class FlakyStore:
    def __init__(self, users, broken=()):
        self.users = users
        self.broken = set(broken)

    async def get(self, collection_name, _id):
        if _id in self.broken:
            raise AutoReconnect("lookup failed")
        return self.users.get(_id)

    async def write(self, collection_name, _id, update_data):
        raise AutoReconnect("write failed")


@pytest.mark.asyncio
async def test_wallet_write_failure_returns_none():
    store = FlakyStore({})
    assert await apply_wallet_adjustment(store, {"_id": "u1", "wallet_points": 5}, 10, "admin") is None


@pytest.mark.asyncio
async def test_customer_name_defaults_to_unknown():
    store = FlakyStore({"u1": {"name": "Rahul Kumar"}, "u2": {}}, broken={"u3"})
    assert await customer_name(store, "u1") == "Rahul Kumar"
    assert await customer_name(store, "u2") == UNKNOWN_CUSTOMER
    assert await customer_name(store, "u3") == UNKNOWN_CUSTOMER
    assert await customer_name(store, "missing") == UNKNOWN_CUSTOMER
    assert await customer_name(store, None) == UNKNOWN_CUSTOMER


@pytest.mark.asyncio
async def test_one_failed_join_does_not_break_the_batch():
    store = FlakyStore({"u1": {"name": "Rahul Kumar"}, "u2": {"name": "Priya Singh"}}, broken={"u2"})
    rows = await with_customer_names(store, [{"user_id": "u1"}, {"user_id": "u2"}, {}])
    assert [r["customer"] for r in rows] == ["Rahul Kumar", UNKNOWN_CUSTOMER, UNKNOWN_CUSTOMER]


@pytest.mark.asyncio
async def test_recent_orders_newest_first(store):
    user_id = await store.create("users", {"name": "Vikram Sharma"})
    start = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)
    for i in range(7):
        await store.create("orders", {"user_id": user_id, "display_id": f"ORD-{i}", "created_at": start + timedelta(minutes=i)})

    rows = await recent_orders(store, limit=5)
    assert [r["display_id"] for r in rows] == ["ORD-6", "ORD-5", "ORD-4", "ORD-3", "ORD-2"]
    assert {r["customer"] for r in rows} == {"Vikram Sharma"}


def test_order_counts():
    counts = order_counts([{"user_id": "a"}, {"user_id": "b"}, {"user_id": "a"}, {}])
    assert counts == {"a": 2, "b": 1}
