"""
Dashboard and report aggregation

Every view here is rebuilt from scratch out of the latest full snapshots of
the orders and users collections. Documents come straight from MongoDB and
may be missing fields: missing amounts count as 0 and orders without a usable
created_at are left out of the day buckets.
"""

import asyncio
import inspect
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from database import DocumentStore
from lifecycle import RECEIVED, normalize_status


PERIODS = {"daily": 1, "weekly": 7, "monthly": 30}
TOP_PRODUCTS = 5


class TodayMetrics(BaseModel):
    orders_today: int = 0
    revenue_today: float = 0
    pending_orders: int = 0
    total_users: int = 0
    average_order_value: float = 0


class DailySales(BaseModel):
    date: str
    name: str
    sales: float = 0
    orders: int = 0


class ProductSales(BaseModel):
    name: str
    sales: float


class WalletTotals(BaseModel):
    issued: float = 0
    redeemed: float = 0
    outstanding: float = 0


class DashboardView(BaseModel):
    period: str
    metrics: TodayMetrics
    sales: List[DailySales]
    product_sales: List[ProductSales]
    wallet: WalletTotals
    generated_at: datetime


class ReportRow(BaseModel):
    date: str
    orders: int
    revenue: float
    average_order_value: float
    new_users: int


class Report(BaseModel):
    period: str
    rows: List[ReportRow]
    totals: ReportRow
    sales: List[DailySales]
    product_sales: List[ProductSales]
    wallet: WalletTotals


def period_days(period: str) -> int:
    try:
        return PERIODS[period]
    except KeyError:
        raise ValueError(f"Unknown reporting period: {period}")


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now().astimezone()
    if now.tzinfo is None:
        return now.astimezone()
    return now


def _zone(now: Optional[datetime]) -> Optional[tzinfo]:
    # None keeps the system zone, whose UTC offset depends on the instant (DST)
    return now.tzinfo if now is not None else None


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def to_local(value: Any, tz: Optional[tzinfo]) -> Optional[datetime]:
    """Convert a stored timestamp (datetime or epoch seconds/ms) to `tz`.

    With `tz` None the system local zone is applied at that instant.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)  # pymongo hands back naive UTC
        return value.astimezone(tz)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, timezone.utc).astimezone(tz)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _local_date(doc: dict, tz: Optional[tzinfo]) -> Optional[date]:
    moment = to_local(doc.get("created_at"), tz)
    return moment.date() if moment else None


def average_order_value(revenue: float, count: int) -> float:
    if not count:
        return 0
    return round(revenue / count, 2)


def today_metrics(orders: List[dict], user_count: int, now: Optional[datetime] = None) -> TodayMetrics:
    zone, now = _zone(now), _now(now)
    today = now.date()
    todays = [o for o in orders if _local_date(o, zone) == today]
    revenue = sum(_number(o.get("final_amount")) for o in todays)
    pending = sum(1 for o in orders if normalize_status(o.get("status")) == RECEIVED)
    return TodayMetrics(
        orders_today=len(todays),
        revenue_today=revenue,
        pending_orders=pending,
        total_users=user_count,
        average_order_value=average_order_value(revenue, len(todays)),
    )


def _window(days: int, now: datetime) -> List[date]:
    if days < 1:
        raise ValueError("days must be at least 1")
    start = now.date() - timedelta(days=days - 1)
    return [start + timedelta(days=i) for i in range(days)]


def _label(day: date, days: int) -> str:
    return day.strftime("%a") if days <= 7 else day.strftime("%d %b")


def orders_in_window(orders: Iterable[dict], days: int, now: Optional[datetime] = None) -> List[dict]:
    zone, now = _zone(now), _now(now)
    first = _window(days, now)[0]
    today = now.date()
    selected = []
    for order in orders:
        day = _local_date(order, zone)
        if day is not None and first <= day <= today:
            selected.append(order)
    return selected


def revenue_series(orders: Iterable[dict], days: int, now: Optional[datetime] = None) -> List[DailySales]:
    """Revenue per local calendar day over the trailing window, oldest first.

    Every day of the window gets a bucket, including days without orders.
    """
    zone, now = _zone(now), _now(now)
    buckets: Dict[date, DailySales] = {}
    for day in _window(days, now):
        buckets[day] = DailySales(date=day.isoformat(), name=_label(day, days))
    for order in orders:
        bucket = buckets.get(_local_date(order, zone))
        if bucket is None:
            continue
        bucket.sales += _number(order.get("final_amount"))
        bucket.orders += 1
    return list(buckets.values())


def top_products(orders: Iterable[dict], limit: int = TOP_PRODUCTS) -> List[ProductSales]:
    revenue: Dict[str, float] = defaultdict(float)
    for order in orders:
        for item in order.get("items") or []:
            name = item.get("name") or "Unknown"
            revenue[name] += _number(item.get("price")) * _number(item.get("quantity"))
    ranked = sorted(revenue.items(), key=lambda pair: pair[1], reverse=True)
    return [ProductSales(name=name, sales=sales) for name, sales in ranked[:limit]]


def wallet_totals(users: Iterable[dict], orders: Iterable[dict]) -> WalletTotals:
    issued = sum(_number(u.get("wallet_points")) for u in users)
    redeemed = sum(_number(o.get("wallet_used")) for o in orders)
    return WalletTotals(issued=issued, redeemed=redeemed, outstanding=max(0, issued - redeemed))


def build_dashboard(orders: List[dict], users: List[dict], period: str = "weekly",
                    now: Optional[datetime] = None) -> DashboardView:
    days = period_days(period)
    now = now or datetime.now()
    return DashboardView(
        period=period,
        metrics=today_metrics(orders, len(users), now),
        sales=revenue_series(orders, days, now),
        product_sales=top_products(orders_in_window(orders, days, now)),
        wallet=wallet_totals(users, orders),
        generated_at=_now(now),
    )


def build_report(orders: List[dict], users: List[dict], period: str = "weekly",
                 now: Optional[datetime] = None) -> Report:
    days = period_days(period)
    now = now or datetime.now()
    series = revenue_series(orders, days, now)
    signups: Dict[str, int] = defaultdict(int)
    for user in users:
        day = _local_date(user, _zone(now))
        if day is not None:
            signups[day.isoformat()] += 1

    rows = [
        ReportRow(
            date=bucket.date,
            orders=bucket.orders,
            revenue=bucket.sales,
            average_order_value=round(average_order_value(bucket.sales, bucket.orders)),
            new_users=signups.get(bucket.date, 0),
        )
        for bucket in reversed(series)
    ]
    total_orders = sum(r.orders for r in rows)
    total_revenue = sum(r.revenue for r in rows)
    totals = ReportRow(
        date="total",
        orders=total_orders,
        revenue=total_revenue,
        average_order_value=round(average_order_value(total_revenue, total_orders)),
        new_users=sum(r.new_users for r in rows),
    )
    return Report(
        period=period,
        rows=rows,
        totals=totals,
        sales=series,
        product_sales=top_products(orders_in_window(orders, days, now)),
        wallet=wallet_totals(users, orders),
    )


class DashboardFeed:
    """Live dashboard for one consumer.

    Subscribes to orders and users, rebuilds the view on every snapshot and
    passes it to `on_update` once both collections have reported. Leaving the
    `async with` block cancels both subscriptions.
    """

    def __init__(self, store: DocumentStore, period: str = "weekly",
                 on_update: Optional[Callable[[DashboardView], Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        period_days(period)
        self.store = store
        self.period = period
        self.on_update = on_update
        self.view: Optional[DashboardView] = None
        self._clock = clock or (lambda: None)
        self._orders: Optional[List[dict]] = None
        self._users: Optional[List[dict]] = None
        self._subscriptions = []

    @property
    def active(self) -> bool:
        return any(s.active for s in self._subscriptions)

    async def start(self) -> "DashboardFeed":
        if not self._subscriptions:
            self._subscriptions = [
                self.store.subscribe("orders", None, self._on_orders),
                self.store.subscribe("users", None, self._on_users),
            ]
        return self

    async def close(self):
        subscriptions, self._subscriptions = self._subscriptions, []
        # cancel() always returns, so every subscription is torn down
        await asyncio.gather(*(s.cancel() for s in subscriptions))

    async def __aenter__(self) -> "DashboardFeed":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _on_orders(self, snapshot: List[dict]):
        self._orders = snapshot
        await self._refresh()

    async def _on_users(self, snapshot: List[dict]):
        self._users = snapshot
        await self._refresh()

    async def _refresh(self):
        if self._orders is None or self._users is None:
            return
        self.view = build_dashboard(self._orders, self._users, self.period, self._clock())
        if self.on_update is not None:
            result = self.on_update(self.view)
            if inspect.isawaitable(result):
                await result
