"""
Order aggregates for the owner dashboard and the analytics endpoint.

Orders are plain dicts as stored or as returned by the API. Line item
revenue is ``price * quantity``; line items without a quantity count once.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from schemas import OrderState


def line_total(item: dict) -> float:
    return float(item.get("price", 0)) * int(item.get("quantity") or 1)


def order_total(order: dict) -> float:
    return sum(line_total(item) for item in order.get("products", []))


def total_revenue(orders: Iterable[dict], state: Optional[OrderState] = None) -> float:
    return sum(
        order_total(o) for o in orders if state is None or o.get("state") == state.value
    )


def created_at(order: dict) -> Optional[datetime]:
    value: Union[str, datetime, None] = order.get("createdAt")
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def status_breakdown(orders: Iterable[dict]) -> dict[str, int]:
    """Order count per state; every known state is present, unknown ones are kept."""
    counts = Counter(o.get("state", OrderState.PENDING.value) for o in orders)
    breakdown = {s.value: counts.pop(s.value, 0) for s in OrderState}
    breakdown.update(counts)
    return breakdown


def daily_sales(orders: Iterable[dict], today: date, days: int = 7) -> list[tuple[str, float]]:
    """Revenue per day for the ``days`` days ending ``today``, oldest first."""
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    totals = {day: 0.0 for day in window}
    for order in orders:
        when = created_at(order)
        if when is not None and when.date() in totals:
            totals[when.date()] += order_total(order)
    return [(day.isoformat(), totals[day]) for day in window]


def monthly_revenue(orders: Iterable[dict], months: int = 12) -> list[dict]:
    """Delivered revenue per calendar month, newest month first."""
    totals: dict[tuple[int, int], float] = {}
    for order in orders:
        if order.get("state") != OrderState.DELIVERED.value:
            continue
        when = created_at(order)
        if when is None:
            continue
        key = (when.year, when.month)
        totals[key] = totals.get(key, 0.0) + order_total(order)
    return [
        {"year": year, "month": month, "total": totals[(year, month)]}
        for year, month in sorted(totals, reverse=True)[:months]
    ]


@dataclass
class DashboardStats:
    total_revenue: float
    total_orders: int
    pending_orders: int
    total_products: int
    daily_sales: list[tuple[str, float]] = field(default_factory=list)
    status_breakdown: dict[str, int] = field(default_factory=dict)


def dashboard_stats(orders: list[dict], products: list[dict], today: date) -> DashboardStats:
    return DashboardStats(
        total_revenue=total_revenue(orders),
        total_orders=len(orders),
        pending_orders=sum(1 for o in orders if o.get("state") == OrderState.PENDING.value),
        total_products=len(products),
        daily_sales=daily_sales(orders, today),
        status_breakdown=status_breakdown(orders),
    )
