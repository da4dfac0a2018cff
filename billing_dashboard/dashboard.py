"""
billing_dashboard/dashboard.py - Cached aggregate statistics for the admin dashboard.

Every public method follows the same pattern:
  1. Build a cache key that encodes the full query shape (category + range or
     limit) so distinct requests never share an entry.
  2. Return the cached value when present.
  3. Otherwise run the aggregate queries in database.py, shape the rows into
     models, store the result with a per-query TTL and return it.

A failing query propagates to the caller and leaves no cache entry behind, so
the next request retries.

TTLs (seconds):
  stats 300 | payments/clients/requests 600 | tariffs 900 | devices 300
  activity 120 | top clients 900 | low balance 300
"""
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from billing_dashboard import database as db
from billing_dashboard.cache import CacheService
from billing_dashboard.config import settings
from billing_dashboard.errors import ValidationError
from billing_dashboard.models import (
    CacheStats,
    ChartData,
    ChartDataset,
    ChartType,
    ClientStats,
    DashboardFilters,
    DashboardStats,
    DeviceStats,
    LowBalanceClient,
    PaymentStats,
    Period,
    RecentActivity,
    RequestStats,
    TariffStats,
    TopClient,
)
from billing_dashboard.validation import validate_date_range

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()

TTL_STATS       = 300
TTL_SERIES      = 600
TTL_TARIFFS     = 900
TTL_DEVICES     = 300
TTL_ACTIVITY    = 120
TTL_TOP_CLIENTS = 900
TTL_LOW_BALANCE = 300

_BLUE   = ("rgba(54, 162, 235, 0.2)",  "rgba(54, 162, 235, 1)")
_RED    = ("rgba(255, 99, 132, 0.2)",  "rgba(255, 99, 132, 1)")
_TEAL   = ("rgba(75, 192, 192, 0.2)",  "rgba(75, 192, 192, 1)")
_YELLOW = ("rgba(255, 206, 86, 0.2)",  "rgba(255, 206, 86, 1)")
_PURPLE = ("rgba(153, 102, 255, 0.2)", "rgba(153, 102, 255, 1)")
_ORANGE = ("rgba(255, 159, 64, 0.2)",  "rgba(255, 159, 64, 1)")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _day(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.date().isoformat()


def _full_name(first: Optional[str], last: Optional[str]) -> str:
    return " ".join(p for p in (first, last) if p)


def _dataset(label: str, data: list[float], colors: tuple[str, str]) -> ChartDataset:
    return ChartDataset(
        label=label,
        data=data,
        background_color=colors[0],
        border_color=colors[1],
        border_width=2,
    )


def resolve_date_range(
    filters: DashboardFilters,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    """
    Turn filters into a concrete [date_from, date_to] window.

    An explicit date_from wins; otherwise the period picks the start and the
    fallback is the 30 days before date_to.  Both ends derive from `now`
    truncated to the minute, so repeated default requests within a minute
    land on the same cache key.
    """
    now = (now or _utcnow()).replace(second=0, microsecond=0)

    if filters.date_from is not None or filters.period in (None, Period.CUSTOM):
        return validate_date_range(filters.date_from, filters.date_to, now)

    date_to = filters.date_to or now
    if filters.period == Period.TODAY:
        date_from = now.replace(hour=0, minute=0)
    elif filters.period == Period.WEEK:
        date_from = now - timedelta(days=7)
    elif filters.period == Period.MONTH:
        date_from = now.replace(day=1, hour=0, minute=0)
    else:
        date_from = now.replace(month=1, day=1, hour=0, minute=0)
    return date_from, date_to


def days_of_balance_left(balance: float, tariff_price: float, billing_type: str) -> int:
    """Whole days (or hours, for hourly tariffs) the balance still covers."""
    if tariff_price <= 0:
        return 0
    divisor = 30 if billing_type == "PREPAID_MONTHLY" else 24
    return max(0, math.floor(balance / (tariff_price / divisor)))


class DashboardService:
    """
    Read-side aggregation for the admin dashboard.

    Owns one CacheService; pass one in to share or to control its timing in
    tests.  Call close() on shutdown to stop the cache's sweep thread.
    """

    def __init__(self, cache: Optional[CacheService] = None):
        self.cache = cache if cache is not None else CacheService()

    async def cached_or_compute(
        self,
        key: str,
        ttl_seconds: float,
        compute_fn: Callable[[], Awaitable[T]],
    ) -> T:
        cached = self.cache.get(key, _MISSING)
        if cached is not _MISSING:
            logger.info("Cache hit: %s", key)
            return cached

        logger.debug("Cache miss: %s", key)
        value = await compute_fn()
        self.cache.set(key, value, ttl_seconds)
        return value

    # ------------------------------------------------------------------
    # Headline numbers
    # ------------------------------------------------------------------

    async def get_dashboard_stats(self) -> DashboardStats:
        return await self.cached_or_compute("dashboard:stats", TTL_STATS, self._compute_stats)

    async def _compute_stats(self) -> DashboardStats:
        now = _utcnow()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = today_start.replace(day=1)

        c = await db.fetch_dashboard_counters(today_start, month_start)
        accounts = c["accounts_by_status"]
        devices = c["devices_by_status"]
        requests = c["requests"]
        notifications = c["notifications"]

        return DashboardStats(
            active_clients=accounts.get("ACTIVE", 0),
            blocked_clients=accounts.get("BLOCKED", 0),
            suspended_clients=accounts.get("SUSPENDED", 0),
            total_clients=sum(accounts.values()),

            today_payments=c["today_payments"]["count"],
            today_payments_amount=c["today_payments"]["amount"],
            monthly_payments=c["month_payments"]["count"],
            monthly_payments_amount=c["month_payments"]["amount"],
            total_revenue=c["total_revenue"],
            average_balance=c["average_balance"],

            new_requests=requests["new"],
            in_progress_requests=requests["in_progress"],
            completed_requests_today=requests["completed_today"],
            total_requests=requests["total"],

            online_devices=devices.get("ONLINE", 0),
            offline_devices=devices.get("OFFLINE", 0),
            error_devices=devices.get("ERROR", 0),
            total_devices=sum(devices.values()),

            pending_notifications=notifications["pending"],
            sent_notifications_today=notifications["sent_today"],
            failed_notifications_today=notifications["failed_today"],
        )

    # ------------------------------------------------------------------
    # Daily series
    # ------------------------------------------------------------------

    @staticmethod
    def _series_key(category: str, date_from: datetime, date_to: datetime) -> str:
        return f"dashboard:{category}:{date_from.isoformat()}:{date_to.isoformat()}"

    async def get_payment_stats(self, filters: DashboardFilters) -> list[PaymentStats]:
        date_from, date_to = resolve_date_range(filters)

        async def compute() -> list[PaymentStats]:
            payments = await db.fetch_completed_payments(date_from, date_to)
            buckets: dict[str, list[float]] = defaultdict(lambda: [0.0, 0])
            for p in payments:
                bucket = buckets[_day(p["created_at"])]
                bucket[0] += p["amount"]
                bucket[1] += 1
            return [
                PaymentStats(date=day, amount=amount, count=count)
                for day, (amount, count) in sorted(buckets.items())
            ]

        key = self._series_key("payments", date_from, date_to)
        return await self.cached_or_compute(key, TTL_SERIES, compute)

    async def get_client_stats(self, filters: DashboardFilters) -> list[ClientStats]:
        date_from, date_to = resolve_date_range(filters)

        async def compute() -> list[ClientStats]:
            accounts = await db.fetch_accounts_created(date_from, date_to)
            buckets: dict[str, dict[str, int]] = defaultdict(
                lambda: {"active": 0, "blocked": 0, "new": 0}
            )
            for a in accounts:
                bucket = buckets[_day(a["created_at"])]
                bucket["new"] += 1
                if a["status"] == "ACTIVE":
                    bucket["active"] += 1
                elif a["status"] == "BLOCKED":
                    bucket["blocked"] += 1
            return [ClientStats(date=day, **counts) for day, counts in sorted(buckets.items())]

        key = self._series_key("clients", date_from, date_to)
        return await self.cached_or_compute(key, TTL_SERIES, compute)

    async def get_request_stats(self, filters: DashboardFilters) -> list[RequestStats]:
        date_from, date_to = resolve_date_range(filters)
        status_field = {
            "NEW": "new",
            "IN_PROGRESS": "in_progress",
            "COMPLETED": "completed",
            "CANCELLED": "cancelled",
        }

        async def compute() -> list[RequestStats]:
            requests = await db.fetch_requests_created(date_from, date_to)
            buckets: dict[str, dict[str, int]] = defaultdict(
                lambda: dict.fromkeys(status_field.values(), 0)
            )
            for r in requests:
                bucket = buckets[_day(r["created_at"])]
                field = status_field.get(r["status"])
                if field:
                    bucket[field] += 1
            return [RequestStats(date=day, **counts) for day, counts in sorted(buckets.items())]

        key = self._series_key("requests", date_from, date_to)
        return await self.cached_or_compute(key, TTL_SERIES, compute)

    # ------------------------------------------------------------------
    # Tariffs / devices
    # ------------------------------------------------------------------

    async def get_tariff_stats(self) -> list[TariffStats]:
        async def compute() -> list[TariffStats]:
            rows = await db.fetch_tariff_stats()
            return [
                TariffStats(
                    tariff_id=r["tariff_id"],
                    tariff_name=r["tariff_name"],
                    clients_count=r["clients_count"],
                    revenue=r["revenue"],
                    average_balance=r["average_balance"] if r["clients_count"] else 0,
                )
                for r in rows
            ]

        return await self.cached_or_compute("dashboard:tariffs", TTL_TARIFFS, compute)

    async def get_device_stats(self) -> list[DeviceStats]:
        async def compute() -> list[DeviceStats]:
            rows = await db.fetch_devices()
            return [
                DeviceStats(
                    device_id=r["device_id"],
                    device_description=r["description"] or "No description",
                    ip_address=r["ip_address"],
                    status=r["status"],
                    clients_count=r["clients_count"],
                    last_check=r["last_check"],
                )
                for r in rows
            ]

        return await self.cached_or_compute("dashboard:devices", TTL_DEVICES, compute)

    # ------------------------------------------------------------------
    # Activity / rankings
    # ------------------------------------------------------------------

    async def get_recent_activity(self, limit: int = 10) -> list[RecentActivity]:
        async def compute() -> list[RecentActivity]:
            payments = await db.fetch_recent_payments(limit)
            requests = await db.fetch_recent_requests(limit)

            activities: list[RecentActivity] = []
            for p in payments:
                name = _full_name(p["first_name"], p["last_name"])
                activities.append(RecentActivity(
                    id=p["id"],
                    type="payment",
                    description=f"Payment from {name}",
                    amount=p["amount"],
                    client_name=name,
                    timestamp=p["created_at"],
                ))
            for r in requests:
                name = _full_name(r["first_name"], r["last_name"])
                activities.append(RecentActivity(
                    id=r["id"],
                    type="request",
                    description=f"New request from {name}",
                    client_name=name,
                    timestamp=r["created_at"],
                ))

            activities.sort(key=lambda a: a.timestamp, reverse=True)
            return activities[:limit]

        return await self.cached_or_compute(f"dashboard:activity:{limit}", TTL_ACTIVITY, compute)

    async def get_top_clients(self, limit: int = 10) -> list[TopClient]:
        async def compute() -> list[TopClient]:
            rows = await db.fetch_top_clients(limit)
            clients = [
                TopClient(
                    client_id=r["client_id"],
                    client_name=_full_name(r["first_name"], r["last_name"]),
                    account_number=r["account_number"],
                    balance=r["balance"],
                    total_payments=r["total_payments"],
                    last_payment=r["last_payment"],
                )
                for r in rows
            ]
            clients.sort(key=lambda c: c.total_payments, reverse=True)
            return clients[:limit]

        return await self.cached_or_compute(f"dashboard:top-clients:{limit}", TTL_TOP_CLIENTS, compute)

    async def get_low_balance_clients(self, limit: int = 10) -> list[LowBalanceClient]:
        async def compute() -> list[LowBalanceClient]:
            rows = await db.fetch_low_balance_accounts(
                settings.dashboard_low_balance_threshold, limit
            )
            return [
                LowBalanceClient(
                    client_id=r["client_id"],
                    client_name=_full_name(r["first_name"], r["last_name"]),
                    account_number=r["account_number"],
                    balance=r["balance"],
                    tariff_price=r["tariff_price"],
                    days_left=days_of_balance_left(
                        r["balance"], r["tariff_price"], r["billing_type"]
                    ),
                    phone=r["phones"][0] if r["phones"] else "Not specified",
                )
                for r in rows
            ]

        return await self.cached_or_compute(f"dashboard:low-balance:{limit}", TTL_LOW_BALANCE, compute)

    # ------------------------------------------------------------------
    # Charts
    # ------------------------------------------------------------------

    async def get_chart_data(self, chart_type: ChartType | str, filters: DashboardFilters) -> ChartData:
        """Chart.js-ready datasets built on top of the cached daily series."""
        try:
            chart_type = ChartType(chart_type)
        except ValueError:
            raise ValidationError(f"Unsupported chart type: {chart_type}") from None

        if chart_type == ChartType.PAYMENTS:
            stats = await self.get_payment_stats(filters)
            return ChartData(
                labels=[s.date for s in stats],
                datasets=[
                    _dataset("Payment amount", [s.amount for s in stats], _BLUE),
                    _dataset("Payment count", [s.count for s in stats], _RED),
                ],
            )

        if chart_type == ChartType.CLIENTS:
            stats = await self.get_client_stats(filters)
            return ChartData(
                labels=[s.date for s in stats],
                datasets=[
                    _dataset("Active", [s.active for s in stats], _TEAL),
                    _dataset("Blocked", [s.blocked for s in stats], _YELLOW),
                ],
            )

        stats = await self.get_request_stats(filters)
        return ChartData(
            labels=[s.date for s in stats],
            datasets=[
                _dataset("New", [s.new for s in stats], _PURPLE),
                _dataset("Completed", [s.completed for s in stats], _ORANGE),
            ],
        )

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Dashboard cache cleared.")

    def invalidate(self, category: str) -> int:
        """Drop every cached entry of one category, e.g. "payments"."""
        removed = self.cache.delete_pattern(f"dashboard:{category}*")
        logger.info("Invalidated %d dashboard:%s entries.", removed, category)
        return removed

    def get_cache_stats(self) -> CacheStats:
        return CacheStats.model_validate(self.cache.stats())

    def close(self) -> None:
        self.cache.destroy()
