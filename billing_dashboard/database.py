"""
billing_dashboard/database.py - Async PostgreSQL access to the billing store via asyncpg.

Security rules:
  - Read-only PostgreSQL role is expected; this module only issues SELECTs.
  - SQL structure is code-controlled; only scalar values (dates, limits,
    thresholds) reach parameterised placeholders.
  - Statement timeout comes from DB_STATEMENT_TIMEOUT.

Resilience:
  - Pool creation failure is logged but does NOT crash the app.
  - All callers go through get_pool(), which raises DatabaseUnavailableError
    when the pool is missing so the HTTP layer can answer 503.

Schema (all tables in the `billing` schema):
  clients        id, first_name, last_name, phones text[]
  tariffs        id, name, price, billing_type
  devices        id, description, ip_address, status, last_check
  accounts       id, account_number, client_id, tariff_id, device_id,
                 status, balance, created_at
  payments       id, account_id, amount, status, created_at
  requests       id, client_id, first_name, last_name, status,
                 created_at, updated_at
  notifications  id, status, sent_at, created_at

Every fetch_* function returns plain dicts / scalars with numerics already
converted to float; shaping into dashboard models happens in dashboard.py.
"""
import logging
from datetime import datetime

import asyncpg

from billing_dashboard.config import settings
from billing_dashboard.errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------

async def create_pool() -> None:
    """
    Create the asyncpg connection pool.
    On failure the error is logged and _pool stays None - dashboard endpoints
    answer 503 until the service is restarted with a reachable database.
    """
    global _pool
    try:
        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_statement_timeout,
            statement_cache_size=0,
            timeout=settings.db_connection_timeout,
        )
        logger.info("PostgreSQL pool created successfully.")
    except Exception as exc:
        _pool = None
        logger.warning(
            "Could not connect to PostgreSQL - dashboard will be unavailable. "
            "Reason: %s", exc
        )


async def close_pool() -> None:
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("PostgreSQL pool closed.")


def is_db_available() -> bool:
    return _pool is not None


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise DatabaseUnavailableError(
            "Database is not connected. Check DATABASE_URL in .env and ensure "
            "PostgreSQL is reachable."
        )
    return _pool


def _num(value) -> float:
    return float(value) if value is not None else 0.0


# ---------------------------------------------------------------------------
# Headline counters
# ---------------------------------------------------------------------------

_SQL_ACCOUNTS_BY_STATUS = """
SELECT status, COUNT(*) AS count
FROM billing.accounts
GROUP BY status;
"""

_SQL_DEVICES_BY_STATUS = """
SELECT status, COUNT(*) AS count
FROM billing.devices
GROUP BY status;
"""

_SQL_PAYMENTS_SINCE = """
SELECT COUNT(*) AS count, COALESCE(SUM(amount), 0) AS amount
FROM billing.payments
WHERE status = 'COMPLETED'
  AND created_at >= $1;
"""

_SQL_TOTAL_REVENUE = """
SELECT COALESCE(SUM(amount), 0)
FROM billing.payments
WHERE status = 'COMPLETED';
"""

_SQL_AVERAGE_BALANCE = """
SELECT AVG(balance)
FROM billing.accounts;
"""

_SQL_REQUEST_COUNTS = """
SELECT
  COUNT(*) FILTER (WHERE status = 'NEW')                              AS new,
  COUNT(*) FILTER (WHERE status = 'IN_PROGRESS')                      AS in_progress,
  COUNT(*) FILTER (WHERE status = 'COMPLETED' AND updated_at >= $1)   AS completed_today,
  COUNT(*)                                                            AS total
FROM billing.requests;
"""

_SQL_NOTIFICATION_COUNTS = """
SELECT
  COUNT(*) FILTER (WHERE status = 'PENDING')                          AS pending,
  COUNT(*) FILTER (WHERE status = 'SENT'   AND sent_at    >= $1)      AS sent_today,
  COUNT(*) FILTER (WHERE status = 'FAILED' AND created_at >= $1)      AS failed_today
FROM billing.notifications;
"""


async def fetch_dashboard_counters(today_start: datetime, month_start: datetime) -> dict:
    """
    All headline numbers for the dashboard in one connection checkout.

    Returns:
        {
            "accounts_by_status": {status: count},
            "devices_by_status":  {status: count},
            "today_payments":  {"count": int, "amount": float},
            "month_payments":  {"count": int, "amount": float},
            "total_revenue":   float,
            "average_balance": float,
            "requests":      {"new", "in_progress", "completed_today", "total"},
            "notifications": {"pending", "sent_today", "failed_today"},
        }
    """
    async with get_pool().acquire() as conn:
        accounts = await conn.fetch(_SQL_ACCOUNTS_BY_STATUS)
        devices = await conn.fetch(_SQL_DEVICES_BY_STATUS)
        today = await conn.fetchrow(_SQL_PAYMENTS_SINCE, today_start)
        month = await conn.fetchrow(_SQL_PAYMENTS_SINCE, month_start)
        total_revenue = await conn.fetchval(_SQL_TOTAL_REVENUE)
        average_balance = await conn.fetchval(_SQL_AVERAGE_BALANCE)
        requests = await conn.fetchrow(_SQL_REQUEST_COUNTS, today_start)
        notifications = await conn.fetchrow(_SQL_NOTIFICATION_COUNTS, today_start)

    return {
        "accounts_by_status": {r["status"]: int(r["count"]) for r in accounts},
        "devices_by_status": {r["status"]: int(r["count"]) for r in devices},
        "today_payments": {"count": int(today["count"]), "amount": _num(today["amount"])},
        "month_payments": {"count": int(month["count"]), "amount": _num(month["amount"])},
        "total_revenue": _num(total_revenue),
        "average_balance": _num(average_balance),
        "requests": {k: int(requests[k] or 0) for k in ("new", "in_progress", "completed_today", "total")},
        "notifications": {k: int(notifications[k] or 0) for k in ("pending", "sent_today", "failed_today")},
    }


# ---------------------------------------------------------------------------
# Time series inputs (bucketed by day in dashboard.py)
# ---------------------------------------------------------------------------

_SQL_COMPLETED_PAYMENTS = """
SELECT amount, created_at
FROM billing.payments
WHERE status = 'COMPLETED'
  AND created_at >= $1
  AND created_at <= $2;
"""

_SQL_ACCOUNTS_CREATED = """
SELECT status, created_at
FROM billing.accounts
WHERE created_at >= $1
  AND created_at <= $2;
"""

_SQL_REQUESTS_CREATED = """
SELECT status, created_at
FROM billing.requests
WHERE created_at >= $1
  AND created_at <= $2;
"""


async def fetch_completed_payments(date_from: datetime, date_to: datetime) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_COMPLETED_PAYMENTS, date_from, date_to)
    return [{"amount": _num(r["amount"]), "created_at": r["created_at"]} for r in rows]


async def fetch_accounts_created(date_from: datetime, date_to: datetime) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_ACCOUNTS_CREATED, date_from, date_to)
    return [{"status": r["status"], "created_at": r["created_at"]} for r in rows]


async def fetch_requests_created(date_from: datetime, date_to: datetime) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_REQUESTS_CREATED, date_from, date_to)
    return [{"status": r["status"], "created_at": r["created_at"]} for r in rows]


# ---------------------------------------------------------------------------
# Tariffs / devices
# ---------------------------------------------------------------------------

_SQL_TARIFF_STATS = """
SELECT
  t.id::text                          AS tariff_id,
  t.name                              AS tariff_name,
  COUNT(a.id)                         AS clients_count,
  COALESCE(SUM(p.revenue), 0)         AS revenue,
  COALESCE(AVG(a.balance), 0)         AS average_balance
FROM billing.tariffs t
LEFT JOIN billing.accounts a
  ON a.tariff_id = t.id
LEFT JOIN (
  SELECT account_id, SUM(amount) AS revenue
  FROM billing.payments
  WHERE status = 'COMPLETED'
  GROUP BY account_id
) p
  ON p.account_id = a.id
GROUP BY t.id, t.name
ORDER BY t.name;
"""

_SQL_DEVICES = """
SELECT
  d.id::text      AS device_id,
  d.description,
  d.ip_address,
  d.status,
  d.last_check,
  COUNT(a.id)     AS clients_count
FROM billing.devices d
LEFT JOIN billing.accounts a
  ON a.device_id = d.id
GROUP BY d.id, d.description, d.ip_address, d.status, d.last_check
ORDER BY d.ip_address;
"""


async def fetch_tariff_stats() -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_TARIFF_STATS)
    return [
        {
            "tariff_id":       r["tariff_id"],
            "tariff_name":     r["tariff_name"],
            "clients_count":   int(r["clients_count"]),
            "revenue":         _num(r["revenue"]),
            "average_balance": _num(r["average_balance"]),
        }
        for r in rows
    ]


async def fetch_devices() -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_DEVICES)
    return [
        {
            "device_id":     r["device_id"],
            "description":   r["description"],
            "ip_address":    str(r["ip_address"]),
            "status":        r["status"],
            "last_check":    r["last_check"],
            "clients_count": int(r["clients_count"]),
        }
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Activity feed / rankings
# ---------------------------------------------------------------------------

_SQL_RECENT_PAYMENTS = """
SELECT p.id::text AS id, p.amount, p.created_at, c.first_name, c.last_name
FROM billing.payments p
JOIN billing.accounts a ON a.id = p.account_id
JOIN billing.clients  c ON c.id = a.client_id
WHERE p.status = 'COMPLETED'
ORDER BY p.created_at DESC
LIMIT $1;
"""

_SQL_RECENT_REQUESTS = """
SELECT r.id::text AS id, r.first_name, r.last_name, r.created_at
FROM billing.requests r
ORDER BY r.created_at DESC
LIMIT $1;
"""

_SQL_TOP_CLIENTS = """
SELECT
  c.id::text                   AS client_id,
  c.first_name,
  c.last_name,
  a.account_number,
  a.balance,
  COALESCE(SUM(p.amount), 0)   AS total_payments,
  MAX(p.created_at)            AS last_payment
FROM billing.accounts a
JOIN billing.clients c
  ON c.id = a.client_id
LEFT JOIN billing.payments p
  ON p.account_id = a.id
 AND p.status = 'COMPLETED'
GROUP BY c.id, c.first_name, c.last_name, a.id, a.account_number, a.balance
ORDER BY total_payments DESC
LIMIT $1;
"""

_SQL_LOW_BALANCE = """
SELECT
  c.id::text       AS client_id,
  c.first_name,
  c.last_name,
  c.phones,
  a.account_number,
  a.balance,
  t.price          AS tariff_price,
  t.billing_type
FROM billing.accounts a
JOIN billing.clients c ON c.id = a.client_id
JOIN billing.tariffs t ON t.id = a.tariff_id
WHERE a.status = 'ACTIVE'
  AND a.balance < $1
ORDER BY a.balance ASC
LIMIT $2;
"""


async def fetch_recent_payments(limit: int) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_RECENT_PAYMENTS, limit)
    return [
        {
            "id":         r["id"],
            "amount":     _num(r["amount"]),
            "created_at": r["created_at"],
            "first_name": r["first_name"],
            "last_name":  r["last_name"],
        }
        for r in rows
    ]


async def fetch_recent_requests(limit: int) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_RECENT_REQUESTS, limit)
    return [dict(r) for r in rows]


async def fetch_top_clients(limit: int) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_TOP_CLIENTS, limit)
    return [
        {
            "client_id":      r["client_id"],
            "first_name":     r["first_name"],
            "last_name":      r["last_name"],
            "account_number": r["account_number"],
            "balance":        _num(r["balance"]),
            "total_payments": _num(r["total_payments"]),
            "last_payment":   r["last_payment"],
        }
        for r in rows
    ]


async def fetch_low_balance_accounts(threshold: float, limit: int) -> list[dict]:
    async with get_pool().acquire() as conn:
        rows = await conn.fetch(_SQL_LOW_BALANCE, threshold, limit)
    return [
        {
            "client_id":      r["client_id"],
            "first_name":     r["first_name"],
            "last_name":      r["last_name"],
            "phones":         list(r["phones"] or []),
            "account_number": r["account_number"],
            "balance":        _num(r["balance"]),
            "tariff_price":   _num(r["tariff_price"]),
            "billing_type":   r["billing_type"],
        }
        for r in rows
    ]
