"""
billing_dashboard/validation.py - Query-parameter checks for dashboard requests.

Every function raises errors.ValidationError with a list of human-readable
messages; nothing is silently coerced.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from billing_dashboard.config import settings
from billing_dashboard.errors import ValidationError
from billing_dashboard.models import ChartType, DashboardFilters, Period

ALLOWED_PARAMS = ("dateFrom", "dateTo", "period", "limit", "type")
DEFAULT_LIMIT = 10
DEFAULT_RANGE = timedelta(days=30)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_date(name: str, value: Any, errors: list[str]) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError:
            errors.append(f"{name} must be a valid date")
            return None
    errors.append(f"{name} must be an ISO date string or datetime")
    return None


def validate_dashboard_filters(raw: dict) -> DashboardFilters:
    errors: list[str] = []
    date_from = date_to = period = None

    if raw.get("dateFrom") is not None:
        date_from = _parse_date("dateFrom", raw["dateFrom"], errors)
    if raw.get("dateTo") is not None:
        date_to = _parse_date("dateTo", raw["dateTo"], errors)

    if raw.get("period") is not None:
        try:
            period = Period(raw["period"])
        except ValueError:
            errors.append(
                "period must be one of: " + ", ".join(p.value for p in Period)
            )

    if date_from and date_to:
        if date_from > date_to:
            errors.append("dateFrom cannot be later than dateTo")
        max_days = settings.dashboard_max_date_range_days
        if date_to - date_from > timedelta(days=max_days):
            errors.append(f"date range cannot exceed {max_days} days")

    if errors:
        raise ValidationError("Invalid dashboard filters", errors)

    return DashboardFilters(date_from=date_from, date_to=date_to, period=period)


def validate_limit(limit: Any, min_value: int = 1, max_value: int = 50) -> int:
    if limit is None:
        return DEFAULT_LIMIT

    if isinstance(limit, bool):
        raise ValidationError("limit must be a number")
    if isinstance(limit, str):
        try:
            limit = int(limit.strip())
        except ValueError:
            raise ValidationError("limit must be a number") from None
    if not isinstance(limit, int):
        raise ValidationError("limit must be a number")

    if limit < min_value or limit > max_value:
        raise ValidationError(f"limit must be between {min_value} and {max_value}")
    return limit


def validate_chart_type(chart_type: Any) -> ChartType:
    if not chart_type or not isinstance(chart_type, str):
        raise ValidationError("type is required and must be a string")
    try:
        return ChartType(chart_type)
    except ValueError:
        raise ValidationError(
            "type must be one of: " + ", ".join(t.value for t in ChartType)
        ) from None


def validate_date_range(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    """Fill in a missing end of the range; default is the last 30 days."""
    now = now or datetime.now(timezone.utc)

    if date_from is None and date_to is None:
        return now - DEFAULT_RANGE, now
    if date_to is None:
        return date_from, now
    if date_from is None:
        return date_to - DEFAULT_RANGE, date_to

    if date_from > date_to:
        raise ValidationError("dateFrom cannot be later than dateTo")
    return date_from, date_to


def sanitize_query_params(query: dict) -> dict:
    return {k: query[k] for k in ALLOWED_PARAMS if query.get(k) is not None}


def validate_stats_request(
    query: dict,
    max_limit: int = 50,
) -> tuple[DashboardFilters, Optional[int]]:
    sanitized = sanitize_query_params(query)
    filters = validate_dashboard_filters(sanitized)

    limit = None
    if "limit" in sanitized:
        limit = validate_limit(sanitized["limit"], max_value=max_limit)
    return filters, limit
