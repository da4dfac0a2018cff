"""
billing_dashboard/errors.py - Exception types surfaced to the HTTP layer.
"""


class DashboardError(Exception):
    """Base class for errors the dashboard reports to its callers."""

    status_code = 500

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(DashboardError, ValueError):
    """Bad query parameters (dates, period, limit, chart type)."""

    status_code = 400


class DatabaseUnavailableError(DashboardError):
    status_code = 503

    def __init__(self, message: str = "Billing database is not connected."):
        super().__init__(message)
