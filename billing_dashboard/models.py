"""
billing_dashboard/models.py - Typed shapes for everything the dashboard returns.

Field names are snake_case in Python and camelCase on the wire (the admin
console consumes the camelCase form).  Models are frozen because the cache
hands the same instance to every reader.
"""
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Period(str, Enum):
    TODAY  = "today"
    WEEK   = "week"
    MONTH  = "month"
    YEAR   = "year"
    CUSTOM = "custom"


class ChartType(str, Enum):
    PAYMENTS = "payments"
    CLIENTS  = "clients"
    REQUESTS = "requests"


class DashboardFilters(_CamelModel):
    date_from: Optional[datetime] = None
    date_to:   Optional[datetime] = None
    period:    Optional[Period]   = None


class DashboardStats(_CamelModel):
    # clients
    active_clients:    int = 0
    blocked_clients:   int = 0
    suspended_clients: int = 0
    total_clients:     int = 0

    # money
    today_payments:          int   = 0
    today_payments_amount:   float = 0
    monthly_payments:        int   = 0
    monthly_payments_amount: float = 0
    total_revenue:           float = 0
    average_balance:         float = 0

    # requests
    new_requests:             int = 0
    in_progress_requests:     int = 0
    completed_requests_today: int = 0
    total_requests:           int = 0

    # devices
    online_devices:  int = 0
    offline_devices: int = 0
    error_devices:   int = 0
    total_devices:   int = 0

    # notifications
    pending_notifications:      int = 0
    sent_notifications_today:   int = 0
    failed_notifications_today: int = 0


class PaymentStats(_CamelModel):
    date: str
    amount: float
    count: int


class ClientStats(_CamelModel):
    date: str
    active: int = 0
    blocked: int = 0
    new: int = 0


class RequestStats(_CamelModel):
    date: str
    new: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0


class TariffStats(_CamelModel):
    tariff_id: str
    tariff_name: str
    clients_count: int
    revenue: float
    average_balance: float


class DeviceStats(_CamelModel):
    device_id: str
    device_description: str
    ip_address: str
    status: str
    clients_count: int
    last_check: Optional[datetime] = None


class RecentActivity(_CamelModel):
    id: str
    type: Literal["payment", "request", "client_blocked", "client_unblocked", "new_client"]
    description: str
    amount: Optional[float] = None
    client_name: Optional[str] = None
    timestamp: datetime


class TopClient(_CamelModel):
    client_id: str
    client_name: str
    account_number: str
    balance: float
    total_payments: float
    last_payment: Optional[datetime] = None


class LowBalanceClient(_CamelModel):
    client_id: str
    client_name: str
    account_number: str
    balance: float
    tariff_price: float
    days_left: int
    phone: str


class ChartDataset(_CamelModel):
    label: str
    data: list[float]
    background_color: Optional[str] = None
    border_color: Optional[str] = None
    border_width: Optional[int] = None


class ChartData(_CamelModel):
    labels: list[str]
    datasets: list[ChartDataset] = Field(default_factory=list)


class CacheStats(_CamelModel):
    size: int
    keys: list[str]
    memory_usage: str
