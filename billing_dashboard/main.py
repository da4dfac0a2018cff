"""
billing_dashboard/main.py - FastAPI app exposing the cached dashboard statistics.

Endpoints (all under /api/dashboard unless noted):
  GET    /health              - Liveness check (root path)
  GET    /stats               - Headline counters
  GET    /payments            - Daily completed payments   (?dateFrom&dateTo&period)
  GET    /clients             - Daily new accounts          (same filters)
  GET    /requests            - Daily service requests      (same filters)
  GET    /tariffs             - Per-tariff clients / revenue
  GET    /devices             - Network devices and load
  GET    /activity            - Latest payments and requests (?limit)
  GET    /top-clients         - Accounts ranked by payments  (?limit)
  GET    /low-balance         - Active accounts running out  (?limit)
  GET    /charts/{type}       - Chart.js datasets (payments | clients | requests)
  GET    /cache/stats         - Cache size, keys, memory estimate
  DELETE /cache               - Flush the dashboard cache (?category=payments etc.)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_dashboard.config import settings
from billing_dashboard.dashboard import DashboardService
from billing_dashboard.database import close_pool, create_pool, is_db_available
from billing_dashboard.errors import DashboardError, DatabaseUnavailableError
from billing_dashboard.models import DashboardFilters
from billing_dashboard.validation import (
    DEFAULT_LIMIT,
    sanitize_query_params,
    validate_chart_type,
    validate_dashboard_filters,
    validate_stats_request,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup / shutdown) ───────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up…")
    await create_pool()
    app.state.dashboard = DashboardService()
    yield
    logger.info("Shutting down…")
    app.state.dashboard.close()
    await close_pool()


# ── Dependencies ────────────────────────────────────────────────────────────

def get_dashboard(request: Request) -> DashboardService:
    if not is_db_available():
        raise DatabaseUnavailableError()
    return request.app.state.dashboard


def get_filters(request: Request) -> DashboardFilters:
    return validate_dashboard_filters(sanitize_query_params(dict(request.query_params)))


def _limit(request: Request, max_limit: int) -> int:
    _, limit = validate_stats_request(dict(request.query_params), max_limit=max_limit)
    return DEFAULT_LIMIT if limit is None else limit


def _ok(data) -> dict:
    return {"success": True, "data": jsonable_encoder(data, by_alias=True)}


# ── Routes ───────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
async def dashboard_stats(service: DashboardService = Depends(get_dashboard)):
    return _ok(await service.get_dashboard_stats())


@router.get("/payments")
async def payment_stats(
    filters: DashboardFilters = Depends(get_filters),
    service: DashboardService = Depends(get_dashboard),
):
    return _ok(await service.get_payment_stats(filters))


@router.get("/clients")
async def client_stats(
    filters: DashboardFilters = Depends(get_filters),
    service: DashboardService = Depends(get_dashboard),
):
    return _ok(await service.get_client_stats(filters))


@router.get("/requests")
async def request_stats(
    filters: DashboardFilters = Depends(get_filters),
    service: DashboardService = Depends(get_dashboard),
):
    return _ok(await service.get_request_stats(filters))


@router.get("/tariffs")
async def tariff_stats(service: DashboardService = Depends(get_dashboard)):
    return _ok(await service.get_tariff_stats())


@router.get("/devices")
async def device_stats(service: DashboardService = Depends(get_dashboard)):
    return _ok(await service.get_device_stats())


@router.get("/activity")
async def recent_activity(
    request: Request,
    service: DashboardService = Depends(get_dashboard),
):
    limit_value = _limit(request, settings.dashboard_max_activity_items)
    return _ok(await service.get_recent_activity(limit_value))


@router.get("/top-clients")
async def top_clients(
    request: Request,
    service: DashboardService = Depends(get_dashboard),
):
    limit_value = _limit(request, settings.dashboard_max_top_clients)
    return _ok(await service.get_top_clients(limit_value))


@router.get("/low-balance")
async def low_balance_clients(
    request: Request,
    service: DashboardService = Depends(get_dashboard),
):
    limit_value = _limit(request, settings.dashboard_max_low_balance)
    return _ok(await service.get_low_balance_clients(limit_value))


@router.get("/charts/{chart_type}")
async def chart_data(
    chart_type: str,
    filters: DashboardFilters = Depends(get_filters),
    service: DashboardService = Depends(get_dashboard),
):
    return _ok(await service.get_chart_data(validate_chart_type(chart_type), filters))


@router.get("/cache/stats")
async def cache_stats(request: Request):
    return _ok(request.app.state.dashboard.get_cache_stats())


@router.delete("/cache", summary="Flush the dashboard cache")
async def clear_cache(request: Request, category: Optional[str] = Query(None)):
    service = request.app.state.dashboard
    if category:
        removed = service.invalidate(category)
        return {"success": True, "message": f"Removed {removed} {category} entries."}
    await service.clear_cache()
    return {"success": True, "message": "Cache cleared."}


# ── App instance ─────────────────────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title="Billing Dashboard API",
        description="Cached statistics for the ISP billing admin console",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],      # tighten for production
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DashboardError)
    async def dashboard_error_handler(request: Request, exc: DashboardError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = {"success": False, "error": exc.message}
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/health")
    async def health():
        return {"status": "ok", "database": is_db_available()}

    app.include_router(router)
    return app


app = create_app()


def run():
    """Run the server."""
    uvicorn.run("billing_dashboard.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
