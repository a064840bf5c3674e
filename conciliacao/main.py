"""
FastAPI application for card-terminal reconciliation.

A thin HTTP adapter over the reconciliation core: records are pushed already
parsed, runs execute synchronously in a worker thread, and core errors are
mapped to 404/409/422 responses.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import get_settings
from .exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ReconciliationError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    DivergenceStatus,
    MatchConfig,
    Resolution,
    ResolutionKind,
    SaleRecord,
    SettlementRecord,
    StatsScope,
    Terminal,
)
from .reconciliation import (
    DivergenceResolver,
    ReconciliationCoordinator,
    StatisticsAggregator,
    ToleranceAdvisor,
)
from .store import InMemoryRecordStore
from .utils.audit_logger import AuditLogger
from .utils.money import to_cents

logger = structlog.get_logger()


# Request models
class TerminalRequest(BaseModel):
    id: str
    name: str = ""
    processor: str = ""


class SaleRequest(BaseModel):
    id: Optional[str] = None
    period: str
    sale_date: date
    gross_amount: Decimal
    net_amount: Decimal
    payment_method: str = ""
    external_reference: Optional[str] = None


class SettlementRequest(BaseModel):
    id: Optional[str] = None
    period: str
    settlement_date: date
    amount: Decimal
    external_reference: Optional[str] = None
    description: str = ""


class RunConfigRequest(BaseModel):
    value_tolerance: Optional[Decimal] = None
    day_tolerance: Optional[int] = None
    grouping_enabled: Optional[bool] = None
    description_matching_enabled: Optional[bool] = None
    learning_enabled: Optional[bool] = None
    max_group_size: Optional[int] = None


class ResolveRequest(BaseModel):
    kind: ResolutionKind
    motive: str = ""
    adjustment_value: Optional[Decimal] = None
    resolved_by: str = "system"


class ReopenRequest(BaseModel):
    motive: str = ""
    reopened_by: str = "system"


# Response models
class RecordsAddedResponse(BaseModel):
    terminal_id: str
    added: int


class ToleranceResponse(BaseModel):
    terminal_id: str
    processor: str
    value_tolerance: Decimal
    day_tolerance: int
    source: str
    based_on_runs: int = Field(default=0)


ERROR_STATUS = {
    NotFoundError: 404,
    ConflictError: 409,
    ValidationError: 422,
    PersistenceError: 500,
}


def error_status(error: ReconciliationError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 422


def build_match_config(request: Optional[RunConfigRequest]) -> MatchConfig:
    """Merge a request's overrides onto the configured defaults."""
    settings = get_settings()
    overrides = request.model_dump(exclude_none=True) if request else {}
    return MatchConfig.from_units(
        overrides.pop("value_tolerance", settings.default_value_tolerance),
        overrides.pop("day_tolerance", settings.default_day_tolerance),
        grouping_enabled=overrides.pop("grouping_enabled", settings.default_grouping_enabled),
        description_matching_enabled=overrides.pop(
            "description_matching_enabled", settings.default_description_matching_enabled
        ),
        max_group_size=overrides.pop("max_group_size", settings.default_max_group_size),
        **overrides,
    )


def create_app(store: Optional[InMemoryRecordStore] = None) -> FastAPI:
    """Build the API around a store (a fresh in-memory one by default)."""
    settings = get_settings()
    store = store or InMemoryRecordStore()
    audit = AuditLogger()
    coordinator = ReconciliationCoordinator(store, audit_logger=audit)
    resolver = DivergenceResolver(store, audit_logger=audit)
    statistics = StatisticsAggregator(store)
    advisor = ToleranceAdvisor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging()
        settings.reports_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Starting reconciliation API", env=settings.app_env)
        yield
        logger.info("Shutting down reconciliation API", **audit.summary())
        if settings.export_audit_on_shutdown and audit.entries:
            audit.export_to_file()

    app = FastAPI(
        title="Conciliacao",
        description="Card-terminal sales vs settlements reconciliation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.audit = audit
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        status = error_status(exc)
        if status >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=status,
            content={
                "detail": {
                    "message": exc.message,
                    "field": getattr(exc, "field", None),
                    "details": exc.details,
                }
            },
        )

    # API Endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}

    @app.post("/api/terminals", status_code=201)
    async def register_terminal(request: TerminalRequest):
        terminal = Terminal(id=request.id, name=request.name, processor=request.processor)
        store.register_terminal(terminal)
        logger.info("Terminal registered", terminal_id=terminal.id, processor=terminal.processor)
        return {"id": terminal.id, "name": terminal.name, "processor": terminal.processor}

    @app.post(
        "/api/terminals/{terminal_id}/sales",
        response_model=RecordsAddedResponse,
        status_code=201,
    )
    async def add_sales(terminal_id: str, records: List[SaleRequest]):
        try:
            sales = [
                SaleRecord(
                    terminal_id=terminal_id,
                    period=s.period,
                    sale_date=s.sale_date,
                    gross_amount_cents=to_cents(s.gross_amount),
                    net_amount_cents=to_cents(s.net_amount),
                    payment_method=s.payment_method,
                    external_reference=s.external_reference,
                    **({"id": s.id} if s.id else {}),
                )
                for s in records
            ]
        except ValueError as e:
            raise ValidationError(str(e), field="records") from e

        added = store.add_sales(sales)
        return RecordsAddedResponse(terminal_id=terminal_id, added=added)

    @app.post(
        "/api/terminals/{terminal_id}/settlements",
        response_model=RecordsAddedResponse,
        status_code=201,
    )
    async def add_settlements(terminal_id: str, records: List[SettlementRequest]):
        try:
            settlements = [
                SettlementRecord(
                    terminal_id=terminal_id,
                    period=s.period,
                    settlement_date=s.settlement_date,
                    amount_cents=to_cents(s.amount),
                    external_reference=s.external_reference,
                    description=s.description,
                    **({"id": s.id} if s.id else {}),
                )
                for s in records
            ]
        except ValueError as e:
            raise ValidationError(str(e), field="records") from e

        added = store.add_settlements(settlements)
        return RecordsAddedResponse(terminal_id=terminal_id, added=added)

    @app.post("/api/terminals/{terminal_id}/periods/{period}/runs")
    async def start_run(
        terminal_id: str,
        period: str,
        request: Optional[RunConfigRequest] = None,
    ):
        """Run reconciliation for one terminal and period."""
        config = build_match_config(request)
        run = await asyncio.to_thread(coordinator.run, terminal_id, period, config)
        return run.to_dict()

    @app.get("/api/runs/{run_id}")
    async def get_run(run_id: str):
        return coordinator.get_run(run_id).to_dict()

    @app.get("/api/divergences")
    async def list_divergences(
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
        status: Optional[DivergenceStatus] = None,
        search: Optional[str] = None,
    ):
        divergences = resolver.list_divergences(
            terminal_id=terminal_id,
            period=period,
            status=status,
            search=search,
        )
        return [d.to_dict() for d in divergences]

    @app.post("/api/divergences/{divergence_id}/resolve")
    async def resolve_divergence(divergence_id: str, request: ResolveRequest):
        adjustment = (
            to_cents(request.adjustment_value)
            if request.adjustment_value is not None
            else None
        )
        resolution = Resolution(
            kind=request.kind,
            motive=request.motive,
            adjustment_value_cents=adjustment,
            resolved_by=request.resolved_by,
        )
        divergence = await asyncio.to_thread(resolver.resolve, divergence_id, resolution)
        return divergence.to_dict()

    @app.post("/api/divergences/{divergence_id}/reopen", status_code=201)
    async def reopen_divergence(divergence_id: str, request: ReopenRequest):
        divergence = await asyncio.to_thread(
            resolver.reopen, divergence_id, request.motive, request.reopened_by
        )
        return divergence.to_dict()

    @app.get("/api/performance")
    async def get_performance(
        terminal_id: Optional[List[str]] = Query(default=None),
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ):
        scope = StatsScope(
            terminal_ids=frozenset(terminal_id) if terminal_id else None,
            start_date=start_date,
            end_date=end_date,
        )
        stats = await asyncio.to_thread(statistics.compute_performance, scope)
        return stats.to_dict()

    @app.get(
        "/api/terminals/{terminal_id}/suggested-tolerance",
        response_model=ToleranceResponse,
    )
    async def suggested_tolerance(terminal_id: str):
        processor = store.processor_of(terminal_id)
        suggestion = advisor.suggest_tolerance(store.list_runs(terminal_id=terminal_id), processor)
        return ToleranceResponse(
            terminal_id=terminal_id,
            processor=processor,
            **suggestion.to_dict(),
        )

    @app.get("/api/audit/summary")
    async def audit_summary():
        return audit.summary()

    return app


app = create_app()
