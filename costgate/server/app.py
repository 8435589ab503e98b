"""FastAPI service exposing the enforcement and accounting paths.

Endpoints:
    GET  /health                           -- Health check
    POST /v1/check                         -- Pre-flight check (200 allow, 429 deny)
    POST /v1/requests/dispatched           -- Report a dispatched request
    POST /v1/requests/completed            -- Report real usage (202, processed asynchronously)
    GET  /v1/budgets/{kind}/{identifier}   -- Spend vs. limits for one scope
    GET  /v1/analytics                     -- Rollups by provider, model or scope
    GET  /v1/alerts                        -- Budget alerts that were sent
    GET  /v1/dead-letters                  -- Events no consumer could process
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from costgate import __version__
from costgate.core.gate import Deny
from costgate.core.scopes import BudgetScope, ScopeKind
from costgate.pipeline.runtime import CostPipeline
from costgate.server.schemas import (
    Accepted,
    AlertOut,
    AnalyticsOut,
    BudgetStatusOut,
    CheckRequest,
    CheckResponse,
    CompletedRequestIn,
    DeadLetterOut,
    DispatchedIn,
    RollupRowOut,
    WindowStatusOut,
)

logger = logging.getLogger(__name__)


def create_app(pipeline: CostPipeline) -> FastAPI:
    """Create the FastAPI application.

    Args:
        pipeline: Pipeline to serve; started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        yield
        await pipeline.stop()
        pipeline.close()

    app = FastAPI(
        title="CostGate",
        description="Budget enforcement and cost accounting for AI requests",
        version=__version__,
        lifespan=lifespan,
    )

    # --- Health ---

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "costgate",
            "bus_running": pipeline.bus.running,
        }

    # --- Enforcement ---

    @app.post("/v1/check", response_model=CheckResponse)
    def check(body: CheckRequest):
        decision = pipeline.check(body.scope.to_chain(), body.to_usage())

        if isinstance(decision, Deny):
            content = CheckResponse(
                allowed=False,
                estimated_cost=decision.estimated_cost,
                reason=decision.reason,
                scope=decision.scope.key,
                window=decision.window.value if decision.window else None,
                current_spend=decision.current_spend,
                limit=decision.limit,
                currency=decision.currency,
                message=decision.message,
            )
            return JSONResponse(status_code=429, content=content.model_dump())

        return CheckResponse(
            allowed=True,
            estimated_cost=decision.estimated_cost,
            degraded=decision.degraded,
            reason=decision.reason,
        )

    # --- Accounting ---

    @app.post("/v1/requests/dispatched", status_code=202, response_model=Accepted)
    async def dispatched(body: DispatchedIn):
        event = pipeline.dispatched(
            body.request_id,
            body.scope.to_chain(),
            body.provider,
            body.model,
            estimated_cost=body.estimated_cost,
        )
        return Accepted(request_id=body.request_id, event_id=event.event_id)

    @app.post("/v1/requests/completed", status_code=202, response_model=Accepted)
    async def completed(body: CompletedRequestIn):
        try:
            request = body.to_completed()
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        event = pipeline.completed(request)
        return Accepted(request_id=request.request_id, event_id=event.event_id)

    # --- Reporting ---

    @app.get("/v1/budgets/{kind}/{identifier}", response_model=BudgetStatusOut)
    def budget_status(kind: ScopeKind, identifier: str):
        registered = pipeline.ledger.get_scope(kind, identifier)
        scope = registered or BudgetScope(kind, identifier)
        windows = [
            WindowStatusOut(
                window=status.window.value,
                bucket=status.bucket,
                spend=status.spend,
                limit=status.limit,
                remaining=status.remaining,
                percentage=status.percentage,
                currency=status.currency,
            )
            for status in pipeline.ledger.status(scope)
        ]
        return BudgetStatusOut(scope=scope.key, registered=registered is not None, windows=windows)

    @app.get("/v1/analytics", response_model=AnalyticsOut)
    def analytics(
        granularity: str = Query("day", pattern="^(hour|day)$"),
        dimension: str = Query("provider", pattern="^(provider|model|scope)$"),
        start: Optional[str] = None,
        end: Optional[str] = None,
    ):
        rows = pipeline.analytics.summary(granularity, dimension, start=start, end=end)
        return AnalyticsOut(
            granularity=granularity,
            dimension=dimension,
            rows=[
                RollupRowOut(
                    bucket=row.bucket,
                    value=row.value,
                    request_count=row.request_count,
                    input_units=row.input_units,
                    output_units=row.output_units,
                    cost=row.cost,
                )
                for row in rows
            ],
        )

    @app.get("/v1/alerts", response_model=List[AlertOut])
    def alerts(
        scope: Optional[str] = None,
        window: Optional[str] = Query(None, pattern="^(daily|monthly)$"),
        limit: int = Query(50, ge=1, le=1000),
    ):
        try:
            budget_scope = BudgetScope.parse(scope) if scope else None
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return [
            AlertOut(
                id=item.id,
                scope=item.scope.key,
                window=item.budget_type.value,
                bucket=item.bucket,
                severity=item.severity.label,
                current_spend=item.current_spend,
                limit=item.limit,
                percentage=item.percentage,
                currency=item.currency,
                request_id=item.request_id,
                renotification=item.renotification,
                created_at=item.created_at,
            )
            for item in pipeline.ledger.list_alerts(scope=budget_scope, window=window, limit=limit)
        ]

    @app.get("/v1/dead-letters", response_model=List[DeadLetterOut])
    def dead_letters(limit: int = Query(50, ge=1, le=1000)):
        return [
            DeadLetterOut(
                id=item.id,
                event_id=item.event_id,
                event_type=item.event_type,
                key=item.key,
                consumer=item.consumer,
                error=item.error,
                attempts=item.attempts,
                payload=item.payload,
                created_at=item.created_at,
            )
            for item in pipeline.ledger.list_dead_letters(limit=limit)
        ]

    return app
