"""FastAPI router exposing :class:`RebalancingService` as JSON endpoints.

Callers identify themselves with the ``X-User-Id`` header. Authentication is
expected to happen in front of this application.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..errors import InvalidTransition, NotFoundError, RebalancingError, UnauthorizedError, ValidationError
from ..models import InitiatedBy
from ..service import RebalancingService

logger = logging.getLogger(__name__)


def status_for_error(exc: RebalancingError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, UnauthorizedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, InvalidTransition):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def get_service(request: Request) -> RebalancingService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not configured")
    return service


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


def build_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.post("/risk/protocols/score")
    async def score_protocol(
        payload: Dict[str, Any] = Body(...),
        service: RebalancingService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        protocol = payload.get("protocol", payload)
        try:
            score = await service.score_protocol(protocol, use_cache=bool(payload.get("use_cache", True)))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"invalid protocol: {exc}") from exc
        return JSONResponse(score.to_payload())

    @router.post("/risk/opportunities/score")
    async def score_opportunity(
        payload: Dict[str, Any] = Body(...),
        service: RebalancingService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        opportunity = payload.get("opportunity", payload)
        try:
            score = await service.score_opportunity(opportunity, use_cache=bool(payload.get("use_cache", True)))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"invalid opportunity: {exc}") from exc
        return JSONResponse(score.to_payload())

    @router.post("/allocations")
    async def generate_allocation(
        payload: Dict[str, Any] = Body(...),
        service: RebalancingService = Depends(get_service),
        _: str = Depends(require_user),
    ) -> JSONResponse:
        try:
            plan = await service.generate_allocation(
                str(payload.get("preference", "medium")),
                payload.get("opportunities") or [],
                float(payload.get("total_amount", 10_000.0)),
            )
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"invalid allocation request: {exc}") from exc
        return JSONResponse(plan.to_payload())

    @router.post("/strategies", status_code=status.HTTP_201_CREATED)
    async def create_strategy(
        payload: Dict[str, Any] = Body(...),
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        strategy = await service.create_strategy(user, payload)
        return JSONResponse(strategy.to_payload(), status_code=status.HTTP_201_CREATED)

    @router.get("/strategies")
    async def list_strategies(
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        strategies = await service.list_strategies(user)
        return JSONResponse({"strategies": [strategy.to_payload() for strategy in strategies]})

    @router.get("/strategies/{strategy_id}")
    async def get_strategy(
        strategy_id: str,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        strategy = await service.get_strategy(strategy_id, user)
        return JSONResponse(strategy.to_payload())

    @router.post("/strategies/{strategy_id}/rebalance", status_code=status.HTTP_201_CREATED)
    async def rebalance(
        strategy_id: str,
        payload: Optional[Dict[str, Any]] = Body(default=None),
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        options = payload or {}
        operation = await service.create_rebalancing_operation(
            strategy_id,
            user,
            InitiatedBy.API,
            auto_advance=bool(options.get("auto_advance", True)),
        )
        return JSONResponse(operation.to_payload(), status_code=status.HTTP_201_CREATED)

    @router.get("/operations")
    async def list_operations(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        strategy_id: Optional[str] = None,
        limit: int = 50,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        try:
            operations = await service.list_operations(user, status=status_filter, strategy_id=strategy_id, limit=limit)
        except ValueError as exc:
            raise ValidationError(f"unknown status {status_filter!r}") from exc
        return JSONResponse({"operations": [operation.to_payload() for operation in operations]})

    @router.get("/operations/{operation_id}")
    async def get_operation(
        operation_id: str,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        operation = await service.get_operation(operation_id, user)
        return JSONResponse(operation.to_payload())

    @router.post("/operations/{operation_id}/simulate")
    async def simulate_operation(
        operation_id: str,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        operation = await service.simulate_operation(operation_id, user)
        return JSONResponse(operation.to_payload())

    @router.post("/operations/{operation_id}/approve")
    async def approve_operation(
        operation_id: str,
        payload: Dict[str, Any] = Body(...),
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        if "approved" not in payload:
            raise ValidationError("'approved' is required")
        operation = await service.approve_operation(
            operation_id, user, bool(payload["approved"]), payload.get("reason")
        )
        return JSONResponse(operation.to_payload())

    @router.post("/operations/{operation_id}/execute")
    async def execute_operation(
        operation_id: str,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        operation = await service.execute_operation(operation_id, user)
        return JSONResponse(operation.to_payload())

    @router.post("/operations/{operation_id}/cancel")
    async def cancel_operation(
        operation_id: str,
        payload: Optional[Dict[str, Any]] = Body(default=None),
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        operation = await service.cancel_operation(operation_id, user, (payload or {}).get("reason"))
        return JSONResponse(operation.to_payload())

    @router.post("/triggers/threshold")
    async def run_threshold_triggers(service: RebalancingService = Depends(get_service)) -> JSONResponse:
        report = await service.evaluate_threshold_triggers()
        return JSONResponse(report.to_payload())

    @router.post("/triggers/periodic")
    async def run_periodic_triggers(service: RebalancingService = Depends(get_service)) -> JSONResponse:
        report = await service.evaluate_periodic_triggers()
        return JSONResponse(report.to_payload())

    @router.get("/performance")
    async def performance(
        days: int = 30,
        service: RebalancingService = Depends(get_service),
        user: str = Depends(require_user),
    ) -> JSONResponse:
        return JSONResponse(await service.performance_stats(user, days))

    @router.get("/metrics")
    async def metrics(service: RebalancingService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(service.metrics.snapshot())

    return router


async def run_trigger_loop(service: RebalancingService, interval: float) -> None:
    """Evaluate threshold and periodic triggers every ``interval`` seconds until cancelled."""

    while True:
        for evaluate in (service.evaluate_threshold_triggers, service.evaluate_periodic_triggers):
            try:
                await evaluate()
            except Exception:
                logger.error("Trigger sweep failed", exc_info=True)
        await asyncio.sleep(interval)


def create_app(service: RebalancingService, *, trigger_interval: Optional[float] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if trigger_interval:
            task = asyncio.create_task(run_trigger_loop(service, trigger_interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="Yield Rebalancer", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(RebalancingError)
    async def handle_rebalancing_error(request: Request, exc: RebalancingError) -> JSONResponse:
        code = status_for_error(exc)
        if code >= 500:
            logger.error("Unhandled rebalancing error on %s: %s", request.url.path, exc.message)
        return JSONResponse({"error": exc.to_payload()}, status_code=code)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(build_router())
    return app
