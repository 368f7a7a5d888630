"""Rebalancing service: strategies, operations, triggers and risk scoring."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from risk_engine import (
    AllocationPlan,
    MLEnhancer,
    Opportunity,
    ProtocolProfile,
    RiskChange,
    RiskChangeMonitor,
    RiskScore,
    RiskScoringEngine,
    TTLCache,
    generate_allocation,
)
from risk_engine.sources import MetadataSource
from services.notifications import Notification
from services.pricing import PriceSource
from services.protocols import AdapterRegistry

from .audit import AuditLedger, build_ledger
from .config import EngineConfig
from .errors import (
    InvalidTransition,
    OperationAlreadyExecuting,
    OperationConflict,
    RebalancingError,
    UnauthorizedError,
    ValidationError,
)
from .executor import ExecutionOrchestrator, failure_summary
from .metrics import MetricRegistry
from .models import (
    Approval,
    Dimension,
    InitiatedBy,
    OperationError,
    OperationStatus,
    RebalancingOperation,
    RebalancingStrategy,
    SimulationResult,
    StrategyStatus,
    TriggerType,
    utcnow,
)
from .notifications import (
    EVENT_FAILED,
    EVENT_REJECTED,
    EVENT_SIMULATED,
    EVENT_STARTED,
    EVENT_WAITING_APPROVAL,
    NotificationDispatcher,
    OperationEvent,
    build_sink,
)
from .planner import diff
from .repository import Repository
from .simulation import Simulator
from .state_machine import CANCELLABLE_STATUSES, transition
from .triggers import TriggerRunReport, evaluate_periodic, evaluate_threshold

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = frozenset(
    {
        OperationStatus.PENDING,
        OperationStatus.SIMULATING,
        OperationStatus.SIMULATED,
        OperationStatus.WAITING_APPROVAL,
        OperationStatus.APPROVED,
        OperationStatus.EXECUTING,
    }
)
STATS_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.PARTIAL})


class RebalancingService:
    """Entry point used by the HTTP layer, schedulers and embedding code.

    Status changes are checked and persisted under a per-operation lock; the
    lock is released before any adapter call.
    """

    def __init__(
        self,
        repository: Repository,
        *,
        config: Optional[EngineConfig] = None,
        engine: Optional[RiskScoringEngine] = None,
        metadata: Optional[MetadataSource] = None,
        registry: Optional[AdapterRegistry] = None,
        prices: Optional[PriceSource] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        ledger: Optional[AuditLedger] = None,
        metrics: Optional[MetricRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.config = config or EngineConfig()
        self.repository = repository
        self.registry = registry or AdapterRegistry()
        self.metrics = metrics or MetricRegistry()
        if engine is None:
            scoring = self.config.scoring
            ml = MLEnhancer(scoring.ml) if scoring.ml.enabled else None
            engine = RiskScoringEngine(metadata=metadata, cache=TTLCache(scoring.cache_ttl_seconds), ml=ml)
        self.engine = engine
        self.simulator = Simulator(registry=self.registry, prices=prices, defaults=self.config.simulation)
        self.executor = ExecutionOrchestrator(
            self.registry,
            repository,
            retry=self.config.execution.retry,
            parallel_chains=self.config.execution.parallel_chains,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.dispatcher = dispatcher or NotificationDispatcher(build_sink(self.config.notifications))
        if ledger is None:
            audit = self.config.audit
            ledger = build_ledger(audit.log_path, enabled=audit.enabled, redact_fields=audit.redact_fields, s3=audit.s3)
        self.ledger = ledger
        self.monitor = RiskChangeMonitor(self.engine, listener=self._on_risk_change)
        self._now = now
        self._new_id = id_factory
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Risk scoring

    async def score_protocol(self, protocol: Union[ProtocolProfile, Mapping[str, Any]], *, use_cache: bool = True) -> RiskScore:
        if not isinstance(protocol, ProtocolProfile):
            protocol = ProtocolProfile.from_mapping(protocol)
        return await self.engine.score_protocol(protocol, use_cache=use_cache)

    async def score_opportunity(
        self, opportunity: Union[Opportunity, Mapping[str, Any]], *, use_cache: bool = True
    ) -> RiskScore:
        if not isinstance(opportunity, Opportunity):
            opportunity = Opportunity.from_mapping(opportunity)
        return await self.engine.score_opportunity(opportunity, use_cache=use_cache)

    async def generate_allocation(
        self,
        preference: str,
        opportunities: Iterable[Union[Opportunity, Mapping[str, Any]]],
        total_amount: float = 10_000.0,
    ) -> AllocationPlan:
        if total_amount <= 0:
            raise ValidationError("total amount must be positive")
        parsed = [item if isinstance(item, Opportunity) else Opportunity.from_mapping(item) for item in opportunities]
        try:
            scored = await self.engine.score_opportunities(parsed)
            return generate_allocation(preference, scored, total_amount)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    async def scan_risk(
        self, protocols: Iterable[ProtocolProfile] = (), opportunities: Iterable[Opportunity] = ()
    ) -> List[RiskChange]:
        """Rescore subjects and notify users whose strategies reference changed protocols."""

        return await self.monitor.scan(protocols, opportunities)

    async def _on_risk_change(self, change: RiskChange) -> None:
        protocol_id = change.protocol_id
        if not protocol_id:
            return
        strategies = await self.repository.list_strategies(status=StrategyStatus.ACTIVE)
        users = sorted(
            {
                strategy.user
                for strategy in strategies
                if strategy.dimension is Dimension.PROTOCOL
                and any(target.id == protocol_id for target in strategy.target_allocation)
            }
        )
        if not users:
            return
        notification = Notification(
            title=f"Risk Level {change.direction.capitalize()}",
            message=(
                f"The risk level for {change.name} has {change.direction} "
                f"from {change.previous_tier} to {change.current_tier}."
            ),
            importance="high" if change.direction == "increased" else "medium",
            event="risk_change",
            metadata=change.to_payload(),
        )
        for user in users:
            await self.dispatcher.notify_user(user, notification)

    # ------------------------------------------------------------------
    # Strategies

    async def create_strategy(self, user: str, payload: Union[RebalancingStrategy, Mapping[str, Any]]) -> RebalancingStrategy:
        if isinstance(payload, RebalancingStrategy):
            strategy = payload
            if strategy.user != user:
                raise UnauthorizedError("strategy belongs to another user")
        else:
            data = dict(payload)
            data.setdefault("id", self._new_id())
            data["user"] = user
            try:
                strategy = RebalancingStrategy.from_payload(data)
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError(f"invalid strategy: {exc}") from exc
        strategy.validate()
        now = self._now()
        if strategy.trigger is TriggerType.PERIODIC and strategy.next_scheduled_rebalance is None:
            strategy.advance_schedule(now)
        await self.repository.save_strategy(strategy)
        logger.info("Created strategy %s", strategy.id, extra={"user": user, "trigger": strategy.trigger.value})
        return strategy

    async def get_strategy(self, strategy_id: str, user: str) -> RebalancingStrategy:
        strategy = await self.repository.load_strategy(strategy_id)
        _authorize(strategy.user, user)
        return strategy

    async def list_strategies(self, user: str) -> List[RebalancingStrategy]:
        return await self.repository.list_strategies(user=user)

    # ------------------------------------------------------------------
    # Operations

    async def create_rebalancing_operation(
        self,
        strategy_id: str,
        user: str,
        initiated_by: InitiatedBy = InitiatedBy.USER,
        *,
        auto_advance: bool = True,
    ) -> RebalancingOperation:
        strategy = await self.get_strategy(strategy_id, user)
        if strategy.status is not StrategyStatus.ACTIVE:
            raise ValidationError(f"strategy {strategy.id} is {strategy.status.value}")

        snapshot = await self.repository.get_current_allocation(user, strategy.portfolio_id)
        if snapshot.total_value <= 0:
            raise ValidationError("portfolio has no value to rebalance")
        current = snapshot.for_dimension(strategy.dimension)
        plan = diff(
            current,
            strategy.target_allocation,
            snapshot.total_value,
            max_transactions=strategy.execution.max_transactions,
        )
        operation = RebalancingOperation(
            id=self._new_id(),
            user=user,
            strategy_id=strategy.id,
            current_allocation=current,
            target_allocation=list(strategy.target_allocation),
            total_value=snapshot.total_value,
            initiated_by=InitiatedBy(initiated_by),
            portfolio_id=strategy.portfolio_id,
            transactions=plan.transactions,
            changes=plan.changes,
            unfulfilled=plan.unfulfilled,
            approval=Approval(required=strategy.manual_approval_required),
        )
        await self.repository.save_operation(operation)
        self._audit(operation, None, OperationStatus.PENDING.value, actor=user, transactions=len(plan.transactions))
        logger.info(
            "Created rebalancing operation %s",
            operation.id,
            extra={"strategy_id": strategy.id, "user": user, "transactions": len(plan.transactions)},
        )

        if auto_advance:
            await self._advance(operation, strategy)
        return operation

    async def simulate_operation(self, operation_id: str, user: str) -> RebalancingOperation:
        operation = await self.get_operation(operation_id, user)
        strategy = await self.repository.load_strategy(operation.strategy_id)
        await self._simulate(operation, strategy, actor=user)
        return operation

    async def approve_operation(
        self, operation_id: str, user: str, approved: bool, reason: Optional[str] = None
    ) -> RebalancingOperation:
        operation = await self.get_operation(operation_id, user)
        if not operation.approval.required:
            raise ValidationError("operation does not require approval")
        if operation.status is not OperationStatus.WAITING_APPROVAL:
            raise InvalidTransition(
                operation.status.value,
                OperationStatus.APPROVED.value if approved else OperationStatus.REJECTED.value,
                message=f"operation {operation.id} is not waiting for approval",
            )
        strategy = await self.repository.load_strategy(operation.strategy_id)
        now = self._now()
        operation.approval.reason = reason
        if approved:
            operation.approval.approved = True
            operation.approval.approved_by = user
            operation.approval.approved_at = now
            await self._move(operation, OperationStatus.APPROVED, actor=user)
            try:
                await self._execute(operation, strategy, actor=user)
            except OperationConflict as exc:
                await self._yield_to_stored(operation, exc)
            return operation

        operation.approval.rejected_at = now
        await self._move(operation, OperationStatus.REJECTED, actor=user, reason=reason)
        await self._notify(operation, strategy, EVENT_REJECTED)
        await self._settle_strategy(strategy, operation)
        return operation

    async def execute_operation(self, operation_id: str, user: str) -> RebalancingOperation:
        operation = await self.get_operation(operation_id, user)
        if operation.status is OperationStatus.EXECUTING:
            logger.info("Operation %s is already executing", operation.id)
            return operation
        if operation.approval.required and not operation.approval.approved:
            raise InvalidTransition(
                operation.status.value,
                OperationStatus.EXECUTING.value,
                message=f"operation {operation.id} requires approval before execution",
            )
        strategy = await self.repository.load_strategy(operation.strategy_id)
        try:
            await self._execute(operation, strategy, actor=user)
        except OperationAlreadyExecuting:
            return await self.repository.load_operation(operation.id)
        return operation

    async def cancel_operation(self, operation_id: str, user: str, reason: Optional[str] = None) -> RebalancingOperation:
        operation = await self.get_operation(operation_id, user)
        if operation.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(operation.status.value, OperationStatus.CANCELLED.value)
        await self._move(operation, OperationStatus.CANCELLED, actor=user, reason=reason)
        return operation

    async def get_operation(self, operation_id: str, user: str) -> RebalancingOperation:
        operation = await self.repository.load_operation(operation_id)
        _authorize(operation.user, user)
        return operation

    async def list_operations(
        self,
        user: str,
        *,
        status: Optional[Union[OperationStatus, str]] = None,
        strategy_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[RebalancingOperation]:
        parsed = OperationStatus(status) if status is not None else None
        return await self.repository.list_operations(user, status=parsed, strategy_id=strategy_id, limit=limit)

    async def performance_stats(self, user: str, days: int = 30) -> Dict[str, Any]:
        """Aggregate gas, slippage and value change over recent settled operations."""

        if days <= 0:
            raise ValidationError("days must be positive")
        since = self._now() - timedelta(days=days)
        operations = await self.repository.list_operations(user, limit=1_000_000)
        recent = [op for op in operations if op.created_at >= since and op.status in STATS_STATUSES]
        total = len(recent)
        successful = sum(1 for op in recent if op.status is OperationStatus.COMPLETED)
        measured = [op.performance for op in recent if op.performance is not None]
        gas = sum(item.total_gas_cost_usd for item in measured)
        improvement = sum(item.portfolio_value_after - item.portfolio_value_before for item in measured)
        slippage = sum(item.total_slippage for item in measured)
        count = len(measured)
        return {
            "period_days": days,
            "total_operations": total,
            "successful_operations": successful,
            "success_rate": successful / total * 100 if total else 0.0,
            "total_gas_cost_usd": gas,
            "avg_gas_cost_usd": gas / count if count else 0.0,
            "total_value_improvement": improvement,
            "avg_value_improvement": improvement / count if count else 0.0,
            "total_slippage": slippage,
            "avg_slippage": slippage / count if count else 0.0,
        }

    # ------------------------------------------------------------------
    # Triggers

    async def evaluate_threshold_triggers(self) -> TriggerRunReport:
        report = TriggerRunReport(trigger=TriggerType.THRESHOLD.value)
        now = self._now()
        strategies = await self.repository.list_strategies(trigger=TriggerType.THRESHOLD, status=StrategyStatus.ACTIVE)
        for strategy in strategies:
            report.processed += 1
            try:
                if await self._has_open_operation(strategy):
                    _skip(report, strategy, "operation_in_progress")
                    continue
                snapshot = await self.repository.get_current_allocation(strategy.user, strategy.portfolio_id)
                decision = evaluate_threshold(strategy, snapshot, now)
                if not decision.eligible:
                    _skip(report, strategy, decision.reason)
                    continue
                operation = await self._trigger(strategy, now, {"trigger": "threshold", "deviations": decision.deviations})
            except Exception as exc:
                report.errors += 1
                report.details.append({"strategy_id": strategy.id, "status": "error", "error": str(exc)})
                logger.error("Threshold trigger failed for %s", strategy.id, exc_info=True)
                continue
            report.rebalanced += 1
            report.details.append({"strategy_id": strategy.id, "status": "rebalanced", "operation_id": operation.id})
        logger.info("Threshold trigger sweep finished", extra=report.to_payload())
        return report

    async def evaluate_periodic_triggers(self) -> TriggerRunReport:
        report = TriggerRunReport(trigger=TriggerType.PERIODIC.value)
        now = self._now()
        strategies = await self.repository.list_strategies(trigger=TriggerType.PERIODIC, status=StrategyStatus.ACTIVE)
        for strategy in strategies:
            report.processed += 1
            try:
                decision = evaluate_periodic(strategy, now)
                if not decision.eligible:
                    _skip(report, strategy, decision.reason)
                    continue
                if await self._has_open_operation(strategy):
                    _skip(report, strategy, "operation_in_progress")
                    continue
                operation = await self._trigger(strategy, now, {"trigger": "periodic"})
                refreshed = await self.repository.load_strategy(strategy.id)
                refreshed.advance_schedule(now)
                await self.repository.save_strategy(refreshed)
            except Exception as exc:
                report.errors += 1
                report.details.append({"strategy_id": strategy.id, "status": "error", "error": str(exc)})
                logger.error("Periodic trigger failed for %s", strategy.id, exc_info=True)
                continue
            report.rebalanced += 1
            report.details.append({"strategy_id": strategy.id, "status": "rebalanced", "operation_id": operation.id})
        logger.info("Periodic trigger sweep finished", extra=report.to_payload())
        return report

    async def _trigger(self, strategy: RebalancingStrategy, now: datetime, details: Mapping[str, Any]) -> RebalancingOperation:
        operation = await self.create_rebalancing_operation(strategy.id, strategy.user, InitiatedBy.SYSTEM)
        if operation.status in IN_FLIGHT_STATUSES:
            # Settled operations were already recorded by _settle_strategy.
            current = await self.repository.load_strategy(strategy.id)
            current.record_rebalance(OperationStatus.PENDING.value, {**details, "operation_id": operation.id}, now=now)
            await self.repository.save_strategy(current)
        return operation

    async def _has_open_operation(self, strategy: RebalancingStrategy) -> bool:
        operations = await self.repository.list_operations(strategy.user, strategy_id=strategy.id, limit=1_000_000)
        return any(operation.status in IN_FLIGHT_STATUSES for operation in operations)

    # ------------------------------------------------------------------
    # Lifecycle internals

    async def _advance(self, operation: RebalancingOperation, strategy: RebalancingStrategy) -> None:
        try:
            if strategy.simulate_before_execution:
                await self._simulate(operation, strategy)
            elif operation.approval.required:
                await self._move(operation, OperationStatus.WAITING_APPROVAL)
                await self._notify(operation, strategy, EVENT_WAITING_APPROVAL)
            else:
                await self._execute(operation, strategy)
        except OperationConflict as exc:
            await self._yield_to_stored(operation, exc)

    async def _simulate(self, operation: RebalancingOperation, strategy: RebalancingStrategy, *, actor: str = "system") -> None:
        await self._move(operation, OperationStatus.SIMULATING, actor=actor)
        result = await self.simulator.simulate(operation, strategy.execution)
        try:
            await self._apply_simulation(operation, strategy, result)
        except OperationConflict as exc:
            await self._yield_to_stored(operation, exc)

    async def _apply_simulation(
        self, operation: RebalancingOperation, strategy: RebalancingStrategy, result: SimulationResult
    ) -> None:
        operation.simulation = result
        await self._save(operation)
        await self._notify(operation, strategy, EVENT_SIMULATED)

        if operation.approval.required:
            await self._move(operation, OperationStatus.WAITING_APPROVAL, result=result.result)
            await self._notify(operation, strategy, EVENT_WAITING_APPROVAL)
            return
        if result.blocking:
            operation.error = OperationError(
                code="SIMULATION_FAILED",
                message="; ".join(result.errors) or "simulation failed",
                details={"errors": list(result.errors)},
            )
            await self._move(operation, OperationStatus.FAILED, result=result.result)
            await self._notify(operation, strategy, EVENT_FAILED)
            await self._settle_strategy(strategy, operation)
            return
        await self._move(operation, OperationStatus.SIMULATED, result=result.result)
        await self._execute(operation, strategy)

    async def _execute(self, operation: RebalancingOperation, strategy: RebalancingStrategy, *, actor: str = "system") -> None:
        await self._move(operation, OperationStatus.EXECUTING, actor=actor)
        operation.error = None
        await self._notify(operation, strategy, EVENT_STARTED)

        try:
            outcome = await self.executor.execute(operation, strategy.execution)
        except Exception as exc:
            logger.error("Execution of operation %s aborted", operation.id, extra={"operation_id": operation.id}, exc_info=True)
            operation.error = OperationError(
                code="EXECUTION_ERROR",
                message=str(exc) or type(exc).__name__,
                details={"exception": type(exc).__name__},
            )
            await self._move(operation, OperationStatus.FAILED, reason="execution_error")
            await self._notify(operation, strategy, EVENT_FAILED)
            await self._settle_strategy(strategy, operation)
            return

        operation.performance = outcome.performance
        operation.achieved_allocation = outcome.achieved_allocation
        if outcome.failed:
            failures = failure_summary(outcome.failed)
            operation.error = OperationError(
                code="EXECUTION_FAILED" if outcome.status is OperationStatus.FAILED else "PARTIAL_EXECUTION",
                message=f"{len(outcome.failed)} of {len(operation.transactions)} transactions failed",
                transaction_index=outcome.failed[0].index,
                details={"failures": {str(index): code for index, code in failures.items()}},
            )
        await self._move(operation, outcome.status, success_rate=outcome.performance.success_rate)
        await self._notify(operation, strategy, outcome.status.value)
        await self._settle_strategy(strategy, operation)

    async def _settle_strategy(self, strategy: RebalancingStrategy, operation: RebalancingOperation) -> None:
        try:
            current = await self.repository.load_strategy(strategy.id)
        except RebalancingError:
            logger.warning("Strategy %s disappeared before operation %s settled", strategy.id, operation.id)
            return
        current.record_rebalance(operation.status.value, {"operation_id": operation.id}, now=self._now())
        await self.repository.save_strategy(current)

    async def _notify(self, operation: RebalancingOperation, strategy: RebalancingStrategy, kind: str) -> None:
        event = OperationEvent(kind=kind, operation=operation, strategy_name=strategy.name)
        if not await self.dispatcher.dispatch(event, strategy.notifications):
            return
        try:
            await self._save(operation)
        except OperationConflict:
            logger.debug("Operation %s moved on before the %s notification was recorded", operation.id, kind)

    async def _move(self, operation: RebalancingOperation, target: OperationStatus, *, actor: str = "system", **details: Any) -> None:
        """Transition ``operation`` and persist it, provided the stored copy is still in the same status."""

        async with self._lock_for(operation.id):
            await self._ensure_current(operation, target)
            previous = transition(operation, target, actor=actor, details=details or None)
            await self.repository.save_operation(operation)
            self._audit(operation, previous.value, target.value, actor=actor, **details)

    async def _save(self, operation: RebalancingOperation) -> None:
        async with self._lock_for(operation.id):
            await self._ensure_current(operation)
            await self.repository.save_operation(operation)

    async def _ensure_current(self, operation: RebalancingOperation, target: Optional[OperationStatus] = None) -> None:
        stored = await self.repository.load_operation(operation.id)
        if stored.status is operation.status:
            return
        if stored.status is OperationStatus.EXECUTING and target is OperationStatus.EXECUTING:
            raise OperationAlreadyExecuting(operation.id)
        raise OperationConflict(operation.id, stored.status.value, (target or operation.status).value)

    async def _yield_to_stored(self, operation: RebalancingOperation, exc: OperationConflict) -> None:
        stored = await self.repository.load_operation(operation.id)
        logger.info(
            "Operation %s is %s; dropping move to %s",
            operation.id,
            stored.status.value,
            exc.target,
            extra={"operation_id": operation.id},
        )
        for item in dataclasses.fields(stored):
            setattr(operation, item.name, getattr(stored, item.name))

    def _audit(self, operation: RebalancingOperation, previous: Optional[str], current: str, *, actor: str, **details: Any) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record_status(operation.id, actor, previous, current, **details)
        except Exception:
            logger.error("Failed to write status record", extra={"operation_id": operation.id}, exc_info=True)

    def _lock_for(self, operation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(operation_id, asyncio.Lock())


def _authorize(owner: str, user: str) -> None:
    if owner != user:
        raise UnauthorizedError("resource belongs to another user")


def _skip(report: TriggerRunReport, strategy: RebalancingStrategy, reason: str) -> None:
    report.skipped += 1
    report.details.append({"strategy_id": strategy.id, "status": "skipped", "reason": reason})


__all__ = ["RebalancingService"]
