"""Domain entities for strategies, operations and their transactions."""

from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ValidationError

PERCENT_TOLERANCE = 0.01
TARGET_SUM_TOLERANCE = 0.5


class Dimension(str, Enum):
    ASSET = "asset"
    PROTOCOL = "protocol"
    CHAIN = "chain"


class StrategyStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class TriggerType(str, Enum):
    MANUAL = "manual"
    THRESHOLD = "threshold"
    PERIODIC = "periodic"


class Schedule(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    CUSTOM = "custom"


class OperationStatus(str, Enum):
    PENDING = "pending"
    SIMULATING = "simulating"
    SIMULATED = "simulated"
    WAITING_APPROVAL = "waiting_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InitiatedBy(str, Enum):
    USER = "user"
    SYSTEM = "system"
    API = "api"


class TransactionType(str, Enum):
    SWAP = "swap"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class _Payload:
    """Mixin giving dataclasses a JSON-safe ``to_payload``."""

    def to_payload(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))  # type: ignore[call-overload]


@dataclass
class Holding(_Payload):
    """One position of a user's portfolio as reported by the repository."""

    asset: str
    balance_usd: float
    protocol_id: Optional[str] = None
    protocol_name: Optional[str] = None
    chain: Optional[str] = None
    amount: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Holding":
        return cls(
            asset=str(payload["asset"]),
            balance_usd=float(payload.get("balance_usd") or 0.0),
            protocol_id=payload.get("protocol_id"),
            protocol_name=payload.get("protocol_name"),
            chain=payload.get("chain"),
            amount=payload.get("amount"),
        )


@dataclass
class AllocationEntry(_Payload):
    dimension: Dimension
    id: str
    name: str
    amount_usd: float
    percentage: float

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AllocationEntry":
        return cls(
            dimension=Dimension(payload.get("dimension", "asset")),
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            amount_usd=float(payload.get("amount_usd") or 0.0),
            percentage=float(payload.get("percentage") or 0.0),
        )


@dataclass
class AllocationSnapshot(_Payload):
    total_value: float
    assets: List[AllocationEntry] = field(default_factory=list)
    protocols: List[AllocationEntry] = field(default_factory=list)
    chains: List[AllocationEntry] = field(default_factory=list)

    def for_dimension(self, dimension: Dimension | str) -> List[AllocationEntry]:
        dimension = Dimension(dimension)
        if dimension is Dimension.ASSET:
            return list(self.assets)
        if dimension is Dimension.PROTOCOL:
            return list(self.protocols)
        return list(self.chains)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AllocationSnapshot":
        return cls(
            total_value=float(payload.get("total_value") or 0.0),
            assets=[AllocationEntry.from_payload(item) for item in payload.get("assets") or ()],
            protocols=[AllocationEntry.from_payload(item) for item in payload.get("protocols") or ()],
            chains=[AllocationEntry.from_payload(item) for item in payload.get("chains") or ()],
        )


@dataclass
class TargetEntry(_Payload):
    dimension: Dimension
    id: str
    name: str
    target_percentage: float
    min_percentage: Optional[float] = None
    max_percentage: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TargetEntry":
        minimum = payload.get("min_percentage")
        maximum = payload.get("max_percentage")
        return cls(
            dimension=Dimension(payload.get("dimension", "asset")),
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            target_percentage=float(payload["target_percentage"]),
            min_percentage=float(minimum) if minimum is not None else None,
            max_percentage=float(maximum) if maximum is not None else None,
        )


def validate_target_allocation(entries: Sequence[TargetEntry]) -> None:
    """Raise :class:`ValidationError` unless targets sum to 100 and respect their bounds."""

    if not entries:
        raise ValidationError("target allocation must not be empty")
    seen = set()
    for entry in entries:
        if entry.id in seen:
            raise ValidationError(f"duplicate target entry {entry.id}")
        seen.add(entry.id)
        if not 0 <= entry.target_percentage <= 100:
            raise ValidationError(f"target percentage for {entry.id} must be within 0-100")
        if entry.min_percentage is not None and entry.min_percentage > entry.target_percentage:
            raise ValidationError(f"minimum percentage for {entry.id} cannot exceed its target")
        if entry.max_percentage is not None and entry.max_percentage < entry.target_percentage:
            raise ValidationError(f"maximum percentage for {entry.id} cannot be below its target")
    total = sum(entry.target_percentage for entry in entries)
    if abs(total - 100.0) > TARGET_SUM_TOLERANCE:
        raise ValidationError("target allocations must sum to 100%", details={"sum": round(total, 4)})


@dataclass
class ExecutionParams(_Payload):
    max_slippage_pct: float = 0.5
    max_gas_price_gwei: Optional[float] = None
    max_transactions: int = 10

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "ExecutionParams":
        payload = payload or {}
        gas = payload.get("max_gas_price_gwei")
        return cls(
            max_slippage_pct=float(payload.get("max_slippage_pct", 0.5)),
            max_gas_price_gwei=float(gas) if gas is not None else None,
            max_transactions=int(payload.get("max_transactions", 10)),
        )


@dataclass
class NotificationPreferences(_Payload):
    enabled: bool = True
    channels: List[str] = field(default_factory=lambda: ["in_app"])
    events: Dict[str, bool] = field(
        default_factory=lambda: {"started": True, "completed": True, "failed": True, "approval": True}
    )

    def wants(self, event: str) -> bool:
        if not self.enabled:
            return False
        key = "approval" if event in {"waiting_approval", "rejected"} else event
        if key == "partial":
            key = "completed"
        return bool(self.events.get(key, True))

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "NotificationPreferences":
        payload = payload or {}
        defaults = cls()
        events = dict(defaults.events)
        events.update({str(key): bool(value) for key, value in (payload.get("events") or {}).items()})
        return cls(
            enabled=bool(payload.get("enabled", True)),
            channels=list(payload.get("channels") or defaults.channels),
            events=events,
        )


@dataclass
class LastRebalance(_Payload):
    timestamp: datetime
    status: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RebalancingStrategy(_Payload):
    id: str
    user: str
    name: str
    dimension: Dimension
    target_allocation: List[TargetEntry]
    status: StrategyStatus = StrategyStatus.ACTIVE
    trigger: TriggerType = TriggerType.MANUAL
    tolerance: float = 5.0
    schedule: Schedule = Schedule.MONTHLY
    min_hours_between_rebalances: float = 24.0
    manual_approval_required: bool = True
    simulate_before_execution: bool = True
    execution: ExecutionParams = field(default_factory=ExecutionParams)
    notifications: NotificationPreferences = field(default_factory=NotificationPreferences)
    last_rebalance: Optional[LastRebalance] = None
    next_scheduled_rebalance: Optional[datetime] = None
    portfolio_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def validate(self) -> None:
        validate_target_allocation(self.target_allocation)
        for entry in self.target_allocation:
            if entry.dimension is not self.dimension:
                raise ValidationError(f"target {entry.id} uses dimension {entry.dimension.value}, expected {self.dimension.value}")
        if not 1 <= self.tolerance <= 50:
            raise ValidationError("deviation threshold must be between 1% and 50%")
        if self.min_hours_between_rebalances < 1:
            raise ValidationError("minimum time between rebalances must be at least 1 hour")
        if not 0.1 <= self.execution.max_slippage_pct <= 10:
            raise ValidationError("max slippage must be between 0.1% and 10%")
        if self.execution.max_transactions < 1:
            raise ValidationError("max transactions must be at least 1")

    def schedule_after(self, moment: datetime) -> datetime:
        if self.schedule is Schedule.DAILY:
            return moment + timedelta(days=1)
        if self.schedule is Schedule.WEEKLY:
            return moment + timedelta(days=7)
        if self.schedule is Schedule.MONTHLY:
            return add_months(moment, 1)
        if self.schedule is Schedule.QUARTERLY:
            return add_months(moment, 3)
        return moment + timedelta(days=14)

    def advance_schedule(self, now: Optional[datetime] = None) -> datetime:
        now = now or utcnow()
        self.next_scheduled_rebalance = self.schedule_after(now)
        self.updated_at = now
        return self.next_scheduled_rebalance

    def record_rebalance(self, status: str, details: Optional[Mapping[str, Any]] = None, *, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.last_rebalance = LastRebalance(timestamp=now, status=status, details=dict(details or {}))
        self.updated_at = now

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RebalancingStrategy":
        last = payload.get("last_rebalance")
        dimension = Dimension(payload.get("dimension", "asset"))
        targets = []
        for item in payload.get("target_allocation") or ():
            item = dict(item)
            item.setdefault("dimension", dimension.value)
            targets.append(TargetEntry.from_payload(item))
        return cls(
            id=str(payload["id"]),
            user=str(payload["user"]),
            name=str(payload.get("name") or payload["id"]),
            dimension=dimension,
            target_allocation=targets,
            status=StrategyStatus(payload.get("status", StrategyStatus.ACTIVE.value)),
            trigger=TriggerType(payload.get("trigger", TriggerType.MANUAL.value)),
            tolerance=float(payload.get("tolerance", 5.0)),
            schedule=Schedule(payload.get("schedule", Schedule.MONTHLY.value)),
            min_hours_between_rebalances=float(payload.get("min_hours_between_rebalances", 24.0)),
            manual_approval_required=bool(payload.get("manual_approval_required", True)),
            simulate_before_execution=bool(payload.get("simulate_before_execution", True)),
            execution=ExecutionParams.from_payload(payload.get("execution")),
            notifications=NotificationPreferences.from_payload(payload.get("notifications")),
            last_rebalance=(
                LastRebalance(
                    timestamp=parse_datetime(last["timestamp"]) or utcnow(),
                    status=str(last.get("status")),
                    details=dict(last.get("details") or {}),
                )
                if last
                else None
            ),
            next_scheduled_rebalance=parse_datetime(payload.get("next_scheduled_rebalance")),
            portfolio_id=payload.get("portfolio_id"),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            updated_at=parse_datetime(payload.get("updated_at")) or utcnow(),
        )


@dataclass
class GasInfo(_Payload):
    gas_used: int
    gas_price_wei: int
    gas_cost_usd: float


@dataclass
class SlippageInfo(_Payload):
    expected: Optional[float] = None
    actual: Optional[float] = None


@dataclass
class TransactionError(_Payload):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class Transaction(_Payload):
    index: int
    type: TransactionType
    from_asset: str
    to_asset: str
    from_amount_usd: float
    to_amount_usd: float
    from_amount: Optional[float] = None
    to_amount: Optional[float] = None
    from_protocol: Optional[str] = None
    to_protocol: Optional[str] = None
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    attempts: int = 0
    tx_ref: Optional[str] = None
    gas: Optional[GasInfo] = None
    slippage: Optional[SlippageInfo] = None
    error: Optional[TransactionError] = None
    executed_at: Optional[datetime] = None

    @property
    def chain(self) -> Optional[str]:
        return self.from_chain or self.to_chain

    @property
    def protocol(self) -> Optional[str]:
        return self.from_protocol or self.to_protocol

    @property
    def cross_chain(self) -> bool:
        return bool(self.from_chain and self.to_chain and self.from_chain != self.to_chain)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Transaction":
        gas = payload.get("gas")
        slippage = payload.get("slippage")
        error = payload.get("error")
        return cls(
            index=int(payload["index"]),
            type=TransactionType(payload.get("type", "swap")),
            from_asset=str(payload["from_asset"]),
            to_asset=str(payload["to_asset"]),
            from_amount_usd=float(payload.get("from_amount_usd") or 0.0),
            to_amount_usd=float(payload.get("to_amount_usd") or 0.0),
            from_amount=payload.get("from_amount"),
            to_amount=payload.get("to_amount"),
            from_protocol=payload.get("from_protocol"),
            to_protocol=payload.get("to_protocol"),
            from_chain=payload.get("from_chain"),
            to_chain=payload.get("to_chain"),
            status=TransactionStatus(payload.get("status", "pending")),
            attempts=int(payload.get("attempts") or 0),
            tx_ref=payload.get("tx_ref"),
            gas=GasInfo(**gas) if gas else None,
            slippage=SlippageInfo(**slippage) if slippage else None,
            error=TransactionError(**error) if error else None,
            executed_at=parse_datetime(payload.get("executed_at")),
        )


@dataclass
class AllocationChange(_Payload):
    dimension: Dimension
    id: str
    name: str
    direction: str
    current_percentage: float
    target_percentage: float
    change_percentage: float
    change_amount_usd: float

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AllocationChange":
        return cls(
            dimension=Dimension(payload.get("dimension", "asset")),
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            direction=str(payload["direction"]),
            current_percentage=float(payload.get("current_percentage") or 0.0),
            target_percentage=float(payload.get("target_percentage") or 0.0),
            change_percentage=float(payload.get("change_percentage") or 0.0),
            change_amount_usd=float(payload.get("change_amount_usd") or 0.0),
        )


@dataclass
class SimulationResult(_Payload):
    result: str
    expected_gas_cost_usd: float = 0.0
    expected_slippage: float = 0.0
    estimated_duration_s: float = 0.0
    portfolio_value_before: float = 0.0
    portfolio_value_after: float = 0.0
    slippage_cost: float = 0.0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)
    performed_at: datetime = field(default_factory=utcnow)

    @property
    def blocking(self) -> bool:
        return self.result == "failed"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SimulationResult":
        return cls(
            result=str(payload["result"]),
            expected_gas_cost_usd=float(payload.get("expected_gas_cost_usd") or 0.0),
            expected_slippage=float(payload.get("expected_slippage") or 0.0),
            estimated_duration_s=float(payload.get("estimated_duration_s") or 0.0),
            portfolio_value_before=float(payload.get("portfolio_value_before") or 0.0),
            portfolio_value_after=float(payload.get("portfolio_value_after") or 0.0),
            slippage_cost=float(payload.get("slippage_cost") or 0.0),
            warnings=list(payload.get("warnings") or ()),
            errors=list(payload.get("errors") or ()),
            details=[dict(item) for item in payload.get("details") or ()],
            performed_at=parse_datetime(payload.get("performed_at")) or utcnow(),
        )


@dataclass
class Approval(_Payload):
    required: bool = False
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "Approval":
        payload = payload or {}
        return cls(
            required=bool(payload.get("required", False)),
            approved=bool(payload.get("approved", False)),
            approved_by=payload.get("approved_by"),
            approved_at=parse_datetime(payload.get("approved_at")),
            rejected_at=parse_datetime(payload.get("rejected_at")),
            reason=payload.get("reason"),
        )


@dataclass
class Performance(_Payload):
    portfolio_value_before: float
    portfolio_value_after: float
    total_gas_cost_usd: float
    total_slippage: float
    execution_time_s: float
    success_rate: float


@dataclass
class OperationError(_Payload):
    code: str
    message: str
    transaction_index: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class NotificationRecord(_Payload):
    event: str
    timestamp: datetime
    channels: List[str] = field(default_factory=list)


@dataclass
class RebalancingOperation(_Payload):
    id: str
    user: str
    strategy_id: str
    current_allocation: List[AllocationEntry]
    target_allocation: List[TargetEntry]
    total_value: float = 0.0
    status: OperationStatus = OperationStatus.PENDING
    initiated_by: InitiatedBy = InitiatedBy.SYSTEM
    portfolio_id: Optional[str] = None
    transactions: List[Transaction] = field(default_factory=list)
    changes: List[AllocationChange] = field(default_factory=list)
    unfulfilled: List[Dict[str, Any]] = field(default_factory=list)
    simulation: Optional[SimulationResult] = None
    approval: Approval = field(default_factory=Approval)
    performance: Optional[Performance] = None
    achieved_allocation: List[AllocationEntry] = field(default_factory=list)
    error: Optional[OperationError] = None
    notifications_sent: List[NotificationRecord] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def transaction_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TransactionStatus}
        for transaction in self.transactions:
            counts[transaction.status.value] += 1
        return counts

    def notified(self, event: str) -> bool:
        return any(record.event == event for record in self.notifications_sent)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RebalancingOperation":
        simulation = payload.get("simulation")
        performance = payload.get("performance")
        error = payload.get("error")
        return cls(
            id=str(payload["id"]),
            user=str(payload["user"]),
            strategy_id=str(payload["strategy_id"]),
            current_allocation=[AllocationEntry.from_payload(item) for item in payload.get("current_allocation") or ()],
            target_allocation=[TargetEntry.from_payload(item) for item in payload.get("target_allocation") or ()],
            total_value=float(payload.get("total_value") or 0.0),
            status=OperationStatus(payload.get("status", "pending")),
            initiated_by=InitiatedBy(payload.get("initiated_by", "system")),
            portfolio_id=payload.get("portfolio_id"),
            transactions=[Transaction.from_payload(item) for item in payload.get("transactions") or ()],
            changes=[AllocationChange.from_payload(item) for item in payload.get("changes") or ()],
            unfulfilled=[dict(item) for item in payload.get("unfulfilled") or ()],
            simulation=SimulationResult.from_payload(simulation) if simulation else None,
            approval=Approval.from_payload(payload.get("approval")),
            performance=Performance(**performance) if performance else None,
            achieved_allocation=[AllocationEntry.from_payload(item) for item in payload.get("achieved_allocation") or ()],
            error=OperationError(**error) if error else None,
            notifications_sent=[
                NotificationRecord(
                    event=str(item["event"]),
                    timestamp=parse_datetime(item.get("timestamp")) or utcnow(),
                    channels=list(item.get("channels") or ()),
                )
                for item in payload.get("notifications_sent") or ()
            ],
            history=[dict(item) for item in payload.get("history") or ()],
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            updated_at=parse_datetime(payload.get("updated_at")) or utcnow(),
            completed_at=parse_datetime(payload.get("completed_at")),
        )


@dataclass
class LedgerEntry(_Payload):
    """Accounting record written once per completed transaction."""

    operation_id: str
    user: str
    strategy_id: str
    transaction: Transaction
    recorded_at: datetime = field(default_factory=utcnow)
