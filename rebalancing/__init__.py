"""Portfolio rebalancing: planning, simulation, approval and execution."""

from .config import EngineConfig, RetryPolicy, Settings, SimulationDefaults
from .errors import (
    InvalidTransition,
    NotFoundError,
    OperationAlreadyExecuting,
    RebalancingError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    AllocationEntry,
    AllocationSnapshot,
    Dimension,
    Holding,
    InitiatedBy,
    OperationStatus,
    RebalancingOperation,
    RebalancingStrategy,
    TargetEntry,
    Transaction,
    TransactionStatus,
    TriggerType,
)
from .planner import RebalancePlan, apply_transactions, build_allocation_snapshot, diff
from .repository import FileRepository, InMemoryRepository, Repository
from .service import RebalancingService

__all__ = [
    "AllocationEntry",
    "AllocationSnapshot",
    "Dimension",
    "EngineConfig",
    "FileRepository",
    "Holding",
    "InMemoryRepository",
    "InitiatedBy",
    "InvalidTransition",
    "NotFoundError",
    "OperationAlreadyExecuting",
    "OperationStatus",
    "RebalancePlan",
    "RebalancingError",
    "RebalancingOperation",
    "RebalancingService",
    "RebalancingStrategy",
    "Repository",
    "RetryPolicy",
    "Settings",
    "SimulationDefaults",
    "TargetEntry",
    "Transaction",
    "TransactionStatus",
    "TriggerType",
    "UnauthorizedError",
    "ValidationError",
    "apply_transactions",
    "build_allocation_snapshot",
    "diff",
]
