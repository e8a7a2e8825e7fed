"""Business logic services for the budget workflow."""

from budgetflow.services.assignment_resolver import SyncMode, SyncResult
from budgetflow.services.collaborators import CollaboratorClient, CollaboratorError
from budgetflow.services.workflow_engine import (
    BatchResult,
    CoordinatorOutcome,
    CostOutcome,
    LogisticsOutcome,
    NeededOutcome,
    StepAdvance,
    plan_advance,
)

__all__ = [
    "BatchResult",
    "CollaboratorClient",
    "CollaboratorError",
    "CoordinatorOutcome",
    "CostOutcome",
    "LogisticsOutcome",
    "NeededOutcome",
    "StepAdvance",
    "SyncMode",
    "SyncResult",
    "plan_advance",
]
