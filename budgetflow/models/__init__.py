"""SQLAlchemy models for the budget workflow."""

from budgetflow.models.budget import Budget, BudgetItem, Step
from budgetflow.models.control_assignment import CONTROL_AREAS, ControlAssignment
from budgetflow.models.organization import (
    Department,
    DepartmentAccount,
    DepartmentControl,
    DepartmentSchool,
    FoodEaters,
    School,
    SubAccount,
    User,
)
from budgetflow.models.purchasing import PurchasingRequest, PurchasingRequestItem, RequestRoute
from budgetflow.models.revision import BudgetItemEvent, RevisionAnswer
from budgetflow.models.workflow_template import (
    WorkflowBinding,
    WorkflowTemplate,
    WorkflowTemplateStage,
)

__all__ = [
    "CONTROL_AREAS",
    "School",
    "Department",
    "SubAccount",
    "User",
    "FoodEaters",
    "DepartmentSchool",
    "DepartmentAccount",
    "DepartmentControl",
    "ControlAssignment",
    "WorkflowTemplate",
    "WorkflowTemplateStage",
    "WorkflowBinding",
    "Budget",
    "BudgetItem",
    "Step",
    "PurchasingRequest",
    "PurchasingRequestItem",
    "RequestRoute",
    "RevisionAnswer",
    "BudgetItemEvent",
]
