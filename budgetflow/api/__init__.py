"""FastAPI routes for the budget workflow service."""

from budgetflow.api.assignments import router as assignments_router
from budgetflow.api.purchasing import router as purchasing_router
from budgetflow.api.revisions import router as revisions_router
from budgetflow.api.templates import router as templates_router
from budgetflow.api.workflow import router as workflow_router

__all__ = [
    "assignments_router",
    "purchasing_router",
    "revisions_router",
    "templates_router",
    "workflow_router",
]
