"""FastAPI routes for the budget item workflow.

This module provides API endpoints for:
- Drafting budgets and editing their items
- Submitting a draft budget into review
- Departmental stage queues and counts
- Batch decisions for the logistics, needed, cost and coordinator stages
- Sending an item back for revision
- Item route and event trail views
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import CurrentPrincipal, Principal, require_department
from budgetflow.database import get_db
from budgetflow.services import budgets, workflow_engine
from budgetflow.services.audit_log import get_item_events
from budgetflow.services.budgets import BudgetItemInput
from budgetflow.services.template_store import submit_budget
from budgetflow.services.workflow_engine import (
    CostDecision,
    FinalDecision,
    LogisticsDecision,
    NeededDecision,
)

router = APIRouter(prefix="/workflow", tags=["workflow"])

DepartmentPrincipal = Annotated[Principal, Depends(require_department)]


# --- Pydantic Schemas ---


class LogisticsItem(BaseModel):
    """Stock check for one item."""

    item_id: int = Field(description="Budget item ID")
    provided_qty: Decimal | None = Field(default=None, description="Quantity available in stock")
    storage_status: str | None = Field(
        default=None, description="Explicit in_stock, in_partial or out_of_stock"
    )


class NeededItem(BaseModel):
    """Need decision for one item."""

    item_id: int = Field(description="Budget item ID")
    needed_status: int | bool | str | None = Field(
        default=None, description="1/0, true/false, uygundur/uygun_degil"
    )
    needed_notes: str | None = Field(default=None, description="Reviewer notes")


class CostItem(BaseModel):
    """Purchase cost for one item."""

    item_id: int = Field(description="Budget item ID")
    purchase_cost: Decimal | None = Field(default=None, ge=0, description="Unit purchase cost")
    purchasing_note: str | None = Field(default=None, description="Purchasing note")


class FinalItem(BaseModel):
    """Coordinator decision for one item."""

    item_id: int = Field(description="Budget item ID")
    final_purchase_status: str = Field(description="approved, adjusted or rejected")
    final_purchase_cost: Decimal | None = Field(default=None, ge=0, description="Final unit cost")
    final_quantity: Decimal | None = Field(default=None, ge=0, description="Final quantity")


class LogisticsBatch(BaseModel):
    items: list[LogisticsItem] = Field(min_length=1)


class NeededBatch(BaseModel):
    items: list[NeededItem] = Field(min_length=1)


class CostBatch(BaseModel):
    items: list[CostItem] = Field(min_length=1)


class FinalBatch(BaseModel):
    items: list[FinalItem] = Field(min_length=1)


class BatchResponse(BaseModel):
    """Response schema for a decision batch."""

    ok: bool = Field(description="Always true on success")
    stage: str = Field(description="Stage decided")
    updated: int = Field(description="Number of items whose decision was recorded")
    advanced: list[int] = Field(description="Items whose current step moved")
    unchanged: list[int] = Field(description="Items already past this stage")
    completed_budgets: list[int] = Field(description="Budgets that finished review")


class ReviseRequest(BaseModel):
    revise_reason: str = Field(min_length=1, description="Why the item goes back to its author")


class BudgetCreate(BaseModel):
    """Request schema for a new draft budget."""

    period: str = Field(description="Month the budget applies to, MM-YYYY")
    title: str | None = Field(default=None, max_length=255, description="Defaults to the school name")
    description: str | None = Field(default=None, description="Free text")
    request_type: str = Field(default="new", max_length=50, description="Kind of request")


class DraftItem(BaseModel):
    """Request schema for a budget line."""

    account_id: int = Field(description="Sub-account ID")
    item_name: str = Field(min_length=1, max_length=255, description="Item name")
    quantity: Decimal = Field(gt=0, description="Requested quantity")
    cost: Decimal = Field(ge=0, description="Requested unit cost")
    itemdescription: str | None = Field(default=None, description="Item description")
    unit: str | None = Field(default=None, max_length=50, description="Unit")
    period_months: int | None = Field(default=None, description="Months covered, clamped to 1-12")
    notes: str | None = Field(default=None, description="Author notes")


class DraftItemResponse(BaseModel):
    """Response schema for a budget line."""

    id: int
    budget_id: int
    account_id: int
    item_name: str
    itemdescription: str | None
    quantity: Decimal
    cost: Decimal
    unit: str | None
    period_months: int | None
    notes: str | None

    model_config = {"from_attributes": True}


class BudgetResponse(BaseModel):
    """Response schema for a budget with its lines."""

    id: int = Field(description="Budget ID")
    school_id: int = Field(description="School ID")
    period: str = Field(description="MM-YYYY")
    title: str = Field(description="Title")
    description: str | None = Field(description="Free text")
    request_type: str = Field(description="Kind of request")
    budget_status: str = Field(description="draft, in_review, review_been_completed or closed")
    created_at: datetime | None = Field(description="Creation timestamp")
    items: list[DraftItemResponse] = Field(default_factory=list, description="Budget lines")

    model_config = {"from_attributes": True}


class BudgetItemResponse(BaseModel):
    """Response schema for a budget item in a stage queue."""

    id: int = Field(description="Budget item ID")
    budget_id: int = Field(description="Budget ID")
    account_id: int = Field(description="Sub-account ID")
    item_name: str = Field(description="Item name")
    itemdescription: str | None = Field(description="Item description")
    quantity: Decimal = Field(description="Requested quantity")
    cost: Decimal = Field(description="Requested unit cost")
    unit: str | None = Field(description="Unit")
    storage_status: str | None = Field(description="Logistics result")
    storage_provided_qty: Decimal | None = Field(description="Quantity provided from stock")
    needed_status: int | None = Field(description="1 needed, 0 not needed")
    needed_notes: str | None = Field(description="Need reviewer notes")
    purchase_cost: Decimal | None = Field(description="Purchase cost")
    final_purchase_status: str | None = Field(description="Coordinator decision")
    final_purchase_cost: Decimal | None = Field(description="Final unit cost")
    final_quantity: Decimal | None = Field(description="Final quantity")
    workflow_done: bool = Field(description="Whether review finished")
    current_stage: str | None = Field(description="Stage awaiting a decision")
    current_owner_department_id: int | None = Field(description="Department deciding now")
    next_stage: str | None = Field(description="Following stage")
    revision_state: str = Field(description="none, pending, answered or resolved")

    model_config = {"from_attributes": True}


class StageQueueResponse(BaseModel):
    """Response schema for a paginated stage queue."""

    items: list[BudgetItemResponse] = Field(description="Items awaiting the department")
    total: int = Field(description="Total matching items")
    page: int = Field(description="Current page number")
    page_size: int = Field(description="Items per page")
    total_pages: int = Field(description="Total number of pages")


class RouteStepResponse(BaseModel):
    id: int
    step_name: str
    sort_order: int
    owner_of_step: int
    step_status: str
    state: str = Field(description="done, current, upcoming or skipped")


class ItemRouteResponse(BaseModel):
    """Response schema for an item's route."""

    item_id: int
    budget_id: int
    workflow_done: bool
    current_owner_department_id: int | None
    steps: list[RouteStepResponse]


class ItemEventResponse(BaseModel):
    """Response schema for an item event."""

    id: int
    event_type: str
    actor_id: int | None
    payload: dict[str, Any] | None
    created_at: datetime

    model_config = {"from_attributes": True}


# --- API Endpoints ---


@router.post("/budgets", response_model=BudgetResponse, status_code=status.HTTP_201_CREATED)
async def post_budget(
    body: BudgetCreate,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BudgetResponse:
    """Create an empty draft budget for the caller's school."""
    budget = await budgets.create_budget(
        db, principal, body.period, body.title, body.description, body.request_type
    )
    return BudgetResponse.model_validate(budget)


@router.get("/budgets/mine", response_model=list[BudgetResponse])
async def get_own_budgets(
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[BudgetResponse]:
    """List the caller's budgets with their lines, newest first."""
    bundles = await budgets.list_own_budgets(db, principal)
    return [
        BudgetResponse.model_validate(bundle.budget).model_copy(
            update={"items": [DraftItemResponse.model_validate(item) for item in bundle.items]}
        )
        for bundle in bundles
    ]


@router.post(
    "/budgets/{budget_id}/items",
    response_model=DraftItemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_item(
    budget_id: int,
    body: DraftItem,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> DraftItemResponse:
    """Add a line to a draft budget."""
    item = await budgets.add_item(db, principal, budget_id, BudgetItemInput(**body.model_dump()))
    return DraftItemResponse.model_validate(item)


@router.put("/budgets/{budget_id}/items/{item_id}", response_model=DraftItemResponse)
async def put_item(
    budget_id: int,
    item_id: int,
    body: DraftItem,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> DraftItemResponse:
    """Replace a draft line."""
    item = await budgets.edit_item(
        db, principal, budget_id, item_id, BudgetItemInput(**body.model_dump())
    )
    return DraftItemResponse.model_validate(item)


@router.delete("/budgets/{budget_id}/items/{item_id}")
async def remove_item(
    budget_id: int,
    item_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    await budgets.delete_item(db, principal, budget_id, item_id)
    return {"ok": True, "item_id": item_id}


@router.post("/budgets/{budget_id}/submit")
async def submit(
    budget_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Submit a draft budget: materialize item steps and move it into review."""
    return {"ok": True, **await submit_budget(db, budget_id, principal)}


@router.get("/stage-counts")
async def get_stage_counts(
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, int]:
    """Count budgets waiting on the caller's department, per stage."""
    return await workflow_engine.stage_counts(db, principal.department_id)


@router.get("/stages/{stage}/items", response_model=StageQueueResponse)
async def get_stage_queue(
    stage: str,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
) -> StageQueueResponse:
    """List items whose current step is ``stage`` and owned by the caller's department."""
    items, total = await workflow_engine.stage_queue(
        db, principal.department_id, stage, page, page_size
    )
    return StageQueueResponse(
        items=[BudgetItemResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=max(1, (total + page_size - 1) // page_size),
    )


@router.patch("/stages/logistics", response_model=BatchResponse)
async def patch_logistics(
    body: LogisticsBatch,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Record stock checks for a batch of items."""
    decisions = [LogisticsDecision(**item.model_dump()) for item in body.items]
    result = await workflow_engine.decide_logistics(db, principal, decisions)
    return result.to_dict()


@router.patch("/stages/needed", response_model=BatchResponse)
async def patch_needed(
    body: NeededBatch,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Record need decisions and notes for a batch of items."""
    decisions = [NeededDecision(**item.model_dump()) for item in body.items]
    result = await workflow_engine.decide_needed(db, principal, decisions)
    return result.to_dict()


@router.patch("/stages/cost", response_model=BatchResponse)
async def patch_cost(
    body: CostBatch,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Record purchase costs for a batch of items."""
    decisions = [CostDecision(**item.model_dump()) for item in body.items]
    result = await workflow_engine.decide_cost(db, principal, decisions)
    return result.to_dict()


@router.patch("/stages/coordinator", response_model=BatchResponse)
async def patch_final(
    body: FinalBatch,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Record final coordinator decisions for a batch of items."""
    decisions = [FinalDecision(**item.model_dump()) for item in body.items]
    result = await workflow_engine.decide_final(db, principal, decisions)
    return result.to_dict()


@router.post("/items/{item_id}/revise")
async def revise(
    item_id: int,
    body: ReviseRequest,
    principal: DepartmentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Send an item back to its author from a stage that allows it."""
    item = await workflow_engine.revise_item(db, principal, item_id, body.revise_reason)
    return {
        "ok": True,
        "item_id": item.id,
        "revision_state": item.revision_state,
        "revised_at": item.revised_at,
    }


@router.get("/items/{item_id}/route", response_model=ItemRouteResponse)
async def get_item_route(
    item_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    """Get an item's steps with their done/current/upcoming/skipped state."""
    return await workflow_engine.item_route(db, item_id)


@router.get("/items/{item_id}/events", response_model=list[ItemEventResponse])
async def get_events(
    item_id: int,
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[ItemEventResponse]:
    """Get an item's decision trail, oldest first."""
    events = await get_item_events(db, item_id)
    return [ItemEventResponse.model_validate(event) for event in events]
