"""FastAPI routes for workflow templates and bindings (administrators)."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import CurrentPrincipal, Principal, require_role
from budgetflow.database import get_db
from budgetflow.services import template_store
from budgetflow.services.template_store import StageSpec

router = APIRouter(prefix="/workflow", tags=["templates"])

AdminPrincipal = Annotated[Principal, Depends(require_role("admin"))]


# --- Pydantic Schemas ---


class StageInput(BaseModel):
    stage_name: str = Field(description="logistics, needed, cost, coordinator or custom")
    sort_order: int = Field(description="Position within the template, starting at 1")
    owner_department_id: int | None = Field(default=None, description="Deciding department")
    allow_revise: bool = Field(default=False, description="Whether revise-back is allowed")


class StageResponse(BaseModel):
    id: int
    stage_name: str
    sort_order: int
    owner_department_id: int
    allow_revise: bool

    model_config = {"from_attributes": True}


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, description="Template name")
    stages: list[StageInput] = Field(default_factory=list, description="Initial stages")


class TemplateResponse(BaseModel):
    id: int
    name: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class TemplateDetailResponse(TemplateResponse):
    stages: list[StageResponse] = Field(default_factory=list)


class StagesReplace(BaseModel):
    stages: list[StageInput] = Field(description="Complete new stage list")


class BindingCreate(BaseModel):
    template_id: int = Field(description="Template to bind")
    school_id: int | None = Field(default=None, description="School, or any when omitted")
    account_id: int | None = Field(default=None, description="Sub-account, or any when omitted")
    priority: int = Field(default=100, description="Lower wins")


class BindingResponse(BaseModel):
    id: int
    template_id: int
    school_id: int | None
    account_id: int | None
    priority: int
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


def _specs(stages: list[StageInput]) -> list[StageSpec]:
    return [StageSpec(**stage.model_dump()) for stage in stages]


# --- API Endpoints ---


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[TemplateResponse]:
    templates = await template_store.list_templates(db)
    return [TemplateResponse.model_validate(template) for template in templates]


@router.post(
    "/templates", response_model=TemplateDetailResponse, status_code=status.HTTP_201_CREATED
)
async def create_template(
    body: TemplateCreate,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TemplateDetailResponse:
    """Create a template with its stages."""
    template = await template_store.create_template(db, body.name, _specs(body.stages))
    stages = await template_store.stages(db, template.id)
    return TemplateDetailResponse(
        id=template.id,
        name=template.name,
        created_at=template.created_at,
        stages=[StageResponse.model_validate(stage) for stage in stages],
    )


@router.get("/templates/{template_id}", response_model=TemplateDetailResponse)
async def get_template(
    template_id: int,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TemplateDetailResponse:
    template = await template_store.get_template(db, template_id)
    stages = await template_store.stages(db, template_id)
    return TemplateDetailResponse(
        id=template.id,
        name=template.name,
        created_at=template.created_at,
        stages=[StageResponse.model_validate(stage) for stage in stages],
    )


@router.put("/templates/{template_id}/stages", response_model=list[StageResponse])
async def replace_stages(
    template_id: int,
    body: StagesReplace,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[StageResponse]:
    """Replace every stage of a template."""
    stages = await template_store.replace_stages(db, template_id, _specs(body.stages))
    return [StageResponse.model_validate(stage) for stage in stages]


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: int,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, bool]:
    await template_store.delete_template(db, template_id)
    return {"ok": True}


@router.get("/bindings", response_model=list[BindingResponse])
async def list_bindings(
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    template_id: int | None = Query(None, description="Only bindings of this template"),
) -> list[BindingResponse]:
    bindings = await template_store.list_bindings(db, template_id)
    return [BindingResponse.model_validate(binding) for binding in bindings]


@router.post("/bindings", response_model=BindingResponse, status_code=status.HTTP_201_CREATED)
async def create_binding(
    body: BindingCreate,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BindingResponse:
    binding = await template_store.create_binding(
        db, body.template_id, body.school_id, body.account_id, body.priority
    )
    return BindingResponse.model_validate(binding)


@router.delete("/bindings/{binding_id}")
async def delete_binding(
    binding_id: int,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, bool]:
    await template_store.delete_binding(db, binding_id)
    return {"ok": True}


@router.get("/resolve")
async def resolve(
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    school_id: int = Query(..., description="School ID"),
    account_id: int = Query(..., description="Sub-account ID"),
) -> dict[str, Any]:
    """Show which template, and which stages, apply to a (school, account)."""
    template_id = await template_store.resolve_template(db, school_id, account_id)
    stages = await template_store.stages(db, template_id) if template_id is not None else []
    return {
        "template_id": template_id,
        "stages": [StageResponse.model_validate(stage).model_dump() for stage in stages],
    }
