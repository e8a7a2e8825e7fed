"""FastAPI routes for control-area ownership."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import CurrentPrincipal, Principal, require_role
from budgetflow.database import get_db
from budgetflow.services import assignment_resolver
from budgetflow.services.assignment_resolver import SyncMode

router = APIRouter(prefix="/assignments", tags=["assignments"])

AdminPrincipal = Annotated[Principal, Depends(require_role("admin"))]


# --- Pydantic Schemas ---


class OwnersResponse(BaseModel):
    """Owning department per control area (null when unassigned)."""

    logistics: int | None = Field(description="Logistics department")
    needed: int | None = Field(description="Needed department")
    cost: int | None = Field(description="Cost department")


class SchoolsUpdate(BaseModel):
    school_ids: list[int] = Field(description="Schools assigned to the department")


class AccountsUpdate(BaseModel):
    account_ids: list[int] = Field(description="Sub-accounts assigned to the department")


class ControlsUpdate(BaseModel):
    control_areas: list[str] = Field(description="Control areas assigned to the department")


class SyncResponse(BaseModel):
    inserted: int = Field(description="Rows created")
    updated: int = Field(description="Rows transferred from other departments")
    deleted: int = Field(description="Rows removed")
    conflicts: list[dict[str, Any]] = Field(description="Keys owned by other departments")


# --- API Endpoints ---


@router.get("/owners", response_model=OwnersResponse)
async def get_owners(
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    school_id: int = Query(..., description="School ID"),
    account_id: int = Query(..., description="Sub-account ID"),
) -> OwnersResponse:
    """Get the departments reviewing each control area of a (school, account)."""
    return OwnersResponse(**await assignment_resolver.owners(db, school_id, account_id))


@router.get("/owner")
async def get_owner(
    principal: CurrentPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    school_id: int = Query(..., description="School ID"),
    account_id: int = Query(..., description="Sub-account ID"),
    area: str = Query(..., description="logistics, needed or cost"),
) -> dict[str, int | None]:
    department_id = await assignment_resolver.owner(db, school_id, account_id, area)
    return {"department_id": department_id}


@router.put("/departments/{department_id}/schools")
async def put_department_schools(
    department_id: int,
    body: SchoolsUpdate,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    ids = await assignment_resolver.set_department_schools(db, department_id, body.school_ids)
    return {"ok": True, "school_ids": ids}


@router.put("/departments/{department_id}/accounts")
async def put_department_accounts(
    department_id: int,
    body: AccountsUpdate,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    ids = await assignment_resolver.set_department_accounts(db, department_id, body.account_ids)
    return {"ok": True, "account_ids": ids}


@router.put("/departments/{department_id}/controls")
async def put_department_controls(
    department_id: int,
    body: ControlsUpdate,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    areas = await assignment_resolver.set_department_controls(
        db, department_id, body.control_areas
    )
    return {"ok": True, "control_areas": areas}


@router.post("/departments/{department_id}/sync", response_model=SyncResponse)
async def sync_department(
    department_id: int,
    principal: AdminPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
    mode: SyncMode = Query(SyncMode.STRICT, description="strict fails on overlaps; replace transfers them"),
) -> dict[str, Any]:
    """Rewrite the department's ownership rows to schools × accounts × areas.

    Returns 409 with the conflicting keys when ``mode=strict`` and another
    department already owns part of the target.
    """
    result = await assignment_resolver.sync_for_department(db, department_id, mode)
    return result.to_dict()
