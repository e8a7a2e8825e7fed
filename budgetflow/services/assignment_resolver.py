"""Control-area ownership resolution and department sync.

This module provides functions for:
- Resolving which department reviews an area of a (school, account)
- Listing all area owners of a (school, account)
- Syncing a department's ownership rows to its assigned schools, accounts
  and areas
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.exceptions import ConflictError, NotFoundError, ValidationError
from budgetflow.models.control_assignment import CONTROL_AREAS, ControlAssignment
from budgetflow.models.organization import (
    Department,
    DepartmentAccount,
    DepartmentControl,
    DepartmentSchool,
)

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    """How sync treats rows already owned by another department."""

    STRICT = "strict"
    REPLACE = "replace"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a department sync.

    Attributes:
        inserted: Rows created for target keys nobody owned
        updated: Rows transferred from another department (replace mode)
        deleted: Rows this department owned outside its target
        conflicts: Keys owned by another department when sync started
    """

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "conflicts": self.conflicts,
        }


def validate_area(area: str) -> str:
    """Return the canonical control area or raise ValidationError."""
    normalized = (area or "").strip().lower()
    if normalized not in CONTROL_AREAS:
        raise ValidationError(f"control_area must be one of {', '.join(CONTROL_AREAS)}")
    return normalized


async def owner(
    session: AsyncSession,
    school_id: int,
    account_id: int,
    area: str,
) -> int | None:
    """Get the department owning ``area`` for a (school, account), if any."""
    result = await session.execute(
        select(ControlAssignment.department_id).where(
            ControlAssignment.school_id == school_id,
            ControlAssignment.account_id == account_id,
            ControlAssignment.control_area == validate_area(area),
        )
    )
    return result.scalar_one_or_none()


async def owners(
    session: AsyncSession,
    school_id: int,
    account_id: int,
) -> dict[str, int | None]:
    """Get the owning department of every control area for a (school, account).

    Areas nobody owns map to None.
    """
    result = await session.execute(
        select(ControlAssignment.control_area, ControlAssignment.department_id).where(
            ControlAssignment.school_id == school_id,
            ControlAssignment.account_id == account_id,
        )
    )
    found = {row[0]: row[1] for row in result}
    return {area: found.get(area) for area in CONTROL_AREAS}


# --- Department assignment sets ---


async def _require_department(session: AsyncSession, department_id: int) -> None:
    department = await session.get(Department, department_id)
    if department is None:
        raise NotFoundError(f"Department {department_id} not found")


async def set_department_schools(
    session: AsyncSession, department_id: int, school_ids: list[int]
) -> list[int]:
    """Replace the schools assigned to a department."""
    await _require_department(session, department_id)
    unique_ids = sorted(set(school_ids))
    await session.execute(
        delete(DepartmentSchool).where(DepartmentSchool.department_id == department_id)
    )
    session.add_all(
        DepartmentSchool(department_id=department_id, school_id=school_id)
        for school_id in unique_ids
    )
    await session.flush()
    return unique_ids


async def set_department_accounts(
    session: AsyncSession, department_id: int, account_ids: list[int]
) -> list[int]:
    """Replace the sub-accounts assigned to a department."""
    await _require_department(session, department_id)
    unique_ids = sorted(set(account_ids))
    await session.execute(
        delete(DepartmentAccount).where(DepartmentAccount.department_id == department_id)
    )
    session.add_all(
        DepartmentAccount(department_id=department_id, account_id=account_id)
        for account_id in unique_ids
    )
    await session.flush()
    return unique_ids


async def set_department_controls(
    session: AsyncSession, department_id: int, areas: list[str]
) -> list[str]:
    """Replace the control areas assigned to a department."""
    normalized = sorted({validate_area(area) for area in areas})
    await _require_department(session, department_id)
    await session.execute(
        delete(DepartmentControl).where(DepartmentControl.department_id == department_id)
    )
    session.add_all(
        DepartmentControl(department_id=department_id, control_area=area) for area in normalized
    )
    await session.flush()
    return normalized


async def _assigned_sets(
    session: AsyncSession, department_id: int
) -> tuple[list[int], list[int], list[str]]:
    schools = await session.execute(
        select(DepartmentSchool.school_id).where(DepartmentSchool.department_id == department_id)
    )
    accounts = await session.execute(
        select(DepartmentAccount.account_id).where(
            DepartmentAccount.department_id == department_id
        )
    )
    areas = await session.execute(
        select(DepartmentControl.control_area).where(
            DepartmentControl.department_id == department_id
        )
    )
    return (
        list(schools.scalars().all()),
        list(accounts.scalars().all()),
        list(areas.scalars().all()),
    )


# --- Sync ---

_CREATE_TARGET = text(
    """
    CREATE TEMPORARY TABLE tmp_ca_keys (
        school_id integer NOT NULL,
        account_id integer NOT NULL,
        control_area varchar(20) NOT NULL,
        PRIMARY KEY (school_id, account_id, control_area)
    ) ON COMMIT DROP
    """
)

_INSERT_TARGET = text(
    "INSERT INTO tmp_ca_keys (school_id, account_id, control_area) "
    "VALUES (:school_id, :account_id, :control_area)"
)

_SELECT_CONFLICTS = text(
    """
    SELECT t.school_id, t.account_id, t.control_area, ca.department_id
    FROM tmp_ca_keys t
    JOIN control_assignments ca
      ON ca.school_id = t.school_id
     AND ca.account_id = t.account_id
     AND ca.control_area = t.control_area
    WHERE ca.department_id <> :department_id
    ORDER BY t.school_id, t.account_id, t.control_area
    """
)

_TRANSFER_CONFLICTS = text(
    """
    UPDATE control_assignments ca
    SET department_id = :department_id
    FROM tmp_ca_keys t
    WHERE ca.school_id = t.school_id
      AND ca.account_id = t.account_id
      AND ca.control_area = t.control_area
      AND ca.department_id <> :department_id
    """
)

_INSERT_MISSING = text(
    """
    INSERT INTO control_assignments (school_id, account_id, control_area, department_id)
    SELECT t.school_id, t.account_id, t.control_area, :department_id
    FROM tmp_ca_keys t
    LEFT JOIN control_assignments ca
      ON ca.school_id = t.school_id
     AND ca.account_id = t.account_id
     AND ca.control_area = t.control_area
    WHERE ca.id IS NULL
    """
)

_DELETE_STALE = text(
    """
    DELETE FROM control_assignments ca
    WHERE ca.department_id = :department_id
      AND NOT EXISTS (
          SELECT 1 FROM tmp_ca_keys t
          WHERE t.school_id = ca.school_id
            AND t.account_id = ca.account_id
            AND t.control_area = ca.control_area
      )
    """
)

_DROP_TARGET = text("DROP TABLE IF EXISTS tmp_ca_keys")


def _rowcount(result: Any) -> int:
    # CursorResult has rowcount attribute for DML statements
    return getattr(result, "rowcount", 0) or 0


async def sync_for_department(
    session: AsyncSession,
    department_id: int,
    mode: SyncMode = SyncMode.STRICT,
) -> SyncResult:
    """Rewrite a department's control assignments to match its assigned sets.

    The target is the cartesian product of the department's schools, accounts
    and control areas. All statements run in the caller's transaction; the
    target keys live in a temporary table that PostgreSQL drops on commit and
    discards on rollback.

    Args:
        session: Database session
        department_id: Department being synced
        mode: STRICT fails on any key owned by another department; REPLACE
            transfers those keys to this department

    Returns:
        SyncResult with the number of inserted, updated and deleted rows

    Raises:
        NotFoundError: If the department does not exist
        ConflictError: In STRICT mode when another department owns a target key
    """
    await _require_department(session, department_id)
    schools, accounts, areas = await _assigned_sets(session, department_id)
    params = {"department_id": department_id}

    if not schools or not accounts or not areas:
        cleared = await session.execute(
            delete(ControlAssignment).where(ControlAssignment.department_id == department_id)
        )
        deleted = _rowcount(cleared)
        logger.info(
            f"Department {department_id} has an empty assignment set; cleared {deleted} rows"
        )
        return SyncResult(deleted=deleted)

    await session.execute(_CREATE_TARGET)
    await session.execute(
        _INSERT_TARGET,
        [
            {"school_id": school_id, "account_id": account_id, "control_area": area}
            for school_id in schools
            for account_id in accounts
            for area in areas
        ],
    )

    conflict_rows = await session.execute(_SELECT_CONFLICTS, params)
    conflicts = [
        {
            "school_id": row[0],
            "account_id": row[1],
            "control_area": row[2],
            "department_id": row[3],
        }
        for row in conflict_rows
    ]

    if conflicts and mode != SyncMode.REPLACE:
        logger.warning(
            f"Strict sync of department {department_id} blocked by {len(conflicts)} conflicts"
        )
        raise ConflictError("conflict", conflicts=conflicts)

    updated = 0
    if conflicts:
        updated = _rowcount(await session.execute(_TRANSFER_CONFLICTS, params))
    inserted = _rowcount(await session.execute(_INSERT_MISSING, params))
    deleted = _rowcount(await session.execute(_DELETE_STALE, params))
    await session.execute(_DROP_TARGET)

    logger.info(
        f"Synced department {department_id} ({mode.value}): "
        f"inserted={inserted} updated={updated} deleted={deleted}"
    )
    return SyncResult(inserted=inserted, updated=updated, deleted=deleted, conflicts=conflicts)
