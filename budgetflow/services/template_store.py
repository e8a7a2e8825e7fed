"""Workflow template store: templates, stages, bindings and step materialization.

This module provides functions for:
- Resolving which template applies to a (school, account)
- Materializing an item's steps from its template
- Submitting a draft budget into review
- Administering templates, their stages and bindings
"""

import logging
from dataclasses import dataclass

from sqlalchemy import case, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.auth import Principal
from budgetflow.exceptions import ConflictError, NotFoundError, ValidationError
from budgetflow.models.budget import Budget, BudgetItem, Step
from budgetflow.models.workflow_template import (
    WorkflowBinding,
    WorkflowTemplate,
    WorkflowTemplateStage,
)
from budgetflow.services.step_ledger import apply_position, build_steps, route_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageSpec:
    """Input for one template stage.

    Attributes:
        stage_name: logistics, needed, cost, coordinator or a custom name
        sort_order: Position within the template, starting at 1
        owner_department_id: Department deciding at this stage
        allow_revise: Whether the owner may send items back to their author
    """

    stage_name: str
    sort_order: int
    owner_department_id: int | None
    allow_revise: bool = False


def validate_stages(stages: list[StageSpec]) -> None:
    """Check a stage list before it replaces a template's stages.

    Raises:
        ValidationError: On empty names, orders below 1, duplicate orders or
            missing owners
    """
    seen: set[int] = set()
    for stage in stages:
        if not stage.stage_name or not stage.stage_name.strip():
            raise ValidationError("stage_name is required")
        if stage.sort_order < 1:
            raise ValidationError("sort_order must be >= 1")
        if stage.sort_order in seen:
            raise ValidationError(f"Duplicate sort_order {stage.sort_order}")
        if stage.owner_department_id is None:
            raise ValidationError(f"Stage '{stage.stage_name}' needs owner_department_id")
        seen.add(stage.sort_order)


# --- Resolution and materialization ---


async def resolve_template(
    session: AsyncSession,
    school_id: int,
    account_id: int,
) -> int | None:
    """Get the template bound to a (school, account).

    Exact bindings win over wildcard ones (NULL school or account), then the
    lowest priority, then the most recently created binding.
    """
    specificity = case(
        (
            (WorkflowBinding.school_id == school_id) & (WorkflowBinding.account_id == account_id),
            0,
        ),
        (WorkflowBinding.account_id == account_id, 1),
        (WorkflowBinding.school_id == school_id, 2),
        else_=3,
    )
    query = (
        select(WorkflowBinding.template_id)
        .where(
            (WorkflowBinding.school_id == school_id) | WorkflowBinding.school_id.is_(None),
            (WorkflowBinding.account_id == account_id) | WorkflowBinding.account_id.is_(None),
        )
        .order_by(
            specificity,
            WorkflowBinding.priority.asc(),
            WorkflowBinding.created_at.desc(),
            WorkflowBinding.id.desc(),
        )
        .limit(1)
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def stages(session: AsyncSession, template_id: int) -> list[WorkflowTemplateStage]:
    """Get a template's stages ordered by sort_order."""
    result = await session.execute(
        select(WorkflowTemplateStage)
        .where(WorkflowTemplateStage.template_id == template_id)
        .order_by(WorkflowTemplateStage.sort_order)
    )
    return list(result.scalars().all())


async def materialize_steps(
    session: AsyncSession,
    item: BudgetItem,
    school_id: int,
) -> list[Step]:
    """Create the step ledger of ``item`` from its resolved template.

    Items that already have steps are returned unchanged.

    Raises:
        ValidationError: If no template is bound or the template has no stages
    """
    existing = await session.execute(
        select(Step).where(Step.budget_item_id == item.id).order_by(Step.sort_order)
    )
    existing_steps = list(existing.scalars().all())
    if existing_steps:
        return existing_steps

    template_id = await resolve_template(session, school_id, item.account_id)
    if template_id is None:
        raise ValidationError(f"No workflow template is bound to account {item.account_id}")
    template_stages = await stages(session, template_id)
    if not template_stages:
        raise ValidationError(f"Workflow template {template_id} has no stages")

    steps = build_steps(item, template_stages)
    session.add_all(steps)
    await session.flush()

    item.route_template_id = template_id
    item.route_steps_json = route_snapshot(steps)
    item.workflow_done = False
    apply_position(item, steps)
    return steps


async def submit_budget(
    session: AsyncSession,
    budget_id: int,
    principal: Principal,
) -> dict[str, int]:
    """Move a draft budget into review, materializing every item's steps.

    Returns:
        Dict with the budget id, item count and created step count

    Raises:
        NotFoundError: If the budget does not exist or belongs to someone else
        ConflictError: If the budget is not a draft
        ValidationError: If the budget has no items or an item has no template
    """
    budget = await session.get(Budget, budget_id, with_for_update=True)
    if budget is None or (budget.user_id != principal.id and principal.role != "admin"):
        raise NotFoundError(f"Budget {budget_id} not found")
    if budget.budget_status != "draft":
        raise ConflictError(f"Budget {budget_id} is already {budget.budget_status}")

    result = await session.execute(
        select(BudgetItem).where(BudgetItem.budget_id == budget_id).order_by(BudgetItem.id)
    )
    items = list(result.scalars().all())
    if not items:
        raise ValidationError("Budget has no items")

    step_count = 0
    for item in items:
        step_count += len(await materialize_steps(session, item, budget.school_id))

    budget.budget_status = "in_review"
    await session.flush()
    logger.info(f"Budget {budget_id} submitted with {len(items)} items, {step_count} steps")
    return {"budget_id": budget_id, "items": len(items), "steps": step_count}


# --- Template administration ---


async def create_template(
    session: AsyncSession,
    name: str,
    stage_specs: list[StageSpec] | None = None,
) -> WorkflowTemplate:
    """Create a template, optionally with its stages."""
    if not name or not name.strip():
        raise ValidationError("name is required")
    template = WorkflowTemplate(name=name.strip())
    session.add(template)
    await session.flush()
    if stage_specs:
        await replace_stages(session, template.id, stage_specs)
    return template


async def list_templates(session: AsyncSession) -> list[WorkflowTemplate]:
    result = await session.execute(select(WorkflowTemplate).order_by(WorkflowTemplate.id))
    return list(result.scalars().all())


async def get_template(session: AsyncSession, template_id: int) -> WorkflowTemplate:
    template = await session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(f"Template {template_id} not found")
    return template


async def delete_template(session: AsyncSession, template_id: int) -> None:
    """Delete a template together with its stages and bindings.

    Steps already materialized from it are left alone.
    """
    template = await get_template(session, template_id)
    await session.delete(template)
    await session.flush()


async def replace_stages(
    session: AsyncSession,
    template_id: int,
    stage_specs: list[StageSpec],
) -> list[WorkflowTemplateStage]:
    """Replace all stages of a template."""
    validate_stages(stage_specs)
    await get_template(session, template_id)
    await session.execute(
        delete(WorkflowTemplateStage).where(WorkflowTemplateStage.template_id == template_id)
    )
    new_stages = [
        WorkflowTemplateStage(
            template_id=template_id,
            stage_name=spec.stage_name.strip(),
            sort_order=spec.sort_order,
            owner_department_id=spec.owner_department_id,
            allow_revise=spec.allow_revise,
        )
        for spec in sorted(stage_specs, key=lambda spec: spec.sort_order)
    ]
    session.add_all(new_stages)
    await session.flush()
    return new_stages


# --- Bindings ---


async def create_binding(
    session: AsyncSession,
    template_id: int,
    school_id: int | None = None,
    account_id: int | None = None,
    priority: int = 100,
) -> WorkflowBinding:
    """Bind a (school, account) pair, either side possibly a wildcard, to a template."""
    await get_template(session, template_id)
    binding = WorkflowBinding(
        template_id=template_id,
        school_id=school_id,
        account_id=account_id,
        priority=priority,
    )
    session.add(binding)
    await session.flush()
    return binding


async def list_bindings(
    session: AsyncSession,
    template_id: int | None = None,
) -> list[WorkflowBinding]:
    query = select(WorkflowBinding).order_by(WorkflowBinding.priority, WorkflowBinding.id)
    if template_id is not None:
        query = query.where(WorkflowBinding.template_id == template_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def delete_binding(session: AsyncSession, binding_id: int) -> None:
    binding = await session.get(WorkflowBinding, binding_id)
    if binding is None:
        raise NotFoundError(f"Binding {binding_id} not found")
    await session.delete(binding)
    await session.flush()

