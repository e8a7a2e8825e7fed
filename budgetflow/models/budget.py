"""SQLAlchemy models for budgets, budget items and their review steps."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base


class Budget(Base):
    """A budget draft for one school and period.

    Attributes:
        id: Budget id
        user_id: Author
        school_id: School the budget belongs to
        period: Month the budget applies to, formatted "MM-YYYY"
        title: Short title
        description: Free text
        request_type: Kind of request (e.g. "new")
        budget_status: draft, in_review, review_been_completed or closed
        created_at: Creation timestamp
        closed_at: Stamped once when every item finished review
    """

    __tablename__ = "budgets"
    __table_args__ = (
        Index("ix_budgets_school_period", "school_id", "period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    school_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="RESTRICT"), nullable=False
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_type: Mapped[str] = mapped_column(String(50), nullable=False, default="new")
    budget_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="draft",
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Budget(id={self.id}, period='{self.period}', status='{self.budget_status}')>"


class BudgetItem(Base):
    """A line of a budget, reviewed independently through its steps.

    The ``current_*`` and ``next_*`` columns denormalize the item's position in
    its step ledger for listing; the ``steps`` table stays authoritative.
    """

    __tablename__ = "budget_items"
    __table_args__ = (
        Index("ix_budget_items_budget", "budget_id"),
        Index("ix_budget_items_revision_state", "revision_state"),
        CheckConstraint(
            "needed_status IS NULL OR needed_status IN (0, 1)",
            name="ck_budget_items_needed_status",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sub_accounts.id", ondelete="RESTRICT"), nullable=False
    )

    # Requested line
    item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    itemdescription: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    period_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Logistics review
    storage_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    storage_provided_qty: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    storage_reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Needed review
    needed_status: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    needed_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    needed_noted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    needed_noted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Cost review
    purchase_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    purchasing_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    purchase_reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    purchase_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Coordinator decision
    final_purchase_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    final_purchase_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    final_quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    coordinator_reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coordinator_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Workflow position
    workflow_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    route_template_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    route_steps_json: Mapped[list | None] = mapped_column(JSON, nullable=True)
    current_step_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    current_step_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_owner_department_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, index=True
    )
    next_step_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    next_owner_department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Revision
    revision_state: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    revise_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<BudgetItem(id={self.id}, budget_id={self.budget_id}, "
            f"stage='{self.current_stage}', done={self.workflow_done})>"
        )


class Step(Base):
    """A materialized review step of one budget item.

    Steps are copied from the item's template when the budget is submitted
    and their ``sort_order`` never changes afterwards. At most one step per
    item has ``is_current`` set.

    Attributes:
        id: Step id
        budget_id: Parent budget (denormalized for the completion check)
        budget_item_id: Owning item; deleting it deletes its steps
        account_id: Item's sub-account
        step_name: Stage name copied from the template
        sort_order: Position, strictly increasing per item
        owner_of_step: Department that decides at this step
        allow_revise: Whether that department may send the item back, as
            copied from the stage at materialization
        step_status: pending, confirmed, needed, not_needed, in_stock,
            in_partial, out_of_stock or skipped
        is_current: Whether this step awaits a decision
        updated_at: Last change
    """

    __tablename__ = "steps"
    __table_args__ = (
        UniqueConstraint("budget_item_id", "sort_order", name="uq_steps_item_order"),
        # Completion check and stage queues only ever look at current steps
        Index(
            "ix_steps_current_owner",
            "owner_of_step",
            "step_name",
            postgresql_where=text("is_current"),
        ),
        Index("ix_steps_budget_current", "budget_id", "is_current"),
        Index(
            "uq_steps_one_current",
            "budget_item_id",
            unique=True,
            postgresql_where=text("is_current"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    budget_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budget_items.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_of_step: Mapped[int] = mapped_column(Integer, nullable=False)
    allow_revise: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<Step(item={self.budget_item_id}, order={self.sort_order}, "
            f"name='{self.step_name}', status='{self.step_status}', current={self.is_current})>"
        )
