"""SQLAlchemy models for workflow templates, their stages and bindings."""

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base


class WorkflowTemplate(Base):
    """A named, ordered review pipeline."""

    __tablename__ = "workflow_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<WorkflowTemplate(id={self.id}, name='{self.name}')>"


class WorkflowTemplateStage(Base):
    """One stage of a template.

    Attributes:
        id: Stage id
        template_id: Owning template
        stage_name: logistics, needed, cost, coordinator or a custom name
        sort_order: Position within the template (unique, starting at 1)
        owner_department_id: Department that decides at this stage
        allow_revise: Whether the owner may send an item back to its author
    """

    __tablename__ = "workflow_template_stages"
    __table_args__ = (
        UniqueConstraint("template_id", "sort_order", name="uq_template_stage_order"),
        CheckConstraint("sort_order >= 1", name="ck_template_stage_order_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_department_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("departments.id", ondelete="RESTRICT"),
        nullable=False,
    )
    allow_revise: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<WorkflowTemplateStage(template_id={self.template_id}, "
            f"sort_order={self.sort_order}, stage_name='{self.stage_name}')>"
        )


class WorkflowBinding(Base):
    """Binds a (school, account) pair to a template.

    A NULL ``school_id`` or ``account_id`` acts as a wildcard. Exact bindings
    win over wildcards, then lower ``priority``, then the newest binding.
    """

    __tablename__ = "workflow_bindings"
    __table_args__ = (
        Index("ix_workflow_bindings_lookup", "school_id", "account_id", "priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="CASCADE"), nullable=True
    )
    account_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("sub_accounts.id", ondelete="CASCADE"), nullable=True
    )
    template_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
