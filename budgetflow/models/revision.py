"""SQLAlchemy models for revision answers and the budget item event trail."""

from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base


class RevisionAnswer(Base):
    """An author's answer to a revision request on a budget item."""

    __tablename__ = "revision_answers"
    __table_args__ = (
        Index("ix_revision_answers_item_created", "budget_id", "item_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budget_items.id", ondelete="CASCADE"), nullable=False
    )
    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )


class BudgetItemEvent(Base):
    """Audit trail entry for a decision taken on a budget item.

    Attributes:
        id: Event id
        budget_id: Parent budget
        item_id: Budget item the event refers to
        event_type: e.g. logistics_decided, revise_requested, revision_answered
        actor_id: User who acted
        payload: Decision fields as recorded
        created_at: When the event was written
    """

    __tablename__ = "budget_item_events"
    __table_args__ = (
        Index("ix_budget_item_events_item_created", "item_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("budget_items.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
