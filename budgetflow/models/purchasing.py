"""SQLAlchemy models for direct purchase requests and their route log."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base


class PurchasingRequest(Base):
    """Header of a direct purchase request.

    Attributes:
        request_id: Request id
        user_id: Author
        status: Pending, Forwarded, Revised, RevisedByUp or Approved (terminal)
        mod_status: Decided, Incomplete or Revised once the moderator acted
        coordinator_status: Decided, Incomplete or Revised once the coordinator acted
        revise_comment: Moderator's revise note
        revise_comment_by_coordinator: Coordinator's revise note
        total_amount: Sum of item totals still considered needed
        is_printed: Set by the accountant archiver after printing
        verification_token: Signed approval token minted by the coordinator
    """

    __tablename__ = "purchasing_requests"
    __table_args__ = (
        Index("ix_purchasing_requests_status_created", "status", "created_at"),
    )

    request_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")
    mod_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    coordinator_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    revise_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    revise_comment_by_coordinator: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    is_printed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<PurchasingRequest(request_id={self.request_id}, status='{self.status}')>"


class PurchasingRequestItem(Base):
    """A line of a purchase request with its per-role decisions."""

    __tablename__ = "purchasing_request_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("purchasing_requests.request_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # NULL means undecided and counts as "needed" in totals
    mod_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    coordinator_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)


class RequestRoute(Base):
    """Append-only route log of a purchase request.

    ``stage`` is free text such as "Başlatan" or "Onaylandı" and is stored
    exactly as given.
    """

    __tablename__ = "request_routes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("purchasing_requests.request_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage: Mapped[str] = mapped_column(String(100), nullable=False)
    user: Mapped[str] = mapped_column(String(255), nullable=False)
    time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
