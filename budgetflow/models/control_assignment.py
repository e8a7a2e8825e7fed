"""SQLAlchemy model for control-area ownership."""

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base

CONTROL_AREAS = ("logistics", "needed", "cost")


class ControlAssignment(Base):
    """Names the department reviewing one control area of a (school, account).

    Attributes:
        id: Row id
        school_id: School
        account_id: Sub-account
        control_area: logistics, needed or cost
        department_id: Owning department
    """

    __tablename__ = "control_assignments"
    __table_args__ = (
        UniqueConstraint(
            "school_id",
            "account_id",
            "control_area",
            name="uq_control_assignments_school_account_area",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sub_accounts.id", ondelete="CASCADE"), nullable=False
    )
    control_area: Mapped[str] = mapped_column(String(20), nullable=False)
    department_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ControlAssignment(school_id={self.school_id}, account_id={self.account_id}, "
            f"area='{self.control_area}', department_id={self.department_id})>"
        )
