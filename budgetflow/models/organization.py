"""Master data the workflow reads: schools, departments, accounts and users.

These tables are maintained by the master-data service. The workflow only
reads them, except for the department assignment sets which drive
control-assignment sync.
"""

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from budgetflow.database import Base


class School(Base):
    """A school: the grouping tenant for users and budgets."""

    __tablename__ = "schools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<School(id={self.id}, name='{self.name}')>"


class Department(Base):
    """A reviewer group such as logistics or purchasing.

    Attributes:
        id: Department id
        code: Short unique code
        name: Display name
        active: Inactive departments keep their history but receive no new work
    """

    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Department(id={self.id}, code='{self.code}')>"


class SubAccount(Base):
    """A budget line category. ``code`` begins with a 3-digit master prefix."""

    __tablename__ = "sub_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    master_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<SubAccount(id={self.id}, code='{self.code}')>"


class User(Base):
    """An application user as seen by the workflow.

    Attributes:
        id: User id
        name: Display name
        email: Unique login email
        role: Role name
        school_id: School the user belongs to
        department_id: Reviewer department, if any
        assigned_moderator_id: Moderator who handles this user's purchase requests
        budget_mod: Moderator who follows this user's budget revisions
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="user")
    school_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="SET NULL"), nullable=True, index=True
    )
    department_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    assigned_moderator_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    budget_mod: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role='{self.role}')>"


class FoodEaters(Base):
    """Number of people eating at a school, used by reporting."""

    __tablename__ = "food_eaters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    eating_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# Department assignment sets. Their cartesian product is the target of
# control-assignment sync.


class DepartmentSchool(Base):
    __tablename__ = "department_schools"

    department_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True
    )
    school_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("schools.id", ondelete="CASCADE"), primary_key=True
    )


class DepartmentAccount(Base):
    __tablename__ = "department_accounts"

    department_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sub_accounts.id", ondelete="CASCADE"), primary_key=True
    )


class DepartmentControl(Base):
    __tablename__ = "department_controls"

    department_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True
    )
    control_area: Mapped[str] = mapped_column(String(20), primary_key=True)
