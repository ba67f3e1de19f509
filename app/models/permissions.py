"""
SQLModel-based role models.

- Roles: Named roles (User, Developer, Admin)
- UserRoles: Junction table linking users to roles
"""

from sqlalchemy import ForeignKeyConstraint, Index
from sqlmodel import Field, SQLModel

# ===== Roles =====


class RoleBase(SQLModel):
    """
    Base model with shared public fields for Roles.

    These fields are safe to expose via the API.
    """

    name: str = Field(max_length=50)


class Roles(RoleBase, table=True):
    """Database table for roles."""

    __tablename__ = "roles"

    __table_args__ = (Index("idx_roles_name", "name", unique=True),)

    # Primary key
    role_id: int | None = Field(default=None, primary_key=True)


# ===== UserRoles =====


class UserRoles(SQLModel, table=True):
    """
    Junction table linking users to roles.

    The composite primary key makes a duplicate assignment a unique-key
    violation, which the transaction manager treats as a concurrency conflict.
    """

    __tablename__ = "user_roles"

    __table_args__ = (
        ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            ondelete="CASCADE",
            onupdate="CASCADE",
            name="fk_user_roles_user_id",
        ),
        ForeignKeyConstraint(
            ["role_id"],
            ["roles.role_id"],
            ondelete="CASCADE",
            onupdate="CASCADE",
            name="fk_user_roles_role_id",
        ),
        Index("idx_user_roles_role_id", "role_id"),
    )

    user_id: int = Field(primary_key=True, foreign_key="users.user_id")
    role_id: int = Field(primary_key=True, foreign_key="roles.role_id")
