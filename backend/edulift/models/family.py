import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from edulift.database import Base
from edulift.models.enums import FamilyRole
from edulift.types import UTCDateTime, utcnow


class Family(Base):
    __tablename__ = "families"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    members: Mapped[list["FamilyMember"]] = relationship(back_populates="family")
    children: Mapped[list["Child"]] = relationship(back_populates="family")

    def __repr__(self) -> str:
        return f"<Family(id={self.id}, name={self.name!r})>"


class FamilyMember(Base):
    """One row per user: a user belongs to at most one family."""

    __tablename__ = "family_members"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FamilyRole.MEMBER,
    )
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    family: Mapped["Family"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="family_membership")  # noqa: F821

    def __repr__(self) -> str:
        return f"<FamilyMember(user_id={self.user_id}, family_id={self.family_id}, role={self.role!r})>"


class Child(Base):
    __tablename__ = "children"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    family: Mapped["Family"] = relationship(back_populates="children")

    def __repr__(self) -> str:
        return f"<Child(id={self.id}, name={self.name!r})>"
