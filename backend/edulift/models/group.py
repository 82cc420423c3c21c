import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from edulift.database import Base
from edulift.models.enums import GroupRole
from edulift.types import UTCDateTime, utcnow


class Group(Base):
    """A carpool coalition. ``family_id`` is the owning family."""

    __tablename__ = "groups"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    owner_family: Mapped["Family"] = relationship()  # noqa: F821
    family_members: Mapped[list["GroupFamilyMember"]] = relationship(back_populates="group")

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name!r})>"


class GroupFamilyMember(Base):
    __tablename__ = "group_family_members"

    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), primary_key=True,
    )
    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True,
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GroupRole.MEMBER,
    )
    added_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    group: Mapped["Group"] = relationship(back_populates="family_members")
    family: Mapped["Family"] = relationship()  # noqa: F821

    def __repr__(self) -> str:
        return f"<GroupFamilyMember(family_id={self.family_id}, group_id={self.group_id})>"


class GroupChildMember(Base):
    """Child visibility inside a group, derived from its family's membership."""

    __tablename__ = "group_child_members"

    child_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("children.id", ondelete="CASCADE"), primary_key=True,
    )
    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True,
    )
    added_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False,
    )
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
