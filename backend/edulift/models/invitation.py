import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from edulift.database import Base
from edulift.models.enums import InvitationKind, InvitationStatus
from edulift.types import UTCDateTime, utcnow


class InvitationMixin:
    """Columns shared by both invitation ledgers."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    personal_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvitationStatus.PENDING,
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False,
    )
    invited_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False,
    )
    accepted_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True,
    )
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class FamilyInvitation(InvitationMixin, Base):
    __tablename__ = "family_invitations"
    __table_args__ = (
        Index("ix_family_invitations_family_email_status", "family_id", "email", "status"),
        Index("ix_family_invitations_status_expires", "status", "expires_at"),
    )

    kind = InvitationKind.FAMILY

    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=False,
    )

    # Relationships
    family: Mapped["Family"] = relationship()  # noqa: F821
    inviter: Mapped["User"] = relationship(foreign_keys="FamilyInvitation.invited_by")  # noqa: F821

    def __repr__(self) -> str:
        return f"<FamilyInvitation(id={self.id}, family_id={self.family_id}, status={self.status!r})>"


class GroupInvitation(InvitationMixin, Base):
    __tablename__ = "group_invitations"
    __table_args__ = (
        Index("ix_group_invitations_group_email_status", "group_id", "email", "status"),
        Index("ix_group_invitations_status_expires", "status", "expires_at"),
        Index("ix_group_invitations_target_family", "target_family_id"),
    )

    kind = InvitationKind.GROUP

    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
    )
    target_family_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=True,
    )

    # Relationships
    group: Mapped["Group"] = relationship()  # noqa: F821
    inviter: Mapped["User"] = relationship(foreign_keys="GroupInvitation.invited_by")  # noqa: F821

    def __repr__(self) -> str:
        return f"<GroupInvitation(id={self.id}, group_id={self.group_id}, status={self.status!r})>"
