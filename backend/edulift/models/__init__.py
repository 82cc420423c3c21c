"""SQLAlchemy ORM models.

All models are imported here so that Alembic can discover them
via ``Base.metadata`` when generating migrations.
"""

from edulift.models.enums import FamilyRole, GroupRole, InvitationKind, InvitationStatus  # noqa: F401
from edulift.models.family import Child, Family, FamilyMember  # noqa: F401
from edulift.models.group import Group, GroupChildMember, GroupFamilyMember  # noqa: F401
from edulift.models.invitation import FamilyInvitation, GroupInvitation  # noqa: F401
from edulift.models.user import User  # noqa: F401

__all__ = [
    "Child",
    "Family",
    "FamilyInvitation",
    "FamilyMember",
    "FamilyRole",
    "Group",
    "GroupChildMember",
    "GroupFamilyMember",
    "GroupInvitation",
    "GroupRole",
    "InvitationKind",
    "InvitationStatus",
    "User",
]
