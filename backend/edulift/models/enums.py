import enum


class FamilyRole(enum.StrEnum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class GroupRole(enum.StrEnum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class InvitationKind(enum.StrEnum):
    FAMILY = "FAMILY"
    GROUP = "GROUP"


class InvitationStatus(enum.StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
