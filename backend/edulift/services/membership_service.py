"""Family membership maintenance.

Leaving, role changes and removals outside the invitation flow. Each
operation locks the family row before counting admins so that two
concurrent demotions cannot both pass the last-admin check.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from edulift.models.enums import FamilyRole
from edulift.models.family import FamilyMember
from edulift.services import access
from edulift.services.connection_manager import ConnectionManager
from edulift.services.events import MemberLeftFamily, MemberRoleUpdated, MembershipEvent
from edulift.services.results import Err, InvitationErrorCode, Ok, Result

logger = logging.getLogger(__name__)


class MembershipService:
    def __init__(self, db: AsyncSession, *, broadcaster: ConnectionManager) -> None:
        self.db = db
        self.broadcaster = broadcaster

    async def _fail(self, err: Err) -> Err:
        await self.db.rollback()
        return err

    async def _publish(self, event: MembershipEvent) -> None:
        try:
            await self.broadcaster.broadcast_family_update(event.family_id, event)
        except Exception:
            logger.warning("Failed to broadcast %s", event.event_kind, exc_info=True)

    async def _locked_member(
        self, family_id: uuid.UUID, user_id: uuid.UUID
    ) -> FamilyMember | None:
        await access.lock_family(self.db, family_id)
        membership = await access.get_family_membership(self.db, user_id, lock=True)
        if membership is None or membership.family_id != family_id:
            return None
        return membership

    async def leave_family(self, user_id: uuid.UUID) -> Result[uuid.UUID]:
        """Remove the caller from their family; returns the family id left."""
        membership = await access.get_family_membership(self.db, user_id)
        if membership is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "You are not a member of any family"))
        family_id = membership.family_id

        membership = await self._locked_member(family_id, user_id)
        if membership is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "You are not a member of any family"))
        can_leave, reason = await access.can_leave_family(self.db, membership)
        if not can_leave:
            return await self._fail(Err(
                InvitationErrorCode.LAST_ADMIN,
                "Cannot leave family as you are the last administrator",
                {"family_id": str(family_id), "reason": reason},
            ))

        await self.db.delete(membership)
        await self.db.commit()

        logger.info("User %s left family %s", user_id, family_id)
        await self._publish(MemberLeftFamily(family_id=family_id, user_id=user_id))
        return Ok(family_id)

    async def update_member_role(
        self,
        admin_id: uuid.UUID,
        member_user_id: uuid.UUID,
        role: FamilyRole,
    ) -> Result[FamilyMember]:
        """Change a member's role within the admin's family."""
        admin = await access.get_family_membership(self.db, admin_id)
        if admin is None or admin.role != FamilyRole.ADMIN:
            return await self._fail(Err(
                InvitationErrorCode.UNAUTHORIZED,
                "Only family administrators can change member roles",
            ))
        family_id = admin.family_id

        if member_user_id == admin_id and role != FamilyRole.ADMIN:
            return await self._fail(Err(
                InvitationErrorCode.CANNOT_DEMOTE_SELF,
                "Administrators cannot change their own role",
            ))

        member = await self._locked_member(family_id, member_user_id)
        if member is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Member not found in this family"))

        old_role = FamilyRole(member.role)
        if old_role == FamilyRole.ADMIN and role != FamilyRole.ADMIN:
            if await access.count_family_admins(self.db, family_id) <= 1:
                return await self._fail(Err(
                    InvitationErrorCode.LAST_ADMIN,
                    "Cannot demote the last administrator",
                    {"family_id": str(family_id)},
                ))

        member.role = FamilyRole(role)
        await self.db.commit()

        if old_role != member.role:
            logger.info(
                "Role of user %s in family %s changed from %s to %s",
                member_user_id, family_id, old_role, member.role,
            )
            await self._publish(MemberRoleUpdated(
                family_id=family_id,
                user_id=member_user_id,
                old_role=old_role,
                new_role=member.role,
                changed_by=admin_id,
            ))
        return Ok(member)

    async def remove_member(
        self,
        admin_id: uuid.UUID,
        member_user_id: uuid.UUID,
    ) -> Result[uuid.UUID]:
        admin = await access.get_family_membership(self.db, admin_id)
        if admin is None or admin.role != FamilyRole.ADMIN:
            return await self._fail(Err(
                InvitationErrorCode.UNAUTHORIZED,
                "Only family administrators can remove members",
            ))
        family_id = admin.family_id

        if member_user_id == admin_id:
            return await self._fail(Err(
                InvitationErrorCode.CANNOT_REMOVE_SELF,
                "Administrators cannot remove themselves; leave the family instead",
            ))

        member = await self._locked_member(family_id, member_user_id)
        if member is None:
            return await self._fail(Err(InvitationErrorCode.NOT_FOUND, "Member not found in this family"))

        if member.role == FamilyRole.ADMIN and await access.count_family_admins(self.db, family_id) <= 1:
            return await self._fail(Err(
                InvitationErrorCode.LAST_ADMIN,
                "Cannot remove the last administrator",
                {"family_id": str(family_id)},
            ))

        await self.db.delete(member)
        await self.db.commit()

        logger.info("User %s removed from family %s by %s", member_user_id, family_id, admin_id)
        await self._publish(MemberLeftFamily(
            family_id=family_id,
            user_id=member_user_id,
            action="memberRemoved",
            removed_by=admin_id,
        ))
        return Ok(family_id)
