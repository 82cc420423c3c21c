"""Access validation and capacity guard."""

from edulift.models import FamilyRole
from edulift.services import access
from edulift.services.capacity import check_family_capacity
from edulift.services.results import Err, InvitationErrorCode, Ok


class TestCapacity:
    async def test_room_left(self, db_session, seed):
        family = await seed.family()
        result = await check_family_capacity(db_session, family.id)
        assert result == Ok(1)

    async def test_full_family(self, db_session, seed):
        family = await seed.family()
        await seed.fill_family(family, 6)

        result = await check_family_capacity(db_session, family.id)

        assert isinstance(result, Err)
        assert result.code == InvitationErrorCode.FAMILY_FULL
        assert result.context == {"member_count": 6, "max_members": 6}

    async def test_custom_limit(self, db_session, seed):
        family = await seed.family()
        result = await check_family_capacity(db_session, family.id, limit=1)
        assert result.code == InvitationErrorCode.FAMILY_FULL


class TestIssuanceAuthorization:
    async def test_family_admin_allowed(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        result = await access.require_family_admin(db_session, admin.id, family.id)
        assert result.ok

    async def test_plain_member_rejected(self, db_session, seed):
        family = await seed.family()
        member = await seed.user()
        await seed.member(family, member)

        result = await access.require_family_admin(db_session, member.id, family.id)

        assert result.code == InvitationErrorCode.UNAUTHORIZED

    async def test_admin_of_other_family_rejected(self, db_session, seed):
        family = await seed.family()
        other_admin = await seed.user()
        await seed.family(other_admin)

        result = await access.require_family_admin(db_session, other_admin.id, family.id)

        assert result.code == InvitationErrorCode.UNAUTHORIZED

    async def test_owning_family_admin_manages_group(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        group = await seed.group(family)
        assert (await access.require_group_admin(db_session, admin.id, group)).ok

    async def test_group_admin_family_manages_group(self, db_session, seed):
        owner = await seed.family()
        group = await seed.group(owner)
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.bind(group, family, admin, role="ADMIN")

        assert (await access.require_group_admin(db_session, admin.id, group)).ok

    async def test_group_member_family_cannot_manage(self, db_session, seed):
        owner = await seed.family()
        group = await seed.group(owner)
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.bind(group, family, admin)

        result = await access.require_group_admin(db_session, admin.id, group)

        assert result.code == InvitationErrorCode.UNAUTHORIZED


class TestLeaving:
    async def test_sole_admin_cannot_leave(self, db_session, seed):
        admin = await seed.user()
        await seed.family(admin)
        membership = await access.get_family_membership(db_session, admin.id)

        assert await access.can_leave_family(db_session, membership) == (False, access.LAST_ADMIN_REASON)

    async def test_admin_with_co_admin_can_leave(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.member(family, await seed.user(), FamilyRole.ADMIN)
        membership = await access.get_family_membership(db_session, admin.id)

        assert await access.can_leave_family(db_session, membership) == (True, None)


class TestEmailBinding:
    async def test_mismatch(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        invitation = await seed.family_invitation(family, admin, code="BIND001", email="bob@x.com")
        carol = await seed.user(email="carol@x.com")

        err = access.check_email_binding(invitation, carol)

        assert err.code == InvitationErrorCode.EMAIL_MISMATCH

    async def test_case_insensitive_match(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        invitation = await seed.family_invitation(family, admin, code="BIND002", email="bob@x.com")
        bob = await seed.user(email="Bob@X.com")

        assert access.check_email_binding(invitation, bob) is None

    async def test_open_invitation_and_anonymous_caller(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        open_invitation = await seed.family_invitation(family, admin, code="OPEN001")
        targeted = await seed.family_invitation(family, admin, code="BIND003", email="bob@x.com")

        assert access.check_email_binding(open_invitation, admin) is None
        assert access.check_email_binding(targeted, None) is None

    async def test_family_facts_for_caller_in_other_family(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        invitation = await seed.family_invitation(family, admin, code="FACT001", email="dave@x.com")
        dave = await seed.user(email="dave@x.com")
        other = await seed.family(dave, name="Dave's Family")

        result = await access.family_redemption_facts(db_session, invitation, dave)

        facts = result.value
        assert facts.existing_user is True
        assert facts.user_current_family.id == other.id
        assert facts.user_current_family.name == "Dave's Family"
        assert facts.can_leave_current_family is False
        assert facts.cannot_leave_reason == access.LAST_ADMIN_REASON

    async def test_group_facts_skip_family_context(self, db_session, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        group = await seed.group(family)
        invitation = await seed.group_invitation(group, admin, code="FACT002", email="erin@x.com")
        erin = await seed.user(email="erin@x.com")
        await seed.family(erin)

        facts = (await access.group_redemption_facts(db_session, invitation, erin)).value

        assert facts.existing_user is True
        assert facts.user_current_family is None
        assert facts.can_leave_current_family is None
