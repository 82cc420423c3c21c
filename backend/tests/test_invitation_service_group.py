"""Group invitations: family-level membership."""

import uuid
from datetime import timedelta

from edulift.models import (
    FamilyRole,
    GroupChildMember,
    GroupFamilyMember,
    GroupInvitation,
    GroupRole,
    InvitationKind,
    InvitationStatus,
)
from edulift.services.results import InvitationErrorCode

from conftest import FakeWebSocket


class TestCreateGroupInvitation:
    async def test_invite_family_notifies_its_admins(self, service, seed, outbox):
        owner_admin = await seed.user()
        owner = await seed.family(owner_admin)
        group = await seed.group(owner, name="School Run")
        target_admin = await seed.user(email="ta@x.com")
        target = await seed.family(target_admin)
        co_admin = await seed.user(email="tb@x.com")
        await seed.member(target, co_admin, FamilyRole.ADMIN)
        await seed.member(target, await seed.user(email="kid-parent@x.com"))

        result = await service.create_group_invitation(
            group.id, owner_admin.id, target_family_id=target.id,
        )

        invitation = result.value
        assert invitation.target_family_id == target.id
        assert invitation.role == GroupRole.MEMBER
        assert sorted(to for to, _, _ in outbox.outbox) == ["ta@x.com", "tb@x.com"]
        assert all("School Run" in subject for _, subject, _ in outbox.outbox)

    async def test_email_invitation(self, service, seed, outbox):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))

        result = await service.create_group_invitation(group.id, admin.id, email="Zoe@x.com")

        assert result.value.email == "zoe@x.com"
        assert [to for to, _, _ in outbox.outbox] == ["zoe@x.com"]

    async def test_open_invitation(self, service, seed, outbox):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))

        result = await service.create_group_invitation(group.id, admin.id)

        assert result.ok
        assert result.value.email is None and result.value.target_family_id is None
        assert outbox.outbox == []

    async def test_unknown_group(self, service, seed):
        admin = await seed.user()
        await seed.family(admin)

        result = await service.create_group_invitation(uuid.uuid4(), admin.id)

        assert result.code == InvitationErrorCode.NOT_FOUND

    async def test_unknown_target_family(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))

        result = await service.create_group_invitation(
            group.id, admin.id, target_family_id=uuid.uuid4(),
        )

        assert result.code == InvitationErrorCode.NOT_FOUND

    async def test_non_admin_rejected(self, service, seed):
        owner = await seed.family()
        group = await seed.group(owner)
        member = await seed.user()
        await seed.member(owner, member)

        result = await service.create_group_invitation(group.id, member.id)

        assert result.code == InvitationErrorCode.UNAUTHORIZED

    async def test_family_already_in_group(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin), name="School Run")
        other_admin = await seed.user()
        other = await seed.family(other_admin)
        await seed.bind(group, other, other_admin)

        result = await service.create_group_invitation(
            group.id, admin.id, target_family_id=other.id,
        )

        assert result.code == InvitationErrorCode.ALREADY_MEMBER
        assert result.context["group_name"] == "School Run"

    async def test_duplicate_for_family(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))
        target = await seed.family()

        first = await service.create_group_invitation(group.id, admin.id, target_family_id=target.id)
        second = await service.create_group_invitation(group.id, admin.id, target_family_id=target.id)

        assert first.ok
        assert second.code == InvitationErrorCode.DUPLICATE_INVITATION

    async def test_duplicate_for_email(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))

        await service.create_group_invitation(group.id, admin.id, email="zoe@x.com")
        second = await service.create_group_invitation(group.id, admin.id, email="zoe@x.com")

        assert second.code == InvitationErrorCode.DUPLICATE_INVITATION
        assert len(await seed.rows(GroupInvitation)) == 1


class TestValidateGroupInvitation:
    async def test_anonymous(self, service, seed):
        admin = await seed.user(name="Alice")
        group = await seed.group(await seed.family(admin), name="School Run")
        await seed.group_invitation(group, admin, code="GRP0001", email="zoe@x.com")

        view = (await service.validate_group_invitation("GRP0001")).value

        assert view.group_name == "School Run"
        assert view.inviter_name == "Alice"
        assert view.requires_auth is True
        assert view.existing_user is False

    async def test_email_mismatch(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))
        await seed.group_invitation(group, admin, code="GRP0002", email="zoe@x.com")
        mallory = await seed.user(email="mallory@x.com")

        result = await service.validate_group_invitation("GRP0002", mallory.id)

        assert result.code == InvitationErrorCode.EMAIL_MISMATCH

    async def test_expired(self, service, seed):
        admin = await seed.user()
        group = await seed.group(await seed.family(admin))
        await seed.group_invitation(group, admin, code="GRP0003", expires_in=timedelta(days=-2))

        result = await service.validate_group_invitation("GRP0003")

        assert result.code == InvitationErrorCode.EXPIRED


class TestAcceptGroupInvitation:
    async def test_family_joins_with_children(self, service, seed, broadcaster):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        invitation = await seed.group_invitation(group, owner_admin, code="JOIN001")
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.member(family, await seed.user())
        kid1 = await seed.child(family, "Mia")
        kid2 = await seed.child(family, "Leo")
        ws = FakeWebSocket()
        await broadcaster.subscribe(ws, None, [group.id])

        result = await service.accept_group_invitation("JOIN001", admin.id)

        value = result.value
        assert value.family_id == family.id
        assert value.members_added == 2
        assert value.children_added == 2
        bound = await seed.rows(
            GroupFamilyMember,
            GroupFamilyMember.group_id == group.id,
            GroupFamilyMember.family_id == family.id,
        )
        assert len(bound) == 1
        assert bound[0].added_by == admin.id
        children = await seed.rows(GroupChildMember, GroupChildMember.group_id == group.id)
        assert {c.child_id for c in children} == {kid1.id, kid2.id}
        assert await seed.status_of(GroupInvitation, invitation.id) == InvitationStatus.ACCEPTED
        assert ws.sent[0]["type"] == "familyJoined"
        assert ws.sent[0]["members_added"] == 2

    async def test_user_without_family(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin), name="School Run")
        await seed.group_invitation(group, owner_admin, code="JOIN002")
        loner = await seed.user()

        result = await service.accept_group_invitation("JOIN002", loner.id)

        assert result.code == InvitationErrorCode.FAMILY_ONBOARDING_REQUIRED
        assert result.context["group_name"] == "School Run"

    async def test_non_admin_must_ask_family_admin(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        invitation = await seed.group_invitation(group, owner_admin, code="JOIN003")
        admin = await seed.user(name="Grace")
        family = await seed.family(admin)
        member = await seed.user()
        await seed.member(family, member)

        result = await service.accept_group_invitation("JOIN003", member.id)

        assert result.code == InvitationErrorCode.REQUIRES_ADMIN_ACTION
        assert result.context["admin_name"] == "Grace"
        assert "Grace" in result.message
        assert await seed.status_of(GroupInvitation, invitation.id) == InvitationStatus.PENDING

    async def test_family_already_in_group(self, service, seed):
        owner_admin = await seed.user()
        owner = await seed.family(owner_admin)
        group = await seed.group(owner)
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.bind(group, family, admin)
        await seed.group_invitation(group, owner_admin, code="JOIN004")

        result = await service.accept_group_invitation("JOIN004", admin.id)

        assert result.code == InvitationErrorCode.ALREADY_MEMBER

    async def test_email_binding_enforced(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        await seed.group_invitation(group, owner_admin, code="JOIN005", email="zoe@x.com")
        admin = await seed.user(email="mallory@x.com")
        await seed.family(admin)

        result = await service.accept_group_invitation("JOIN005", admin.id)

        assert result.code == InvitationErrorCode.EMAIL_MISMATCH

    async def test_expired(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        await seed.group_invitation(group, owner_admin, code="JOIN006", expires_in=timedelta(seconds=-1))
        admin = await seed.user()
        await seed.family(admin)

        result = await service.accept_group_invitation("JOIN006", admin.id)

        assert result.code == InvitationErrorCode.EXPIRED

    async def test_single_use(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        await seed.group_invitation(group, owner_admin, code="JOIN007")
        first_admin, second_admin = await seed.user(), await seed.user()
        await seed.family(first_admin)
        await seed.family(second_admin)

        assert (await service.accept_group_invitation("JOIN007", first_admin.id)).ok
        second = await service.accept_group_invitation("JOIN007", second_admin.id)

        assert second.code == InvitationErrorCode.INVALID_CODE


class TestGroupCancelAndList:
    async def test_cancel_and_list(self, service, seed):
        admin = await seed.user()
        family = await seed.family(admin)
        group = await seed.group(family)
        keep = await seed.group_invitation(group, admin, code="KEEP001")
        drop = await seed.group_invitation(group, admin, code="DROP001")

        cancelled = await service.cancel_group_invitation(drop.id, admin.id)
        listed = await service.list_pending_invitations_for_target(
            InvitationKind.GROUP, group.id, admin.id,
        )

        assert cancelled.value.changed is True
        assert [inv.id for inv in listed.value] == [keep.id]

    async def test_member_family_can_list_but_not_cancel(self, service, seed):
        owner_admin = await seed.user()
        group = await seed.group(await seed.family(owner_admin))
        invitation = await seed.group_invitation(group, owner_admin, code="LIST001")
        admin = await seed.user()
        family = await seed.family(admin)
        await seed.bind(group, family, admin)

        listed = await service.list_pending_invitations_for_target(
            InvitationKind.GROUP, group.id, admin.id,
        )
        cancelled = await service.cancel_group_invitation(invitation.id, admin.id)

        assert len(listed.value) == 1
        assert cancelled.code == InvitationErrorCode.UNAUTHORIZED

    async def test_outsider_cannot_list(self, service, seed):
        group = await seed.group(await seed.family())
        outsider = await seed.user()
        await seed.family(outsider)

        result = await service.list_pending_invitations_for_target(
            InvitationKind.GROUP, group.id, outsider.id,
        )

        assert result.code == InvitationErrorCode.UNAUTHORIZED
