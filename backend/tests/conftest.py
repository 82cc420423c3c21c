"""Shared fixtures for the invitation engine tests.

Uses SQLite (aiosqlite) by default, no PostgreSQL required.
Set TEST_DATABASE_URL to override (e.g. for CI with real PostgreSQL).

Seed data is written through short-lived sessions that commit, so the
objects handed to tests stay readable even after a service rolls back
its own session.
"""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")

# Ensure settings can be loaded without .env
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")

from edulift.database import Base  # noqa: E402
from edulift.models import (  # noqa: E402
    Child,
    Family,
    FamilyInvitation,
    FamilyMember,
    FamilyRole,
    Group,
    GroupFamilyMember,
    GroupInvitation,
    GroupRole,
    InvitationStatus,
    User,
)
from edulift.services.connection_manager import ConnectionManager  # noqa: E402
from edulift.services.email_service import LoggingEmailDispatcher  # noqa: E402
from edulift.services.invitation_service import InvitationService  # noqa: E402
from edulift.services.membership_service import MembershipService  # noqa: E402
from edulift.types import utcnow  # noqa: E402

# ---------------------------------------------------------------------------
# Engine: SQLite in-memory with StaticPool (shared across connections)
# ---------------------------------------------------------------------------

_engine_kwargs = {}
if TEST_DATABASE_URL.startswith("sqlite"):
    _engine_kwargs = {
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }

_engine = create_async_engine(TEST_DATABASE_URL, echo=False, **_engine_kwargs)
_TestSession = async_sessionmaker(
    bind=_engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest_asyncio.fixture(autouse=True)
async def _setup_tables():
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Clear in-memory rate-limit counters so tests never block each other."""
    from edulift.core.rate_limit import limiter

    limiter.reset()


@pytest_asyncio.fixture()
async def db_session():
    async with _TestSession() as session:
        yield session
        await session.rollback()


@pytest.fixture()
def session_factory():
    """Independent sessions, one per concurrent caller."""
    return _TestSession


# The in-memory SQLite engine shares one connection and ignores FOR UPDATE,
# so concurrent transactions need a real server.
requires_row_locks = pytest.mark.skipif(
    TEST_DATABASE_URL.startswith("sqlite"),
    reason="needs row locks on separate connections (set TEST_DATABASE_URL)",
)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class FailingEmailDispatcher(LoggingEmailDispatcher):
    async def _send(self, to: str, subject: str, body: str) -> None:
        raise ConnectionError("SMTP server unreachable")


class StalledEmailDispatcher(LoggingEmailDispatcher):
    """Holds every message until ``release`` is set."""

    def __init__(self):
        super().__init__(frontend_url="https://edulift.test")
        self.release = asyncio.Event()

    async def _send(self, to: str, subject: str, body: str) -> None:
        await self.release.wait()
        await super()._send(to, subject, body)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture()
def outbox() -> LoggingEmailDispatcher:
    return LoggingEmailDispatcher(frontend_url="https://edulift.test")


@pytest.fixture()
def broadcaster() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture()
def service(db_session, outbox, broadcaster) -> InvitationService:
    return InvitationService(db_session, email=outbox, broadcaster=broadcaster)


@pytest.fixture()
def membership_service(db_session, broadcaster) -> MembershipService:
    return MembershipService(db_session, broadcaster=broadcaster)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

class Seed:
    """Builds users, families and groups in committed transactions."""

    async def _save(self, *objects):
        async with _TestSession() as session:
            session.add_all(objects)
            await session.commit()

    async def user(self, name: str | None = None, email: str | None = None) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            name=name or f"User {suffix}",
            email=email or f"user-{suffix}@test.example",
        )
        await self._save(user)
        return user

    async def family(self, admin: User | None = None, name: str | None = None) -> Family:
        """A family with ``admin`` (or a fresh user) as its sole ADMIN."""
        admin = admin or await self.user()
        family = Family(name=name or f"Family {uuid.uuid4().hex[:6]}")
        await self._save(family)
        await self.member(family, admin, FamilyRole.ADMIN)
        return family

    async def member(
        self, family: Family, user: User, role: FamilyRole = FamilyRole.MEMBER
    ) -> FamilyMember:
        membership = FamilyMember(family_id=family.id, user_id=user.id, role=role)
        await self._save(membership)
        return membership

    async def fill_family(self, family: Family, size: int) -> None:
        """Add MEMBER users until the family has ``size`` members."""
        for _ in range(size - await self.member_count(family.id)):
            await self.member(family, await self.user())

    async def child(self, family: Family, name: str = "Kid") -> Child:
        child = Child(family_id=family.id, name=name)
        await self._save(child)
        return child

    async def group(self, owner: Family, name: str | None = None) -> Group:
        group = Group(name=name or f"Group {uuid.uuid4().hex[:6]}", family_id=owner.id)
        await self._save(group)
        return group

    async def bind(
        self, group: Group, family: Family, added_by: User, role: GroupRole = GroupRole.MEMBER
    ) -> GroupFamilyMember:
        row = GroupFamilyMember(
            group_id=group.id, family_id=family.id, role=role, added_by=added_by.id,
        )
        await self._save(row)
        return row

    async def family_invitation(
        self,
        family: Family,
        inviter: User,
        *,
        code: str,
        email: str | None = None,
        role: FamilyRole = FamilyRole.MEMBER,
        expires_in: timedelta = timedelta(days=7),
        status: InvitationStatus = InvitationStatus.PENDING,
        created_at=None,
    ) -> FamilyInvitation:
        invitation = FamilyInvitation(
            family_id=family.id,
            email=email,
            role=role,
            code=code,
            status=status,
            expires_at=utcnow() + expires_in,
            created_by=inviter.id,
            invited_by=inviter.id,
            created_at=created_at or utcnow(),
        )
        await self._save(invitation)
        return invitation

    async def group_invitation(
        self,
        group: Group,
        inviter: User,
        *,
        code: str,
        email: str | None = None,
        expires_in: timedelta = timedelta(days=7),
        status: InvitationStatus = InvitationStatus.PENDING,
        created_at=None,
    ) -> GroupInvitation:
        invitation = GroupInvitation(
            group_id=group.id,
            email=email,
            role=GroupRole.MEMBER,
            code=code,
            status=status,
            expires_at=utcnow() + expires_in,
            created_by=inviter.id,
            invited_by=inviter.id,
            created_at=created_at or utcnow(),
        )
        await self._save(invitation)
        return invitation

    # -- reads through a fresh session --------------------------------------

    async def membership(self, user_id: uuid.UUID) -> FamilyMember | None:
        async with _TestSession() as session:
            result = await session.execute(
                select(FamilyMember).where(FamilyMember.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def member_count(self, family_id: uuid.UUID) -> int:
        async with _TestSession() as session:
            result = await session.execute(
                select(func.count(FamilyMember.id)).where(FamilyMember.family_id == family_id)
            )
            return result.scalar() or 0

    async def status_of(self, model, invitation_id: uuid.UUID) -> str | None:
        async with _TestSession() as session:
            result = await session.execute(select(model.status).where(model.id == invitation_id))
            return result.scalar_one_or_none()

    async def rows(self, model, *criteria) -> list:
        stmt = select(model)
        if criteria:
            stmt = stmt.where(*criteria)
        async with _TestSession() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


@pytest.fixture()
def seed() -> Seed:
    return Seed()


# ---------------------------------------------------------------------------
# HTTP test client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(db_session: AsyncSession):
    from edulift.database import get_db
    from edulift.main import app

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def _auth_headers(user: User) -> dict[str, str]:
    from edulift.core.security import create_access_token

    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers_for():
    """Bearer headers for a seeded user."""
    return _auth_headers
