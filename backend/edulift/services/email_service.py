"""Email dispatchers for invitation notices.

``LoggingEmailDispatcher`` records notices in the log (development and
tests); ``SmtpEmailDispatcher`` delivers them over SMTP from a worker
thread so the event loop is never blocked.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

from edulift.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FamilyInvitationNotice:
    family_name: str
    inviter_name: str
    invite_code: str
    role: str
    personal_message: str | None = None


@dataclass(frozen=True)
class GroupInvitationNotice:
    to: str
    group_name: str
    invite_code: str
    role: str
    personal_message: str | None = None


class EmailDispatcher:
    """Formats invitation notices; subclasses implement ``_send``."""

    def __init__(self, frontend_url: str | None = None) -> None:
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")

    def _invite_url(self, path: str, code: str) -> str:
        return f"{self.frontend_url}/{path}?{urlencode({'code': code})}"

    async def send_family_invitation(self, email: str, notice: FamilyInvitationNotice) -> None:
        url = self._invite_url("families/join", notice.invite_code)
        subject = f"EduLift - Invitation to family {notice.family_name}"
        lines = [
            f"{notice.inviter_name} invited you to join the family "
            f"{notice.family_name} as {notice.role.lower()}.",
        ]
        if notice.personal_message:
            lines.append(f'"{notice.personal_message}"')
        lines.append(f"Your invitation code: {notice.invite_code}")
        lines.append(f"Accept the invitation: {url}")
        await self._send(email, subject, "\n\n".join(lines))

    async def send_group_invitation(self, notice: GroupInvitationNotice) -> None:
        url = self._invite_url("groups/join", notice.invite_code)
        subject = f"EduLift - Invitation to group {notice.group_name}"
        lines = [f"Your family has been invited to join the group {notice.group_name}."]
        if notice.personal_message:
            lines.append(f'"{notice.personal_message}"')
        lines.append(f"Your invitation code: {notice.invite_code}")
        lines.append(f"Accept the invitation: {url}")
        await self._send(notice.to, subject, "\n\n".join(lines))

    async def _send(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError


class LoggingEmailDispatcher(EmailDispatcher):
    """Keeps sent messages in memory and logs them instead of delivering."""

    def __init__(self, frontend_url: str | None = None) -> None:
        super().__init__(frontend_url)
        self.outbox: list[tuple[str, str, str]] = []

    async def _send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append((to, subject, body))
        logger.info("Email to %s: %s", to, subject)


class SmtpEmailDispatcher(EmailDispatcher):
    def _deliver(self, to: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = settings.FROM_EMAIL
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(
            settings.SMTP_SERVER, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS,
        ) as server:
            server.starttls()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg, to_addrs=[to])

    async def _send(self, to: str, subject: str, body: str) -> None:
        await asyncio.to_thread(self._deliver, to, subject, body)
        logger.info("Email sent to %s", to)


def create_email_dispatcher() -> EmailDispatcher:
    if settings.EMAIL_BACKEND == "smtp":
        return SmtpEmailDispatcher()
    return LoggingEmailDispatcher()


email_dispatcher = create_email_dispatcher()
