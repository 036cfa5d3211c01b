"""
Notification delivery
Turns queued notifications into plain-text emails sent over SMTP
"""
import asyncio
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Callable, Dict, List, Optional, Protocol
import logging

from pnr_tracker.models.schemas import NotificationKind
from pnr_tracker.utils.config import settings

logger = logging.getLogger(__name__)

SYSTEM_OWNER_ID = "system"


class DeliveryError(Exception):
    """Raised when a notification could not be handed to the transport"""
    pass


class NotificationDispatch(Protocol):
    """Delivers one notification; raises on failure"""

    async def deliver(self, kind: str, owner_id: str, payload: Dict[str, Any]) -> None: ...


def build_message(kind: str, payload: Dict[str, Any]) -> tuple:
    """Subject and body for a notification payload"""
    if kind == NotificationKind.STATUS_CHANGE.value:
        code = payload.get("reference_code", "")
        subject = f"PNR {code}: status changed"
        body = f"""
The status of PNR {code} has changed.

Previous status: {payload.get("old_status") or "-"}
Current status:  {payload.get("new_status") or "-"}

Regards,
{settings.APP_NAME}
        """.strip()
        return subject, body

    subject = payload.get("title") or f"{settings.APP_NAME} notification"
    body = f"""
{payload.get("message", "")}

Regards,
{settings.APP_NAME}
    """.strip()
    return subject, body


class EmailNotificationDispatch:
    """
    Sends notifications by email
    Owner ids containing "@" are used as the address; anything else goes through
    the resolver. System notifications for the "system" owner go to SYSTEM_ALERT_EMAILS.
    """

    def __init__(self, email_resolver: Optional[Callable[[str], Optional[str]]] = None):
        self.email_resolver = email_resolver

    def resolve_recipients(self, kind: str, owner_id: str) -> List[str]:
        if owner_id == SYSTEM_OWNER_ID:
            return list(settings.SYSTEM_ALERT_EMAILS)
        if "@" in owner_id:
            return [owner_id]
        if self.email_resolver is not None:
            email = self.email_resolver(owner_id)
            if email:
                return [email]
        return []

    async def deliver(self, kind: str, owner_id: str, payload: Dict[str, Any]) -> None:
        recipients = self.resolve_recipients(kind, owner_id)
        if not recipients:
            raise DeliveryError(f"No email address for owner {owner_id}")

        subject, body = build_message(kind, payload)
        await asyncio.to_thread(self._send, recipients, subject, body)
        logger.info(f"EMAIL SENT → {', '.join(recipients)} ({kind})")

    def _send(self, recipients: List[str], subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg['From'] = settings.FROM_EMAIL
        msg['To'] = ', '.join(recipients)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        try:
            server = smtplib.SMTP(settings.SMTP_SERVER, settings.SMTP_PORT)
            try:
                server.starttls()
                if settings.EMAIL_PASSWORD:
                    server.login(settings.FROM_EMAIL, settings.EMAIL_PASSWORD)
                server.sendmail(settings.FROM_EMAIL, recipients, msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {recipients}: {e}")
            raise DeliveryError(str(e)) from e
