"""Outbound mail over SMTP (smtplib), run off the event loop."""

import asyncio
import logging
import re
import smtplib
import socket
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Dict, List, Optional

from webmail.config import SmtpSettings
from webmail.errors import InvalidCredentials, InvalidRecipient, MailTimeout, SmtpSendFailed
from webmail.models import SmtpCredentials

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SMTP_PROVIDERS: Dict[str, Dict[str, object]] = {
    "gmail": {"host": "smtp.gmail.com", "port": 465, "secure": True},
    "outlook": {"host": "smtp.office365.com", "port": 587, "secure": False},
    "yahoo": {"host": "smtp.mail.yahoo.com", "port": 465, "secure": True},
}


def validate_recipient(address: str) -> str:
    address = (address or "").strip()
    if not EMAIL_RE.match(address):
        raise InvalidRecipient("Invalid recipient email address")
    return address


def provider_for_address(address: str) -> Optional[str]:
    address = (address or "").lower()
    if address.endswith(("@gmail.com", "@googlemail.com")):
        return "gmail"
    if address.endswith(("@outlook.com", "@hotmail.com", "@live.com")):
        return "outlook"
    if address.endswith("@yahoo.com"):
        return "yahoo"
    return None


def with_provider_defaults(creds: SmtpCredentials) -> SmtpCredentials:
    """Fill a missing host/port from the well-known provider of ``creds.user``."""
    provider = provider_for_address(creds.user)
    if provider is None or (creds.host and creds.port):
        return creds
    defaults = SMTP_PROVIDERS[provider]
    return SmtpCredentials(
        host=creds.host or str(defaults["host"]),
        port=creds.port or int(defaults["port"]),  # type: ignore[arg-type]
        user=creds.user,
        password=creds.password,
        secure=creds.secure if creds.host else bool(defaults["secure"]),
    )


@dataclass
class OutgoingAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class SmtpTransport:
    """Sends and verifies through a user's SMTP account."""

    def __init__(self, settings: Optional[SmtpSettings] = None):
        self.settings = settings or SmtpSettings()

    def _connect(self, creds: SmtpCredentials) -> smtplib.SMTP:
        # Implicit TLS on 465 (or when marked secure); STARTTLS otherwise
        implicit_tls = creds.port == 465 or (creds.secure and creds.port != 587)
        context = ssl.create_default_context()
        if implicit_tls:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                creds.host, creds.port, timeout=self.settings.timeout, context=context
            )
        else:
            server = smtplib.SMTP(creds.host, creds.port, timeout=self.settings.timeout)
        # The caller's `with` only owns the socket once the handshake is done
        try:
            server.ehlo()
            if not implicit_tls and (server.has_extn("starttls") or creds.port == 587):
                server.starttls(context=context)
                server.ehlo()
        except Exception:
            server.close()
            raise
        return server

    def build_message(
        self,
        creds: SmtpCredentials,
        to: str,
        subject: str,
        content: str,
        attachments: Optional[List[OutgoingAttachment]] = None,
        html: bool = False,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = creds.user
        msg["To"] = to
        msg["Subject"] = subject or ""
        msg["Date"] = formatdate(localtime=True)
        domain = creds.user.rsplit("@", 1)[-1] if "@" in creds.user else None
        msg["Message-ID"] = make_msgid(domain=domain)
        if html:
            msg.set_content(content or "", subtype="html")
        else:
            msg.set_content(content or "")
        for attachment in attachments or []:
            maintype, _, subtype = attachment.content_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return msg

    def send_blocking(
        self,
        creds: SmtpCredentials,
        to: str,
        subject: str,
        content: str,
        attachments: Optional[List[OutgoingAttachment]] = None,
        html: bool = False,
    ) -> str:
        """Send one message and return its Message-ID.

        Raises:
            InvalidRecipient: If the address is malformed or refused
            InvalidCredentials: If SMTP authentication fails
            MailTimeout: If the server does not answer in time (phase="send")
            SmtpSendFailed: On any other SMTP or network failure
        """
        to = validate_recipient(to)
        creds = with_provider_defaults(creds)
        msg = self.build_message(creds, to, subject, content, attachments, html)
        try:
            with self._connect(creds) as server:
                server.login(creds.user, creds.password or "")
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.warning(f"SMTP authentication failed for {creds.user}: {e.smtp_code}")
            raise InvalidCredentials("Invalid SMTP credentials") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise InvalidRecipient(f"Recipient refused: {to}") from e
        except socket.timeout as e:
            raise MailTimeout("send") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send via {creds.host}:{creds.port} failed: {e}")
            raise SmtpSendFailed(f"Failed to send email: {e}") from e

        message_id = msg["Message-ID"]
        logger.info(f"Sent message {message_id} via {creds.host}")
        return message_id

    async def send(
        self,
        creds: SmtpCredentials,
        to: str,
        subject: str,
        content: str,
        attachments: Optional[List[OutgoingAttachment]] = None,
        html: bool = False,
    ) -> str:
        return await asyncio.to_thread(
            self.send_blocking, creds, to, subject, content, attachments, html
        )

    def verify_blocking(self, creds: SmtpCredentials) -> None:
        """Connect and authenticate without sending anything."""
        creds = with_provider_defaults(creds)
        try:
            with self._connect(creds) as server:
                server.login(creds.user, creds.password or "")
                server.noop()
        except smtplib.SMTPAuthenticationError as e:
            raise InvalidCredentials("Invalid SMTP credentials") from e
        except socket.timeout as e:
            raise MailTimeout("connect") from e
        except (smtplib.SMTPException, OSError) as e:
            raise SmtpSendFailed(f"SMTP connection test failed: {e}") from e
        logger.info(f"SMTP connection test to {creds.host} succeeded")

    async def verify(self, creds: SmtpCredentials) -> None:
        await asyncio.to_thread(self.verify_blocking, creds)
