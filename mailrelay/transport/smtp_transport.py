from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Literal

from mailrelay.common.config import HTTP_TIMEOUT
from mailrelay.credentials.models import SmtpSettings
from mailrelay.errors import TransportError
from mailrelay.logging import get_logger
from mailrelay.message.models import NormalizedMessage
from mailrelay.transport.base import PASS_THROUGH, SendOutcome, Transport

logger = get_logger(__name__)

SmtpSecure = Literal["starttls", "ssl", ""]

_SECURE_MODES: dict[str, SmtpSecure] = {"tls": "starttls", "ssl": "ssl", "none": ""}


class SmtpTransport(Transport):
    """
    SMTP delivery stays with the host's mailer; this transport only
    configures the client the host is about to use.
    """

    name = "smtp"

    def __init__(self, settings: SmtpSettings, *, default_from_name: str | None = None) -> None:
        self._settings = settings
        self._default_from_name = default_from_name

    def deliver(self, message: NormalizedMessage) -> SendOutcome:
        return PASS_THROUGH

    def configure(self, client: Any) -> None:
        """Set connection, credentials and sender identity on ``client``."""
        s = self._settings
        client.host = s.host
        client.port = s.port
        client.username = s.username
        client.password = s.password
        client.secure = _SECURE_MODES[s.encryption]
        client.smtp_auth = True

        from_name = s.from_name or self._default_from_name
        if from_name:
            client.from_name = from_name
        if s.from_address:
            client.from_address = s.from_address


class SmtpClient:
    """
    Minimal host-side SMTP client built on :mod:`smtplib`.

    Attributes are filled in by :meth:`SmtpTransport.configure`.
    """

    def __init__(self, *, timeout: float = HTTP_TIMEOUT) -> None:
        self.host = ""
        self.port = 587
        self.username = ""
        self.password = ""
        self.secure: SmtpSecure = "starttls"
        self.smtp_auth = False
        self.from_address = ""
        self.from_name = ""
        self.timeout = timeout

    def send(self, message: NormalizedMessage) -> None:
        if not self.host:
            raise TransportError("SMTP host not configured.", code="smtp_not_configured")
        if not self.from_address:
            raise TransportError("SMTP from address not configured.", code="smtp_not_configured")

        mime = to_email_message(message, self.from_address, self.from_name)
        recipients = [*message.to, *message.cc, *message.bcc]
        logger.info("Sending via SMTP %s:%s to %d recipient(s)", self.host, self.port, len(recipients))

        try:
            if self.secure == "ssl":
                conn: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                conn = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with conn:
                if self.secure == "starttls":
                    conn.starttls()
                if self.smtp_auth and self.username:
                    conn.login(self.username, self.password)
                conn.send_message(mime, from_addr=self.from_address, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"SMTP error: {exc}", code="smtp_error") from exc


def to_email_message(message: NormalizedMessage, from_address: str, from_name: str = "") -> EmailMessage:
    """Build the MIME message for SMTP. Bcc recipients are left out of the headers."""
    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_address)) if from_name else from_address
    msg["To"] = ", ".join(message.to)
    if message.cc:
        msg["Cc"] = ", ".join(message.cc)
    if message.subject:
        msg["Subject"] = message.subject
    if message.reply_to:
        msg["Reply-To"] = message.reply_to
    for name, value in message.headers:
        if name.lower() in ("from", "to", "subject"):
            continue
        msg[name] = value

    msg.set_content(message.body, subtype="html" if message.content_type == "html" else "plain")

    for attachment in message.attachments:
        msg.add_attachment(
            attachment.content,
            maintype=attachment.maintype,
            subtype=attachment.subtype,
            filename=attachment.filename,
        )
    return msg
