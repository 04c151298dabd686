"""
Mail Transport Router: the entry point behind the host's generic send call.

The router is stateless per call. It reads the configuration fresh,
normalizes the request, lets the selected transport deliver it and records
the outcome in the audit log. Expected failures never escape: they come
back as a failed :class:`SendOutcome`, and each one is also in the log.
"""
from __future__ import annotations

from typing import Any

from mailrelay.auth.token_manager import OAuthTokenManager
from mailrelay.common.config import HTTP_TIMEOUT, TransportType
from mailrelay.credentials.store import ConfigStore
from mailrelay.errors import AuthorizationError, ConfigurationError, MailRelayError, ValidationError
from mailrelay.logging import get_logger
from mailrelay.logs.events import AuditTrail
from mailrelay.message.models import MailMessage, NormalizedMessage
from mailrelay.message.normalize import normalize_message, split_addresses
from mailrelay.transport.base import SendOutcome
from mailrelay.transport.factory import create_transport
from mailrelay.transport.smtp_transport import SmtpTransport

logger = get_logger(__name__)


class MailRouter:
    def __init__(
        self,
        config_store: ConfigStore,
        token_manager: OAuthTokenManager,
        audit: AuditTrail,
        *,
        placeholder_address: str | None = None,
        default_from_name: str | None = None,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        self._config_store = config_store
        self._token_manager = token_manager
        self._audit = audit
        self._placeholder_address = placeholder_address
        self._default_from_name = default_from_name
        self._timeout = timeout

    def route(self, message: MailMessage) -> SendOutcome:
        try:
            config = self._config_store.load_transport_config()
        except ConfigurationError as exc:
            # Transport unknown; report against the default.
            return self._fail("smtp", exc, message)
        transport_name: TransportType = config.transport

        try:
            normalized = normalize_message(message)
        except ValidationError as exc:
            logger.warning("Rejected message before sending: %s", exc)
            return self._fail(transport_name, exc, message)

        transport = create_transport(
            config,
            token_manager=self._token_manager,
            placeholder_address=self._placeholder_address,
            default_from_name=self._default_from_name,
            timeout=self._timeout,
        )
        try:
            outcome = transport.deliver(normalized)
        except MailRelayError as exc:
            logger.warning("Send via %s failed: %s", transport_name, exc)
            return self._fail(transport_name, exc, message, normalized)

        if not outcome.handled:
            return outcome

        self._audit.email_sent(
            to=normalized.to,
            subject=normalized.subject,
            transport=transport_name,
            cc=normalized.cc,
            bcc=normalized.bcc,
            attachments_count=len(normalized.attachments),
        )
        return outcome

    def intercept(self, message: MailMessage) -> bool | None:
        """
        Short-circuit hook for the host's mail function.

        Returns None when the host should send the message itself (SMTP),
        otherwise whether the message was sent.
        """
        outcome = self.route(message)
        if not outcome.handled:
            return None
        return outcome.ok

    def configure_smtp(self, client: Any) -> bool:
        """
        Called by the host right before its SMTP client sends.

        Returns False, leaving ``client`` untouched, when SMTP is not the
        active transport.
        """
        config = self._config_store.load_transport_config()
        if config.transport != "smtp":
            return False
        SmtpTransport(config.smtp, default_from_name=self._default_from_name).configure(client)
        return True

    def record_smtp_result(self, message: NormalizedMessage, error: MailRelayError | None = None) -> None:
        """Audit the result of a send the host performed over SMTP."""
        if error is None:
            self._audit.email_sent(
                to=message.to,
                subject=message.subject,
                transport="smtp",
                cc=message.cc,
                bcc=message.bcc,
                attachments_count=len(message.attachments),
            )
        else:
            self._audit.email_error(error, transport="smtp", to=message.to, subject=message.subject)

    def _fail(
        self,
        transport: TransportType,
        error: MailRelayError,
        message: MailMessage,
        normalized: NormalizedMessage | None = None,
    ) -> SendOutcome:
        to = normalized.to if normalized else _raw_recipients(message)
        subject = normalized.subject if normalized else (message.subject or "")
        if isinstance(error, AuthorizationError):
            self._audit.auth_error(
                error, recipient=", ".join(to), subject=subject, transport=transport
            )
        else:
            self._audit.email_error(error, transport=transport, to=to, subject=subject)
        return SendOutcome.failure(transport, error)


def _raw_recipients(message: MailMessage) -> list[str]:
    try:
        return split_addresses(message.to)
    except ValidationError:
        to = message.to
        return [to] if isinstance(to, str) else [str(a) for a in to or []]
