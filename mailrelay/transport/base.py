from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from mailrelay.common.config import TransportType
from mailrelay.errors import MailRelayError
from mailrelay.message.models import NormalizedMessage


@dataclass(frozen=True, slots=True)
class SendOutcome:
    ok: bool
    transport: TransportType
    # False means the host's own mailer should go ahead with the send.
    handled: bool = True
    error: MailRelayError | None = None

    @classmethod
    def success(cls, transport: TransportType) -> "SendOutcome":
        return cls(ok=True, transport=transport)

    @classmethod
    def failure(cls, transport: TransportType, error: MailRelayError) -> "SendOutcome":
        return cls(ok=False, transport=transport, error=error)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None


PASS_THROUGH = SendOutcome(ok=True, transport="smtp", handled=False)


class Transport(ABC):
    """One way of delivering a normalized message."""

    name: TransportType

    @abstractmethod
    def deliver(self, message: NormalizedMessage) -> SendOutcome:
        """
        Deliver ``message`` or hand it back to the host.

        Expected failures are raised as :class:`MailRelayError` subclasses;
        the router turns them into a failed :class:`SendOutcome`.
        """
