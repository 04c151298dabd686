from .client import MailRelay
from .errors import (
    AuthorizationError,
    ConfigurationError,
    MailRelayError,
    TokenRefreshError,
    TransportError,
    ValidationError,
)
from .logging import configure_logging
from .message import Attachment, MailMessage
from .transport import SendOutcome

__all__ = [
    "Attachment",
    "AuthorizationError",
    "ConfigurationError",
    "MailMessage",
    "MailRelay",
    "MailRelayError",
    "SendOutcome",
    "TokenRefreshError",
    "TransportError",
    "ValidationError",
    "configure_logging",
]
