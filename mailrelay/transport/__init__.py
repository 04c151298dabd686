from .base import PASS_THROUGH, SendOutcome, Transport
from .factory import create_transport
from .graph_transport import CloudApiTransport
from .smtp_transport import SmtpClient, SmtpTransport

__all__ = [
    "PASS_THROUGH",
    "CloudApiTransport",
    "SendOutcome",
    "SmtpClient",
    "SmtpTransport",
    "Transport",
    "create_transport",
]
