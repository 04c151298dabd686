from __future__ import annotations

from mailrelay.auth.token_manager import OAuthTokenManager
from mailrelay.common.config import HTTP_TIMEOUT
from mailrelay.credentials.models import TransportConfig
from mailrelay.errors import ConfigurationError
from mailrelay.transport.base import Transport
from mailrelay.transport.graph_transport import CloudApiTransport
from mailrelay.transport.smtp_transport import SmtpTransport


def create_transport(
    config: TransportConfig,
    *,
    token_manager: OAuthTokenManager,
    placeholder_address: str | None = None,
    default_from_name: str | None = None,
    timeout: float = HTTP_TIMEOUT,
) -> Transport:
    if config.transport == "smtp":
        return SmtpTransport(config.smtp, default_from_name=default_from_name)
    if config.transport == "cloud_api":
        return CloudApiTransport(
            config.cloud_api,
            token_manager,
            placeholder_address=placeholder_address,
            default_from_name=default_from_name,
            timeout=timeout,
        )
    raise ConfigurationError(f"Unknown transport: {config.transport}", code="invalid_transport")
