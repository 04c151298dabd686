"""
Error taxonomy shared by the vault, token manager, transports and router.

Every error carries a short machine-readable ``code`` next to the
human-readable message so the router can record both in the audit log.
"""
from __future__ import annotations


class MailRelayError(Exception):
    default_code = "mailrelay_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return self.message


class ConfigurationError(MailRelayError):
    default_code = "configuration_error"


class AuthorizationError(MailRelayError):
    default_code = "not_authorized"


class TokenRefreshError(MailRelayError):
    default_code = "token_refresh_failed"


class TransportError(MailRelayError):
    default_code = "transport_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class ValidationError(MailRelayError):
    default_code = "invalid_message"
