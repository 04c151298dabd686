from __future__ import annotations

from typing import Literal

TransportType = Literal["smtp", "cloud_api"]
SmtpEncryption = Literal["tls", "ssl", "none"]

LogType = Literal[
    "email_sent",
    "email_error",
    "auth_success",
    "auth_error",
    "config_change",
    "test_email",
    "token_refresh",
]
LogLevel = Literal["info", "success", "warning", "error"]

APP_NAME = "mailrelay"

HTTP_TIMEOUT = 30
TOKEN_EXPIRY_MARGIN = 300  # seconds subtracted from the provider's expires_in
OAUTH_STATE_TTL = 600
DEFAULT_RETENTION_DAYS = 90
