from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, get_args

from mailrelay.common.config import SmtpEncryption, TransportType
from mailrelay.errors import ConfigurationError

CONFIG_VERSION = 1

# Fields whose change invalidates stored OAuth tokens.
AUTH_BINDING_FIELDS = ("client_id", "tenant_id", "client_secret", "redirect_uri")


@dataclass(slots=True)
class SmtpSettings:
    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    encryption: SmtpEncryption = "tls"
    from_name: str = ""
    from_address: str = ""

    def __post_init__(self) -> None:
        if self.encryption not in get_args(SmtpEncryption):
            raise ConfigurationError(
                f"Invalid SMTP encryption mode: {self.encryption!r}",
                code="invalid_encryption",
            )
        try:
            port = int(self.port)
        except (TypeError, ValueError):
            port = 0
        if not 0 < port < 65536:
            raise ConfigurationError(f"Invalid SMTP port: {self.port}", code="invalid_port")
        self.port = port


@dataclass(slots=True)
class CloudApiSettings:
    # App registration
    client_id: str = ""
    tenant_id: str = ""
    client_secret: str = ""
    redirect_uri: str | None = None

    # Sender identity
    from_address: str = ""
    from_name: str = ""

    def binding(self) -> tuple[str, str, str, str | None]:
        """The credential tuple that issued tokens are bound to."""
        return tuple(getattr(self, name) for name in AUTH_BINDING_FIELDS)  # type: ignore[return-value]


@dataclass(slots=True)
class TransportConfig:
    transport: TransportType = "smtp"
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    cloud_api: CloudApiSettings = field(default_factory=CloudApiSettings)

    def __post_init__(self) -> None:
        if self.transport not in get_args(TransportType):
            raise ConfigurationError(
                f"Invalid transport: {self.transport!r}",
                code="invalid_transport",
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "TransportConfig":
        if not data:
            return cls()

        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            raise ConfigurationError(
                f"Unsupported configuration version: {version}",
                code="unsupported_version",
            )

        smtp_data = dict(data.get("smtp") or {})
        cloud_data = dict(data.get("cloud_api") or {})
        try:
            smtp = SmtpSettings(**_known_fields(SmtpSettings, smtp_data))
            cloud_api = CloudApiSettings(**_known_fields(CloudApiSettings, cloud_data))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration record: {exc}") from exc

        return cls(
            transport=data.get("transport") or "smtp",
            smtp=smtp,
            cloud_api=cloud_api,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": CONFIG_VERSION,
            "transport": self.transport,
            "smtp": asdict(self.smtp),
            "cloud_api": asdict(self.cloud_api),
        }


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@dataclass(slots=True)
class TokenState:
    access_token: str
    refresh_token: str = ""
    # Already includes the safety margin.
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return _as_utc(now) >= _as_utc(self.expires_at)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "TokenState | None":
        if not data or not data.get("access_token"):
            return None
        expires_at = data.get("expires_at")
        parsed: datetime | None = None
        if isinstance(expires_at, str):
            try:
                parsed = datetime.fromisoformat(expires_at)
            except ValueError:
                parsed = None
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=_as_utc(parsed) if parsed is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = set(cls.__dataclass_fields__)
    return {key: value for key, value in data.items() if key in names}
