from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from mailrelay.credentials.models import AUTH_BINDING_FIELDS, TokenState, TransportConfig
from mailrelay.credentials.vault import CONFIG_RECORD, TOKEN_RECORD, CredentialVault
from mailrelay.logging import get_logger

logger = get_logger(__name__)

STATE_RECORD = "oauth_state"
ENCRYPTION_FLAG = "encryption_enabled"
NOTICES_RECORD = "notices"

SENSITIVE_SETTINGS = {"smtp.password", "cloud_api.client_secret"}


class KeyValueStore(Protocol):
    """Host-supplied persistence. Values are JSON-compatible."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._data.get(key, default))

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class JsonFileKeyValueStore:
    """
    Key/value store kept in a single JSON file.

    Every read goes to disk so separate processes see each other's writes;
    concurrent writers are last-writer-wins.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Settings file %s is not valid JSON; ignoring it.", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".settings-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        try:
            os.chmod(self._path, 0o600)
        except OSError:
            logger.debug("Could not restrict permissions on %s", self._path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


@dataclass(slots=True)
class ConfigChange:
    # (setting, old, new); sensitive values are masked.
    changes: list[tuple[str, str, str]] = field(default_factory=list)
    tokens_revoked: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


class ConfigStore:
    """
    Typed access to the persisted TransportConfig and OAuth token state.

    Sensitive fields go through the vault on every read and write; callers
    only ever see plaintext. Tokens are bound to the credentials that issued
    them: saving a config whose client id, tenant id, client secret or
    redirect URI differs from the stored one deletes the tokens.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        vault: CredentialVault,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.kv = kv
        self.vault = vault
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # -------------
    # Transport config
    # -------------
    def load_transport_config(self) -> TransportConfig:
        raw = self.kv.get(CONFIG_RECORD)
        if not isinstance(raw, dict):
            return TransportConfig()
        return TransportConfig.from_dict(self.vault.decrypt_fields(CONFIG_RECORD, raw))

    def save_transport_config(self, config: TransportConfig) -> ConfigChange:
        previous = self.load_transport_config()
        change = ConfigChange(changes=_diff(previous, config))

        record = self.vault.encrypt_fields(CONFIG_RECORD, config.to_dict())
        self.kv.set(CONFIG_RECORD, record)

        if previous.cloud_api.binding() != config.cloud_api.binding():
            change.tokens_revoked = self.clear_tokens()
            if change.tokens_revoked:
                logger.info("OAuth credentials changed; stored tokens revoked.")
        return change

    # -------------
    # OAuth tokens
    # -------------
    def load_tokens(self) -> TokenState | None:
        raw = self.kv.get(TOKEN_RECORD)
        if not isinstance(raw, dict):
            return None
        return TokenState.from_dict(self.vault.decrypt_fields(TOKEN_RECORD, raw))

    def save_tokens(self, tokens: TokenState) -> None:
        self.kv.set(TOKEN_RECORD, self.vault.encrypt_fields(TOKEN_RECORD, tokens.to_dict()))

    def clear_tokens(self) -> bool:
        existed = self.kv.get(TOKEN_RECORD) is not None
        self.kv.delete(TOKEN_RECORD)
        return existed

    # -------------
    # Anti-forgery state
    # -------------
    def save_oauth_state(self, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock().timestamp() + ttl_seconds
        self.kv.set(STATE_RECORD, {"value": value, "expires_at": expires_at})

    def pop_oauth_state(self) -> str | None:
        """Return the pending state value if still valid; the record is consumed either way."""
        raw = self.kv.get(STATE_RECORD)
        self.kv.delete(STATE_RECORD)
        if not isinstance(raw, dict):
            return None
        if self._clock().timestamp() >= float(raw.get("expires_at") or 0):
            return None
        return raw.get("value") or None

    # -------------
    # Encryption flag
    # -------------
    @property
    def encryption_enabled(self) -> bool:
        return bool(self.kv.get(ENCRYPTION_FLAG, False))

    @encryption_enabled.setter
    def encryption_enabled(self, enabled: bool) -> None:
        self.kv.set(ENCRYPTION_FLAG, bool(enabled))

    # -------------
    # One-shot notices
    # -------------
    def push_notice(self, message: str, kind: str = "success") -> None:
        notices = list(self.kv.get(NOTICES_RECORD) or [])
        notices.append({"message": message, "type": kind})
        self.kv.set(NOTICES_RECORD, notices)

    def pop_notices(self) -> list[dict[str, str]]:
        notices = list(self.kv.get(NOTICES_RECORD) or [])
        self.kv.delete(NOTICES_RECORD)
        return notices


def _diff(old: TransportConfig, new: TransportConfig) -> list[tuple[str, str, str]]:
    old_flat = _flatten(old.to_dict())
    new_flat = _flatten(new.to_dict())
    changes: list[tuple[str, str, str]] = []
    for key in sorted(set(old_flat) | set(new_flat)):
        before, after = old_flat.get(key), new_flat.get(key)
        if before == after:
            continue
        if key in SENSITIVE_SETTINGS:
            changes.append((key, _mask(before), _mask(after)))
        else:
            changes.append((key, _text(before), _text(after)))
    return changes


def _flatten(record: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{name}."))
        elif name != "version":
            flat[name] = value
    return flat


def _mask(value: Any) -> str:
    return "********" if value else ""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def is_auth_binding_setting(setting: str) -> bool:
    return setting.startswith("cloud_api.") and setting.split(".", 1)[1] in AUTH_BINDING_FIELDS
