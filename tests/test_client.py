from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from mailrelay import MailMessage, MailRelay
from mailrelay.credentials import MemoryKeyValueStore, TokenState
from mailrelay.credentials.vault import CONFIG_RECORD, KEY_MATERIAL_NAMES, TOKEN_RECORD
from mailrelay.errors import ConfigurationError, TransportError
from mailrelay.logs import LogFilter

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
SECRETS = {"AUTH_KEY": "auth-key-material", "SECURE_AUTH_KEY": "secure-auth-key"}


class DummyResponse:
    def __init__(self, status_code: int = 200, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def json(self):
        return self._payload


class FakeSmtpClient:
    """Records what the relay configured and sent instead of talking SMTP."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list = []

    def send(self, message) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(message)


def make_relay(tmp_path, *, kv=None, secrets=SECRETS, smtp_client=None) -> MailRelay:
    return MailRelay(
        kv_store=kv if kv is not None else MemoryKeyValueStore(),
        audit_db=tmp_path / "audit.sqlite3",
        host_secrets=secrets,
        use_keyring=False,
        redirect_uri="https://host.example.com/oauth/callback",
        placeholder_address="wordpress@example.com",
        site_name="My Site",
        clock=lambda: START,
        smtp_client_factory=lambda: smtp_client or FakeSmtpClient(),
    )


def smtp_settings(**overrides) -> dict:
    settings = {
        "host": "smtp.example.com",
        "port": 465,
        "username": "user",
        "password": "hunter2",
        "encryption": "ssl",
        "from_address": "noreply@example.com",
    }
    settings.update(overrides)
    return settings


def cloud_settings(**overrides) -> dict:
    settings = {
        "client_id": "client-1",
        "tenant_id": "tenant-1",
        "client_secret": "secret-1",
        "from_address": "sender@example.com",
    }
    settings.update(overrides)
    return settings


def test_update_config_merges_and_audits_changes(tmp_path):
    relay = make_relay(tmp_path)

    config = relay.update_config(smtp=smtp_settings())
    relay.update_config({"smtp": {"port": "587", "encryption": "tls"}})

    assert config.smtp.host == "smtp.example.com"
    loaded = relay.load_config()
    assert (loaded.smtp.port, loaded.smtp.encryption, loaded.smtp.password) == (587, "tls", "hunter2")

    changes = {
        e.details["setting"]: e.details
        for e in relay.query_logs(
            LogFilter(type="config_change"), page_size=100, order_by="id", order="asc"
        ).entries
    }
    assert changes["smtp.password"]["new_value"] == "********"
    assert changes["smtp.port"]["new_value"] == "587"
    assert "hunter2" not in str(changes)


def test_changing_oauth_credentials_revokes_and_notifies(tmp_path):
    relay = make_relay(tmp_path)
    relay.update_config(transport="cloud_api", cloud_api=cloud_settings())
    relay.config_store.save_tokens(TokenState("at", "rt", START + timedelta(hours=1)))
    relay.pop_notices()

    relay.update_config(cloud_api={"client_secret": "secret-2"})

    assert relay.authorization_state() == "unauthorized"
    entry = relay.query_logs(LogFilter(type="config_change")).entries[0]
    assert entry.details["setting"] == "Microsoft OAuth - client_secret"
    assert entry.details["old_value"] == entry.details["new_value"] == "********"
    assert relay.pop_notices()[0]["type"] == "error"


def test_encryption_toggle_migrates_stored_secrets(tmp_path):
    kv = MemoryKeyValueStore()
    relay = make_relay(tmp_path, kv=kv)
    relay.update_config(smtp=smtp_settings())
    relay.config_store.save_tokens(TokenState("at", "rt", None))

    assert relay.set_encryption(True) is True
    raw = kv.get(CONFIG_RECORD)
    assert raw["smtp"]["password"] != "hunter2"
    assert kv.get(TOKEN_RECORD)["refresh_token"] != "rt"
    assert relay.load_config().smtp.password == "hunter2"

    # A second relay over the same store picks the flag up.
    other = make_relay(tmp_path, kv=kv)
    assert other.load_config().smtp.password == "hunter2"

    assert relay.set_encryption(False) is True
    assert kv.get(CONFIG_RECORD)["smtp"]["password"] == "hunter2"
    assert kv.get("encryption_enabled") is False


class FailingTokenWrites(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def set(self, key, value) -> None:
        if self.fail and key == TOKEN_RECORD:
            raise OSError("disk full")
        super().set(key, value)


def test_failed_encryption_migration_keeps_secrets_readable(tmp_path):
    kv = FailingTokenWrites()
    relay = make_relay(tmp_path, kv=kv)
    relay.update_config(smtp=smtp_settings())
    relay.config_store.save_tokens(TokenState("at", "rt", None))
    kv.fail = True

    with pytest.raises(OSError):
        relay.set_encryption(True)

    assert kv.get("encryption_enabled") is True
    assert relay.vault.enabled is True

    relay.update_config(smtp={"password": "newpw"})
    restarted = make_relay(tmp_path, kv=kv)
    assert restarted.load_config().smtp.password == "newpw"
    assert restarted.config_store.load_tokens().refresh_token == "rt"


def test_encryption_needs_host_secrets(tmp_path, monkeypatch):
    for name in KEY_MATERIAL_NAMES:
        monkeypatch.delenv(f"MAILRELAY_{name}", raising=False)
    relay = make_relay(tmp_path, secrets={})

    with pytest.raises(ConfigurationError):
        relay.set_encryption(True)


def test_smtp_send_configures_client_without_writing_back(tmp_path):
    kv = MemoryKeyValueStore()
    client = FakeSmtpClient()
    relay = make_relay(tmp_path, kv=kv, smtp_client=client)
    relay.update_config(smtp=smtp_settings())
    relay.set_encryption(True)
    stored = kv.snapshot()

    outcome = relay.send(MailMessage(to="alice@example.com", subject="Hi", body="Hello"))

    assert outcome.ok is True
    assert outcome.transport == "smtp"
    assert client.host == "smtp.example.com"
    assert client.port == 465
    assert client.secure == "ssl"
    assert client.password == "hunter2"
    assert client.from_name == "My Site"
    assert client.sent[0].to == ["alice@example.com"]
    assert kv.snapshot() == stored

    entry = relay.query_logs(LogFilter(type="email_sent")).entries[0]
    assert (entry.recipient, entry.transport) == ("alice@example.com", "smtp")


def test_smtp_failure_is_logged(tmp_path):
    client = FakeSmtpClient(error=TransportError("SMTP error: refused", code="smtp_error"))
    relay = make_relay(tmp_path, smtp_client=client)
    relay.update_config(smtp=smtp_settings())

    outcome = relay.send(MailMessage(to="alice@example.com", subject="Hi"))

    assert outcome.ok is False
    assert outcome.error_code == "smtp_error"
    entry = relay.query_logs(LogFilter(type="email_error")).entries[0]
    assert entry.recipient == "alice@example.com"
    assert entry.transport == "smtp"


def test_authorization_round_trip(tmp_path, monkeypatch):
    relay = make_relay(tmp_path)
    relay.update_config(transport="cloud_api", cloud_api=cloud_settings())
    relay.pop_notices()

    monkeypatch.setattr(
        "mailrelay.auth.token_manager.requests.post",
        lambda *a, **k: DummyResponse(200, {"access_token": "at", "refresh_token": "rt", "expires_in": 3600}),
    )

    url = relay.begin_authorization()
    state = parse_qs(urlparse(url).query)["state"][0]

    assert relay.complete_authorization({"code": "auth-code", "state": state}) is True
    assert relay.authorization_state() == "authorized"
    assert relay.pop_notices() == [{"message": "Authorization successful!", "type": "success"}]
    assert relay.pop_notices() == []
    assert relay.query_logs(LogFilter(type="auth_success")).total_count == 1


def test_provider_error_on_callback(tmp_path):
    relay = make_relay(tmp_path)
    relay.update_config(transport="cloud_api", cloud_api=cloud_settings())
    relay.begin_authorization()

    ok = relay.complete_authorization({"error": "access_denied", "error_description": "User declined"})

    assert ok is False
    assert relay.config_store.kv.get("oauth_state") is None
    entry = relay.query_logs(LogFilter(type="auth_error")).entries[0]
    assert entry.details["error_code"] == "access_denied"
    assert "User declined" in entry.message


def test_change_account_revokes_and_prompts(tmp_path):
    relay = make_relay(tmp_path)
    relay.update_config(transport="cloud_api", cloud_api=cloud_settings())
    relay.config_store.save_tokens(TokenState("at", "rt", None))

    url = relay.change_account()

    assert relay.authorization_state() == "unauthorized"
    assert parse_qs(urlparse(url).query)["prompt"] == ["select_account"]


def test_revoke_authorization(tmp_path):
    relay = make_relay(tmp_path)
    relay.config_store.save_tokens(TokenState("at", "rt", None))

    assert relay.revoke_authorization() is True
    assert relay.pop_notices()[0]["message"] == "Authorization revoked successfully."


def test_test_email_requires_configured_transport(tmp_path):
    client = FakeSmtpClient()
    relay = make_relay(tmp_path, smtp_client=client)

    outcome = relay.send_test_email("admin@example.com")

    assert outcome.ok is False
    assert client.sent == []
    entry = relay.query_logs(LogFilter(type="test_email")).entries[0]
    assert entry.level == "error"
    assert "SMTP host not configured" in entry.message


def test_test_email_over_smtp(tmp_path):
    client = FakeSmtpClient()
    relay = make_relay(tmp_path, smtp_client=client)
    relay.update_config(smtp=smtp_settings())

    outcome = relay.send_test_email("admin@example.com")

    assert outcome.ok is True
    sent = client.sent[0]
    assert sent.subject == "Test email via mailrelay"
    assert sent.content_type == "html"
    stats = relay.log_stats()
    assert stats.by_type["test_email"] == 1
    assert stats.by_type["email_sent"] == 1


def test_log_maintenance(tmp_path):
    relay = make_relay(tmp_path)
    relay.update_config(smtp=smtp_settings())

    assert relay.prune_logs(90) == 0
    assert relay.clear_logs() is True
    assert relay.query_logs().total_count == 0
