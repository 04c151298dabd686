import smtplib

import pytest

from mailrelay.credentials import SmtpSettings
from mailrelay.errors import TransportError
from mailrelay.message import NormalizedMessage
from mailrelay.transport import PASS_THROUGH, SmtpClient, SmtpTransport
from mailrelay.transport.smtp_transport import to_email_message


class FakeSMTP:
    instances: list = []

    def __init__(self, host, port, timeout=None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls: list = []
        self.sent: list = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def send_message(self, msg, from_addr=None, to_addrs=None):
        self.sent.append((msg, from_addr, to_addrs))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr("mailrelay.transport.smtp_transport.smtplib.SMTP", FakeSMTP)
    monkeypatch.setattr("mailrelay.transport.smtp_transport.smtplib.SMTP_SSL", FakeSMTP)
    return FakeSMTP


def make_message(**overrides) -> NormalizedMessage:
    fields = {
        "to": ["alice@example.com"],
        "subject": "Hello",
        "body": "hi there",
        "content_type": "text",
    }
    fields.update(overrides)
    return NormalizedMessage(**fields)


def test_configure_fills_client_from_settings():
    settings = SmtpSettings(
        host="smtp.example.com",
        port=587,
        username="user",
        password="hunter2",
        encryption="tls",
        from_address="noreply@example.com",
    )
    client = SmtpClient()

    SmtpTransport(settings, default_from_name="My Site").configure(client)

    assert client.host == "smtp.example.com"
    assert client.port == 587
    assert client.username == "user"
    assert client.password == "hunter2"
    assert client.secure == "starttls"
    assert client.smtp_auth is True
    assert client.from_name == "My Site"
    assert client.from_address == "noreply@example.com"


@pytest.mark.parametrize("encryption, secure", [("tls", "starttls"), ("ssl", "ssl"), ("none", "")])
def test_encryption_modes(encryption, secure):
    client = SmtpClient()

    SmtpTransport(SmtpSettings(host="smtp.example.com", encryption=encryption)).configure(client)

    assert client.secure == secure


def test_empty_sender_keeps_host_values():
    client = SmtpClient()
    client.from_address = "host@example.com"
    client.from_name = "Host"

    SmtpTransport(SmtpSettings(host="smtp.example.com")).configure(client)

    assert client.from_address == "host@example.com"
    assert client.from_name == "Host"


def test_deliver_passes_through_to_host():
    outcome = SmtpTransport(SmtpSettings()).deliver(make_message())

    assert outcome is PASS_THROUGH
    assert outcome.handled is False


def test_client_sends_with_starttls_and_login(fake_smtp):
    client = SmtpClient()
    SmtpTransport(
        SmtpSettings(
            host="smtp.example.com",
            username="user",
            password="hunter2",
            from_address="noreply@example.com",
        )
    ).configure(client)

    client.send(make_message(cc=["carol@example.com"], bcc=["dave@example.com"]))

    conn = fake_smtp.instances[0]
    assert (conn.host, conn.port) == ("smtp.example.com", 587)
    assert conn.calls == ["starttls", ("login", "user", "hunter2")]
    msg, from_addr, to_addrs = conn.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addrs == ["alice@example.com", "carol@example.com", "dave@example.com"]
    assert "Bcc" not in msg
    assert msg["Cc"] == "carol@example.com"


def test_client_wraps_smtp_errors(fake_smtp, monkeypatch):
    def failing_login(self, username, password):
        raise smtplib.SMTPAuthenticationError(535, b"Authentication failed")

    monkeypatch.setattr(FakeSMTP, "login", failing_login)
    client = SmtpClient()
    SmtpTransport(
        SmtpSettings(host="smtp.example.com", username="user", password="bad", from_address="noreply@example.com")
    ).configure(client)

    with pytest.raises(TransportError) as excinfo:
        client.send(make_message())
    assert excinfo.value.code == "smtp_error"


def test_client_requires_host():
    with pytest.raises(TransportError) as excinfo:
        SmtpClient().send(make_message())
    assert excinfo.value.code == "smtp_not_configured"


def test_mime_message_carries_reply_to_and_html():
    message = make_message(
        body="<p>hi</p>",
        content_type="html",
        reply_to="help@example.com",
        headers=[("X-Mailer", "host")],
    )

    msg = to_email_message(message, "noreply@example.com", "My Site")

    assert msg["From"] == "My Site <noreply@example.com>"
    assert msg["Reply-To"] == "help@example.com"
    assert msg["X-Mailer"] == "host"
    assert msg.get_content_type() == "text/html"
