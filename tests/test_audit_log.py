import sqlite3
from datetime import date, datetime, timedelta, timezone

from mailrelay.errors import TransportError
from mailrelay.logs import AuditLogStore, AuditTrail, LogFilter

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_store(tmp_path, clock=None, **kwargs) -> AuditLogStore:
    return AuditLogStore(tmp_path / "audit.sqlite3", clock=clock or FakeClock(START), **kwargs)


def test_append_denormalizes_searchable_fields(tmp_path):
    store = make_store(tmp_path, actor=lambda: "admin")

    entry_id = store.append(
        "email_sent",
        "success",
        "Email sent",
        {"recipient": ["a@example.com", "b@example.com"], "subject": "Hi", "transport": "smtp"},
    )

    page = store.query()
    assert entry_id == page.entries[0].id
    entry = page.entries[0]
    assert entry.recipient == "a@example.com, b@example.com"
    assert entry.subject == "Hi"
    assert entry.transport == "smtp"
    assert entry.actor == "admin"
    assert entry.details["subject"] == "Hi"
    assert entry.created_at == START


def test_append_uses_active_transport_when_details_have_none(tmp_path):
    store = make_store(tmp_path, default_transport=lambda: "cloud_api")

    store.append("config_change", "info", "Configuration changed: transport")

    assert store.query().entries[0].transport == "cloud_api"


def test_append_failure_returns_none(tmp_path, monkeypatch):
    store = make_store(tmp_path)

    def broken_connect():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "_connect", broken_connect)

    assert store.append("email_sent", "success", "Email sent") is None


def test_query_filters_and_paginates(tmp_path):
    clock = FakeClock(START)
    store = make_store(tmp_path, clock=clock)
    for i in range(1, 6):
        store.append("email_sent", "success", f"e{i}", {"transport": "smtp"})
        clock.advance(minutes=1)
    store.append("email_error", "error", "failed", {"transport": "cloud_api"})

    page = store.query(LogFilter(type="email_sent"), page=2, page_size=2)
    assert [e.message for e in page.entries] == ["e3", "e2"]
    assert page.total_count == 5
    assert page.page_count == 3

    errors = store.query(LogFilter(level="error", transport="cloud_api"))
    assert [e.message for e in errors.entries] == ["failed"]

    oldest_first = store.query(order_by="id", order="asc", page_size=1)
    assert oldest_first.entries[0].message == "e1"

    bogus = store.query(order_by="message; DROP TABLE mailrelay_logs", order="sideways", page_size=1)
    assert bogus.entries[0].message == "failed"


def test_search_matches_message_recipient_and_subject(tmp_path):
    store = make_store(tmp_path)
    store.append("email_sent", "success", "100% delivered", {"recipient": "bob@example.com"})
    store.append("email_sent", "success", "1000 delivered", {"subject": "Quarterly report"})
    store.append("email_sent", "success", "sent", {"recipient": "alice@example.com"})

    assert [e.message for e in store.query(LogFilter(search="100%")).entries] == ["100% delivered"]
    assert [e.message for e in store.query(LogFilter(search="ALICE")).entries] == ["sent"]
    assert [e.message for e in store.query(LogFilter(search="quarterly")).entries] == [
        "1000 delivered"
    ]


def test_date_filters_cover_whole_days(tmp_path):
    clock = FakeClock(datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc))
    store = make_store(tmp_path, clock=clock)
    store.append("email_sent", "success", "first")
    clock.now = datetime(2026, 3, 11, 23, 59, 59, tzinfo=timezone.utc)
    store.append("email_sent", "success", "second")
    clock.now = datetime(2026, 3, 12, 0, 0, tzinfo=timezone.utc)
    store.append("email_sent", "success", "third")

    page = store.query(LogFilter(date_from=date(2026, 3, 10), date_to=date(2026, 3, 11)))

    assert sorted(e.message for e in page.entries) == ["first", "second"]


def test_prune_removes_entries_older_than_retention(tmp_path):
    clock = FakeClock(START)
    store = make_store(tmp_path, clock=clock)
    store.append("email_sent", "success", "old")
    clock.advance(days=30)
    store.append("email_sent", "success", "recent")

    clock.advance(days=60)
    # "old" is now exactly 90 days old.
    assert store.prune(90) == 0

    clock.advance(seconds=1)
    assert store.prune(90) == 1
    assert [e.message for e in store.query().entries] == ["recent"]


def test_stats_group_by_type_and_level(tmp_path):
    store = make_store(tmp_path)
    store.append("email_sent", "success", "a")
    store.append("email_sent", "success", "b")
    store.append("email_error", "error", "c")
    store.append("token_refresh", "error", "d")

    stats = store.stats()

    assert stats.total == 4
    assert stats.by_type == {"email_sent": 2, "email_error": 1, "token_refresh": 1}
    assert stats.by_level == {"success": 2, "error": 2}


def test_clear_all_and_iter_entries(tmp_path):
    clock = FakeClock(START)
    store = make_store(tmp_path, clock=clock)
    store.append("email_sent", "success", "a")
    clock.advance(seconds=1)
    store.append("email_sent", "success", "b")

    assert [e.message for e in store.iter_entries()] == ["a", "b"]
    assert store.clear_all() is True
    assert store.query().total_count == 0


def test_audit_trail_event_shapes(tmp_path):
    store = make_store(tmp_path)
    audit = AuditTrail(store)

    audit.email_sent(to=["a@example.com"], subject="Hi", transport="smtp", cc=["c@example.com"])
    audit.email_error(
        TransportError("Graph API error (HTTP 400): Bad", code="graph_api_error", status_code=400),
        transport="cloud_api",
        to=["a@example.com"],
        subject="Hi",
    )
    audit.config_change("cloud_api.client_secret", "********", "********")
    audit.test_email("a@example.com", transport="smtp", success=False, error_message="boom")

    entries = {e.type: e for e in store.iter_entries()}

    assert entries["email_sent"].message == "Email sent successfully to a@example.com"
    assert entries["email_sent"].details["cc"] == "c@example.com"
    error = entries["email_error"]
    assert error.level == "error"
    assert error.details["error_code"] == "graph_api_error"
    assert error.details["status_code"] == 400
    assert error.recipient == "a@example.com"
    assert error.transport == "cloud_api"
    assert entries["config_change"].details["new_value"] == "********"
    assert entries["test_email"].message == "Test email failed to a@example.com: boom"
