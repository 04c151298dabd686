from __future__ import annotations

from typing import Any, Iterable

from mailrelay.errors import MailRelayError
from mailrelay.logs.store import AuditLogStore

OAUTH_AUTH_TYPE = "Microsoft OAuth"


class AuditTrail:
    """Formats each kind of audit event and hands it to the log store."""

    def __init__(self, store: AuditLogStore) -> None:
        self.store = store

    def email_sent(
        self,
        *,
        to: Iterable[str],
        subject: str,
        transport: str,
        cc: Iterable[str] = (),
        bcc: Iterable[str] = (),
        attachments_count: int = 0,
    ) -> int | None:
        recipient = ", ".join(to)
        details = {
            "recipient": recipient,
            "subject": subject,
            "transport": transport,
            "cc": ", ".join(cc),
            "bcc": ", ".join(bcc),
            "attachments_count": attachments_count,
        }
        return self.store.append(
            "email_sent", "success", f"Email sent successfully to {recipient}", details
        )

    def email_error(
        self,
        error: MailRelayError | str,
        *,
        transport: str,
        to: Iterable[str] | None = None,
        subject: str | None = None,
    ) -> int | None:
        message = str(error)
        details: dict[str, Any] = {"error_message": message, "transport": transport}
        if isinstance(error, MailRelayError):
            details["error_code"] = error.code
            status_code = getattr(error, "status_code", None)
            if status_code is not None:
                details["status_code"] = status_code
        if to is not None:
            details["recipient"] = ", ".join(to)
        if subject is not None:
            details["subject"] = subject
        return self.store.append("email_error", "error", f"Email sending failed: {message}", details)

    def auth_success(self, auth_type: str = OAUTH_AUTH_TYPE) -> int | None:
        return self.store.append(
            "auth_success",
            "success",
            f"Authentication successful for {auth_type}",
            {"auth_type": auth_type},
        )

    def auth_error(
        self,
        error: MailRelayError | str,
        *,
        auth_type: str = OAUTH_AUTH_TYPE,
        **context: Any,
    ) -> int | None:
        details: dict[str, Any] = {"auth_type": auth_type, "error_message": str(error), **context}
        if isinstance(error, MailRelayError):
            details["error_code"] = error.code
        return self.store.append(
            "auth_error", "error", f"Authentication failed for {auth_type}: {error}", details
        )

    def config_change(self, setting: str, old_value: str, new_value: str) -> int | None:
        return self.store.append(
            "config_change",
            "info",
            f"Configuration changed: {setting}",
            {"setting": setting, "old_value": old_value, "new_value": new_value},
        )

    def test_email(
        self,
        to: str,
        *,
        transport: str,
        success: bool,
        error_message: str = "",
    ) -> int | None:
        details: dict[str, Any] = {"recipient": to, "transport": transport}
        if success:
            return self.store.append(
                "test_email", "success", f"Test email sent successfully to {to}", details
            )
        details["error_message"] = error_message
        return self.store.append(
            "test_email", "error", f"Test email failed to {to}: {error_message}", details
        )

    def token_refresh(self, success: bool, error_message: str = "") -> int | None:
        details: dict[str, Any] = {"auth_type": OAUTH_AUTH_TYPE, "transport": "cloud_api"}
        if success:
            return self.store.append(
                "token_refresh", "success", "Access token refreshed successfully", details
            )
        details["error_message"] = error_message
        return self.store.append(
            "token_refresh", "error", f"Token refresh failed: {error_message}", details
        )
