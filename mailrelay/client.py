from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from mailrelay.auth import OAuthTokenManager
from mailrelay.common.config import DEFAULT_RETENTION_DAYS, HTTP_TIMEOUT
from mailrelay.credentials import (
    CloudApiSettings,
    ConfigStore,
    CredentialVault,
    JsonFileKeyValueStore,
    KeyValueStore,
    SmtpSettings,
    TransportConfig,
    load_host_secrets,
)
from mailrelay.credentials.store import ENCRYPTION_FLAG, is_auth_binding_setting
from mailrelay.errors import AuthorizationError, ConfigurationError, MailRelayError
from mailrelay.logging import get_logger
from mailrelay.logs import AuditLogStore, AuditTrail, LogFilter, LogPage, LogStats
from mailrelay.logs.events import OAUTH_AUTH_TYPE
from mailrelay.message import MailMessage, normalize_message
from mailrelay.router import MailRouter
from mailrelay.runtime.context import get_runtime_context
from mailrelay.runtime.paths import resolve_paths
from mailrelay.transport import SendOutcome, SmtpClient

logger = get_logger(__name__)

DEFAULT_TEST_SUBJECT = "Test email via mailrelay"
TEST_EMAIL_BODY = (
    "<p>This is a test email sent via mailrelay. If you receive this email, "
    "the configuration is working correctly.</p>"
    "<p>Please verify the sender address to ensure it matches your expected configuration.</p>"
)


class MailRelay:
    """
    Host-facing entry point.

    Builds the vault, the settings and audit stores, the token manager and
    the router once; every send and admin operation goes through here.
    Settings default to a JSON file and the audit log to a SQLite file in
    the per-user directories; pass ``kv_store`` / ``audit_db`` to keep them
    somewhere else.
    """

    def __init__(
        self,
        *,
        kv_store: KeyValueStore | None = None,
        audit_db: Path | str | None = None,
        host_secrets: Mapping[str, str] | None = None,
        use_keyring: bool = True,
        redirect_uri: str | None = None,
        placeholder_address: str | None = None,
        site_name: str | None = None,
        actor: Callable[[], str | None] | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float = HTTP_TIMEOUT,
        smtp_client_factory: Callable[[], Any] | None = None,
    ) -> None:
        if kv_store is None or audit_db is None:
            paths = resolve_paths(get_runtime_context()).ensure()
            kv_store = kv_store if kv_store is not None else JsonFileKeyValueStore(paths.config_file)
            audit_db = audit_db if audit_db is not None else paths.audit_db

        vault = CredentialVault(
            load_host_secrets(host_secrets, use_keyring=use_keyring),
            enabled=bool(kv_store.get(ENCRYPTION_FLAG, False)),
        )
        self.config_store = ConfigStore(kv_store, vault, clock=clock)
        self.audit_store = AuditLogStore(
            audit_db, clock=clock, actor=actor, default_transport=self._active_transport
        )
        self.audit = AuditTrail(self.audit_store)
        self.token_manager = OAuthTokenManager(
            self.config_store,
            default_redirect_uri=redirect_uri,
            clock=clock,
            timeout=timeout,
            on_refresh=self.audit.token_refresh,
        )
        self.router = MailRouter(
            self.config_store,
            self.token_manager,
            self.audit,
            placeholder_address=placeholder_address,
            default_from_name=site_name,
            timeout=timeout,
        )
        self._smtp_client_factory = smtp_client_factory or (lambda: SmtpClient(timeout=timeout))

    @property
    def vault(self) -> CredentialVault:
        return self.config_store.vault

    # -------------
    # Sending
    # -------------
    def send(self, message: MailMessage) -> SendOutcome:
        """
        Send ``message`` through the active transport.

        When SMTP is active the router hands the message back; it is then
        sent with an SMTP client configured from the stored settings.
        """
        outcome = self.router.route(message)
        if outcome.handled:
            return outcome

        normalized = normalize_message(message)
        client = self._smtp_client_factory()
        self.router.configure_smtp(client)
        try:
            client.send(normalized)
        except MailRelayError as exc:
            logger.warning("SMTP send failed: %s", exc)
            self.router.record_smtp_result(normalized, exc)
            return SendOutcome.failure("smtp", exc)
        self.router.record_smtp_result(normalized)
        return SendOutcome.success("smtp")

    def intercept(self, message: MailMessage) -> bool | None:
        return self.router.intercept(message)

    def configure_smtp(self, client: Any) -> bool:
        return self.router.configure_smtp(client)

    def send_test_email(self, to: str, subject: str | None = None) -> SendOutcome:
        config = self.load_config()
        transport = config.transport
        try:
            self._check_ready(config)
        except MailRelayError as exc:
            self.audit.test_email(to, transport=transport, success=False, error_message=str(exc))
            return SendOutcome.failure(transport, exc)

        outcome = self.send(
            MailMessage(
                to=to,
                subject=subject or DEFAULT_TEST_SUBJECT,
                body=TEST_EMAIL_BODY,
                headers=["Content-Type: text/html; charset=UTF-8"],
            )
        )
        self.audit.test_email(
            to,
            transport=transport,
            success=outcome.ok,
            error_message="" if outcome.ok else str(outcome.error),
        )
        return outcome

    def _check_ready(self, config: TransportConfig) -> None:
        if config.transport == "smtp":
            if not config.smtp.host:
                raise ConfigurationError(
                    "SMTP host not configured. Please configure your SMTP settings first.",
                    code="not_configured",
                )
            return
        if not self.token_manager.is_configured(config.cloud_api):
            raise ConfigurationError(
                "Microsoft Graph OAuth not configured. Please configure your Microsoft Graph settings first.",
                code="not_configured",
            )
        if not self.token_manager.is_authorized():
            raise AuthorizationError(
                "Microsoft Graph OAuth not authorized. Please authorize the application first.",
                code="not_authorized",
            )

    # -------------
    # Configuration
    # -------------
    def load_config(self) -> TransportConfig:
        return self.config_store.load_transport_config()

    def update_config(
        self, config: TransportConfig | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> TransportConfig:
        """
        Save a new configuration.

        Accepts a full :class:`TransportConfig`, or a partial mapping /
        keyword arguments (``transport``, ``smtp``, ``cloud_api``) merged onto
        the stored one. Each changed setting is audited; changing the OAuth
        app credentials revokes the stored tokens.
        """
        if isinstance(config, TransportConfig):
            new_config = config
        else:
            data: dict[str, Any] = {}
            if config:
                data.update(config)
            data.update(kwargs)
            new_config = self._merge_config(self.load_config(), data)

        change = self.config_store.save_transport_config(new_config)
        for setting, old_value, new_value in change.changes:
            label = (
                f"{OAUTH_AUTH_TYPE} - {setting.split('.', 1)[1]}"
                if is_auth_binding_setting(setting)
                else setting
            )
            self.audit.config_change(label, old_value, new_value)
        if change.tokens_revoked:
            self.config_store.push_notice(
                "OAuth settings changed. Please authorize the application again.", "error"
            )
        return new_config

    def _merge_config(self, current: TransportConfig, data: Mapping[str, Any]) -> TransportConfig:
        record = current.to_dict()
        if "transport" in data and data["transport"] is not None:
            record["transport"] = data["transport"]
        for section, settings_cls in (("smtp", SmtpSettings), ("cloud_api", CloudApiSettings)):
            update = data.get(section)
            if update is None:
                continue
            if isinstance(update, settings_cls):
                record[section] = asdict(update)
            else:
                record[section].update(dict(update))
        return TransportConfig.from_dict(record)

    def set_encryption(self, enabled: bool) -> bool:
        """
        Turn at-rest encryption on or off and migrate the stored secrets.

        Returns True if any stored field was rewritten.
        """
        vault = self.vault
        before = self.config_store.encryption_enabled
        if enabled and not vault.is_available():
            raise ConfigurationError(
                "No host secret material available; cannot enable encryption.",
                code="encryption_unavailable",
            )
        try:
            if enabled:
                # Persist the flag before any ciphertext is written.
                self.config_store.encryption_enabled = True
                vault.enabled = True
                migrated = vault.migrate(self.config_store.kv, "to_encrypted")
            else:
                # Decrypting needs the key switched on.
                vault.enabled = True
                migrated = vault.migrate(self.config_store.kv, "to_unencrypted")
                self.config_store.encryption_enabled = False
        finally:
            vault.enabled = self.config_store.encryption_enabled

        if before != enabled:
            self.audit.config_change("encryption_enabled", str(before).lower(), str(enabled).lower())
        return migrated

    # -------------
    # Authorization
    # -------------
    def authorization_state(self) -> str:
        return self.token_manager.state()

    def begin_authorization(self) -> str:
        """Return the URL to send the administrator's browser to."""
        return self.token_manager.authorization_url()

    def complete_authorization(self, params: Mapping[str, str]) -> bool:
        """
        Handle the provider's redirect back to the host.

        ``params`` is the callback query: ``code`` and ``state``, or
        ``error`` and ``error_description``. Outcomes are audited and left
        as a notice for the host UI.
        """
        try:
            if params.get("error"):
                self.config_store.pop_oauth_state()
                raise AuthorizationError(
                    f"Authorization failed: {params['error']} - {params.get('error_description', '')}",
                    code="access_denied",
                )
            self.token_manager.exchange_code(params.get("code"), params.get("state"))
        except MailRelayError as exc:
            logger.warning("OAuth authorization failed: %s", exc)
            self.audit.auth_error(exc)
            self.config_store.push_notice(str(exc), "error")
            return False

        self.audit.auth_success()
        self.config_store.push_notice("Authorization successful!", "success")
        return True

    def change_account(self) -> str:
        """Forget the current account and return a fresh authorization URL."""
        self.token_manager.revoke()
        try:
            return self.token_manager.authorization_url()
        except ConfigurationError as exc:
            self.config_store.push_notice(str(exc), "error")
            raise

    def revoke_authorization(self) -> bool:
        revoked = self.token_manager.revoke()
        self.config_store.push_notice("Authorization revoked successfully.", "success")
        return revoked

    def pop_notices(self) -> list[dict[str, str]]:
        return self.config_store.pop_notices()

    # -------------
    # Audit log
    # -------------
    def query_logs(
        self,
        filters: LogFilter | None = None,
        *,
        page: int = 1,
        page_size: int = 50,
        order_by: str = "created_at",
        order: str = "desc",
    ) -> LogPage:
        return self.audit_store.query(
            filters, page=page, page_size=page_size, order_by=order_by, order=order
        )

    def log_stats(self, date_from: date | None = None, date_to: date | None = None) -> LogStats:
        return self.audit_store.stats(date_from, date_to)

    def clear_logs(self) -> bool:
        return self.audit_store.clear_all()

    def prune_logs(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        return self.audit_store.prune(older_than_days)

    def _active_transport(self) -> str | None:
        try:
            return self.load_config().transport
        except ConfigurationError:
            return None
