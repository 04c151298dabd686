from __future__ import annotations

import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal
from urllib.parse import urlencode

import requests

from mailrelay.common.config import HTTP_TIMEOUT, OAUTH_STATE_TTL, TOKEN_EXPIRY_MARGIN
from mailrelay.credentials.models import CloudApiSettings, TokenState
from mailrelay.credentials.store import ConfigStore
from mailrelay.errors import AuthorizationError, ConfigurationError, TokenRefreshError
from mailrelay.logging import get_logger

logger = get_logger(__name__)

AuthState = Literal["unauthorized", "authorized", "expired"]

STATE_LENGTH = 32
_STATE_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True, slots=True)
class AccessToken:
    value: str
    refreshed: bool = False


class OAuthTokenManager:
    """
    Authorization-code + refresh-token grant against the Microsoft identity
    platform, for the Graph ``Mail.Send`` delegated permission.

    The manager owns the persisted token state. It raises errors from
    :mod:`mailrelay.errors`; refresh outcomes are also passed to the
    optional ``on_refresh`` callback. What gets audited is up to the caller.
    """

    AUTHORITY_URL = "https://login.microsoftonline.com"
    REQUIRED_SCOPES = ["https://graph.microsoft.com/Mail.Send", "offline_access"]

    def __init__(
        self,
        store: ConfigStore,
        *,
        default_redirect_uri: str | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float = HTTP_TIMEOUT,
        on_refresh: Callable[[bool, str], None] | None = None,
    ) -> None:
        self._store = store
        self._on_refresh = on_refresh
        self._default_redirect_uri = default_redirect_uri
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timeout = timeout
        self._refresh_lock = threading.Lock()

    # -------------
    # Status
    # -------------
    def settings(self) -> CloudApiSettings:
        return self._store.load_transport_config().cloud_api

    def is_configured(self, settings: CloudApiSettings | None = None) -> bool:
        s = settings or self.settings()
        return bool(s.client_id and s.tenant_id and s.client_secret and s.from_address)

    def is_authorized(self) -> bool:
        # Says nothing about expiry; that is handled when the token is used.
        return self._store.load_tokens() is not None

    def state(self) -> AuthState:
        tokens = self._store.load_tokens()
        if tokens is None:
            return "unauthorized"
        return "expired" if tokens.is_expired(self._clock()) else "authorized"

    def redirect_uri(self, settings: CloudApiSettings | None = None) -> str:
        s = settings or self.settings()
        uri = s.redirect_uri or self._default_redirect_uri
        if not uri:
            raise ConfigurationError("No OAuth redirect URI configured.", code="missing_redirect_uri")
        return uri

    def token_url(self, tenant_id: str) -> str:
        return f"{self.AUTHORITY_URL}/{tenant_id}/oauth2/v2.0/token"

    # -------------
    # Authorization
    # -------------
    def authorization_url(self) -> str:
        """
        Build the browser URL that starts the authorization-code flow.

        A fresh anti-forgery state is stored for ``OAUTH_STATE_TTL`` seconds.
        ``prompt=select_account`` makes the provider show its account chooser
        even when a browser session already exists.
        """
        s = self.settings()
        if not s.client_id or not s.tenant_id:
            raise ConfigurationError(
                "Please configure Client ID and Tenant ID first.", code="missing_config"
            )

        state = "".join(secrets.choice(_STATE_ALPHABET) for _ in range(STATE_LENGTH))
        self._store.save_oauth_state(state, OAUTH_STATE_TTL)

        params = {
            "client_id": s.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri(s),
            "scope": " ".join(self.REQUIRED_SCOPES),
            "state": state,
            "response_mode": "query",
            "prompt": "select_account",
        }
        return f"{self.AUTHORITY_URL}/{s.tenant_id}/oauth2/v2.0/authorize?{urlencode(params)}"

    def exchange_code(self, code: str | None, state: str | None) -> TokenState:
        """Verify ``state`` and trade ``code`` for tokens; persist and return them."""
        expected = self._store.pop_oauth_state()
        if not state or not expected or not secrets.compare_digest(state, expected):
            raise AuthorizationError(
                "Invalid state parameter. Please try again.", code="invalid_request"
            )
        if not code:
            raise AuthorizationError("No authorization code received.", code="invalid_request")

        s = self.settings()
        if not s.client_id or not s.client_secret or not s.tenant_id:
            raise ConfigurationError("Missing OAuth configuration.", code="missing_config")

        body = {
            "client_id": s.client_id,
            "client_secret": s.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri(s),
            "scope": " ".join(self.REQUIRED_SCOPES),
        }
        try:
            data = self._post_token_request(s.tenant_id, body)
        except _TokenEndpointError as exc:
            raise AuthorizationError(f"Token exchange failed: {exc}", code=exc.code) from exc

        tokens = TokenState(
            access_token=data["access_token"],
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=self._expiry_from(data),
        )
        self._store.save_tokens(tokens)
        logger.info("OAuth authorization completed; tokens stored.")
        return tokens

    def revoke(self) -> bool:
        """Forget all stored tokens. Returns True if there were any."""
        revoked = self._store.clear_tokens()
        if revoked:
            logger.info("OAuth tokens revoked.")
        return revoked

    # -------------
    # Token use
    # -------------
    def get_valid_token(self) -> AccessToken:
        """
        Return a usable access token, refreshing it first when expired.

        Raises:
            AuthorizationError: nothing is stored.
            TokenRefreshError: the token was expired and refreshing failed;
                stored tokens are left as they were.
        """
        tokens = self._store.load_tokens()
        if tokens is None:
            raise AuthorizationError("No valid access token available.", code="not_authorized")
        if not tokens.is_expired(self._clock()):
            return AccessToken(tokens.access_token)

        with self._refresh_lock:
            # Another request may have refreshed while we waited.
            tokens = self._store.load_tokens()
            if tokens is None:
                raise AuthorizationError("No valid access token available.", code="not_authorized")
            if not tokens.is_expired(self._clock()):
                return AccessToken(tokens.access_token)
            refreshed = self.refresh(tokens)
        return AccessToken(refreshed.access_token, refreshed=True)

    def refresh(self, tokens: TokenState | None = None) -> TokenState:
        """Trade the refresh token for new tokens; the outcome goes to ``on_refresh``."""
        try:
            updated = self._refresh(tokens)
        except TokenRefreshError as exc:
            self._notify_refresh(False, str(exc))
            raise
        self._notify_refresh(True, "")
        return updated

    def _refresh(self, tokens: TokenState | None) -> TokenState:
        tokens = tokens or self._store.load_tokens()
        s = self.settings()
        if tokens is None or not tokens.refresh_token:
            raise TokenRefreshError("No refresh token stored.", code="no_refresh_token")
        if not s.client_id or not s.client_secret or not s.tenant_id:
            raise TokenRefreshError("Missing OAuth configuration.", code="missing_config")

        body = {
            "client_id": s.client_id,
            "client_secret": s.client_secret,
            "refresh_token": tokens.refresh_token,
            "grant_type": "refresh_token",
            "scope": " ".join(self.REQUIRED_SCOPES),
        }
        try:
            data = self._post_token_request(s.tenant_id, body)
        except _TokenEndpointError as exc:
            logger.warning("Token refresh failed: %s", exc)
            raise TokenRefreshError(str(exc), code=exc.code) from exc

        updated = TokenState(
            access_token=data["access_token"],
            # The provider may or may not rotate the refresh token.
            refresh_token=str(data.get("refresh_token") or tokens.refresh_token),
            expires_at=self._expiry_from(data),
        )
        self._store.save_tokens(updated)
        logger.info("Access token refreshed.")
        return updated

    # -------------
    # helpers
    # -------------
    def _notify_refresh(self, success: bool, error_message: str) -> None:
        if self._on_refresh is not None:
            self._on_refresh(success, error_message)

    def _expiry_from(self, data: dict[str, Any]) -> datetime | None:
        expires_in = data.get("expires_in")
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError):
            return None
        return self._clock() + timedelta(seconds=seconds - TOKEN_EXPIRY_MARGIN)

    def _post_token_request(self, tenant_id: str, body: dict[str, str]) -> dict[str, Any]:
        try:
            resp = requests.post(
                self.token_url(tenant_id),
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise _TokenEndpointError(f"Connection error: {exc}", code="http_error") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise _TokenEndpointError(
                "Invalid JSON response from Microsoft.", code="json_error"
            ) from exc
        if not isinstance(data, dict):
            raise _TokenEndpointError("Invalid JSON response from Microsoft.", code="json_error")

        if data.get("error"):
            raise _TokenEndpointError(
                str(data.get("error_description") or data["error"]), code="oauth_error"
            )
        if not data.get("access_token"):
            raise _TokenEndpointError("No access token received.", code="no_token")
        return data


class _TokenEndpointError(Exception):
    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code
