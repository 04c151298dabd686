from __future__ import annotations

import base64
from email.utils import parseaddr
from typing import Any, Dict

import requests

from mailrelay.auth.token_manager import OAuthTokenManager
from mailrelay.common.config import HTTP_TIMEOUT
from mailrelay.credentials.models import CloudApiSettings
from mailrelay.errors import AuthorizationError, ConfigurationError, TransportError
from mailrelay.logging import get_logger
from mailrelay.message.models import NormalizedMessage
from mailrelay.transport.base import SendOutcome, Transport

logger = get_logger(__name__)


class CloudApiTransport(Transport):
    """
    Sends mail through Microsoft Graph ``/me/sendMail`` with a delegated
    OAuth access token. Only HTTP 202 counts as accepted.
    """

    name = "cloud_api"
    GRAPH_SENDMAIL_URL = "https://graph.microsoft.com/v1.0/me/sendMail"

    def __init__(
        self,
        settings: CloudApiSettings,
        token_manager: OAuthTokenManager,
        *,
        placeholder_address: str | None = None,
        default_from_name: str | None = None,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        self._settings = settings
        self._token_manager = token_manager
        self._placeholder_address = placeholder_address
        self._default_from_name = default_from_name
        self._timeout = timeout

    def deliver(self, message: NormalizedMessage) -> SendOutcome:
        if not self._token_manager.is_configured(self._settings):
            raise ConfigurationError(
                "Microsoft Graph OAuth not configured. Please configure your Microsoft Graph settings first.",
                code="not_configured",
            )
        if not self._token_manager.is_authorized():
            raise AuthorizationError(
                "Microsoft Graph OAuth not authorized. Please authorize the application first.",
                code="not_authorized",
            )

        token = self._token_manager.get_valid_token()
        payload = self.build_payload(message)

        try:
            resp = requests.post(
                self.GRAPH_SENDMAIL_URL,
                headers={
                    "Authorization": f"Bearer {token.value}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Connection error: {exc}", code="http_error") from exc

        if resp.status_code == 202:
            logger.info("Graph accepted message for %d recipient(s)", len(message.to))
            return SendOutcome.success(self.name)

        error_message = _graph_error_message(resp)
        raise TransportError(
            f"Graph API error (HTTP {resp.status_code}): {error_message}",
            code="graph_api_error",
            status_code=resp.status_code,
        )

    def build_payload(self, message: NormalizedMessage) -> Dict[str, Any]:
        s = self._settings
        from_name = s.from_name or self._default_from_name or ""
        sender: Dict[str, str] = {"address": s.from_address}
        if from_name:
            sender["name"] = from_name

        graph_message: Dict[str, Any] = {
            "subject": message.subject,
            "body": {
                "contentType": "HTML" if message.content_type == "html" else "Text",
                "content": message.body,
            },
            "from": {"emailAddress": sender},
            "toRecipients": _recipients(message.to),
        }
        if message.cc:
            graph_message["ccRecipients"] = _recipients(message.cc)
        if message.bcc:
            graph_message["bccRecipients"] = _recipients(message.bcc)

        if message.reply_to and not self._is_placeholder(message.reply_to):
            graph_message["replyTo"] = _recipients([message.reply_to])

        custom_headers = [
            {"name": name, "value": value}
            for name, value in message.headers
            if name.lower().startswith("x-")
        ]
        if custom_headers:
            graph_message["internetMessageHeaders"] = custom_headers

        if message.attachments:
            graph_message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.filename,
                    "contentType": attachment.content_type,
                    "contentBytes": base64.b64encode(attachment.content).decode("utf-8"),
                }
                for attachment in message.attachments
            ]

        return {"message": graph_message}

    def _is_placeholder(self, address: str) -> bool:
        if not self._placeholder_address:
            return False
        return address.strip().lower().startswith(self._placeholder_address.strip().lower())


def _recipients(addresses: list[str]) -> list[Dict[str, Any]]:
    result = []
    for formatted in addresses:
        name, addr = parseaddr(formatted)
        if not addr:
            continue
        email_address: Dict[str, str] = {"address": addr}
        if name:
            email_address["name"] = name
        result.append({"emailAddress": email_address})
    return result


def _graph_error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return "Unknown error"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "Unknown error")
    return "Unknown error"
