"""
Turn a host's generic send request into a :class:`NormalizedMessage`.

Normalization splits comma-joined recipients, pulls ``Cc``/``Bcc``/
``Reply-To``/``Content-Type`` out of the raw header lines, decides between
HTML and plain text and loads attachments. It never touches the network.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from email.utils import formataddr, getaddresses, parseaddr
from pathlib import Path

from mailrelay.errors import ValidationError
from mailrelay.logging import get_logger
from mailrelay.message.models import (
    AddressInput,
    Attachment,
    BodyType,
    HeaderInput,
    MailMessage,
    NormalizedMessage,
)

logger = get_logger(__name__)

_HTML_TAG_RE = re.compile(
    r"<\s*/?(?:br|p|div|span|strong|b|i|em|u|h[1-6]|ul|ol|li|a|img|table|tr|td|html|body)\b[^>]*/?>",
    re.IGNORECASE,
)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def normalize_message(message: MailMessage) -> NormalizedMessage:
    """
    Raises:
        ValidationError: no valid recipient survives splitting and trimming
            (``no_recipient``). Entries without an ``@`` are dropped.
    """
    to = split_addresses(message.to)
    if not to:
        raise ValidationError("No valid recipient", code="no_recipient")

    cc = split_addresses(message.cc)
    bcc = split_addresses(message.bcc)
    reply_to = message.reply_to
    content_type_header: str | None = None
    residual: list[tuple[str, str]] = []

    for name, value in parse_headers(message.headers):
        lower = name.lower()
        if lower == "cc":
            cc = _merge(cc, split_addresses(value))
        elif lower == "bcc":
            bcc = _merge(bcc, split_addresses(value))
        elif lower == "reply-to":
            reply_to = reply_to or value
        elif lower == "content-type":
            content_type_header = value
        else:
            residual.append((name, value))

    content_type = detect_content_type(message.body, content_type_header, message.body_type)
    body = message.body or ""
    if content_type == "text" and _HTML_TAG_RE.search(body):
        body = html_to_text(body)

    return NormalizedMessage(
        to=to,
        subject=message.subject or "",
        body=body,
        content_type=content_type,
        cc=cc,
        bcc=bcc,
        reply_to=(parseaddr(reply_to)[1] or None) if reply_to else None,
        headers=residual,
        attachments=_load_attachments(message.attachments),
    )


def split_addresses(addresses: AddressInput | None) -> list[str]:
    """
    Split, trim and de-duplicate (case-insensitively) a recipient list.
    Entries without an ``@`` are logged and skipped.
    """
    if not addresses:
        return []
    raw = [addresses] if isinstance(addresses, str) else [str(a) for a in addresses if a]

    normalized: list[str] = []
    seen: set[str] = set()
    for name, addr in getaddresses(raw):
        addr = addr.strip()
        if not addr:
            continue
        if "@" not in addr:
            logger.warning("Dropping invalid address: %s", addr)
            continue
        key = addr.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(formataddr((name, addr)) if name else addr)
    return normalized


def parse_headers(headers: HeaderInput | None) -> list[tuple[str, str]]:
    """
    Accept headers as a newline-separated string, a mapping, a list of
    ``"Name: value"`` lines or a list of ``(name, value)`` pairs.
    """
    if not headers:
        return []
    if isinstance(headers, str):
        items: list = headers.replace("\r\n", "\n").split("\n")
    elif isinstance(headers, Mapping):
        items = list(headers.items())
    else:
        items = list(headers)

    parsed: list[tuple[str, str]] = []
    for item in items:
        if isinstance(item, tuple):
            name, value = item
        else:
            line = str(item).strip()
            if ":" not in line:
                continue
            name, value = line.split(":", 1)
        name, value = str(name).strip(), str(value).strip()
        if name:
            parsed.append((name, value))
    return parsed


def detect_content_type(
    body: str | None,
    content_type_header: str | None = None,
    body_type: BodyType | None = None,
) -> BodyType:
    if content_type_header:
        return "html" if "html" in content_type_header.lower() else "text"
    if body_type in ("text", "html"):
        return body_type
    return "html" if body and _HTML_TAG_RE.search(body) else "text"


def html_to_text(body: str) -> str:
    return _TAG_RE.sub("", _BR_RE.sub("\n", body))


def _merge(existing: list[str], extra: list[str]) -> list[str]:
    seen = {parseaddr(a)[1].lower() for a in existing}
    merged = list(existing)
    for addr in extra:
        key = parseaddr(addr)[1].lower()
        if key not in seen:
            seen.add(key)
            merged.append(addr)
    return merged


def _load_attachments(items: list[Attachment | str | Path] | None) -> list[Attachment]:
    attachments: list[Attachment] = []
    for item in items or []:
        if isinstance(item, Attachment):
            attachments.append(item)
            continue
        try:
            attachments.append(Attachment.from_path(item))
        except FileNotFoundError:
            logger.warning("Attachment not found: %s", item)
    return attachments
