from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal, Mapping
import mimetypes

BodyType = Literal["text", "html"]
AddressInput = str | Iterable[str]
HeaderInput = str | Mapping[str, str] | Iterable[str] | Iterable[tuple[str, str]]


@dataclass(slots=True)
class Attachment:
    filename: str
    content: bytes
    maintype: str
    subtype: str

    @property
    def content_type(self) -> str:
        return f"{self.maintype}/{self.subtype}"

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> "Attachment":
        file_path = Path(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"Attachment not found: {file_path}")
        name = filename or file_path.name
        return cls(name, file_path.read_bytes(), *_split_mime(content_type or _guess_mime(name)))

    @classmethod
    def from_bytes(
        cls,
        content: bytes,
        *,
        filename: str,
        content_type: str | None = None,
    ) -> "Attachment":
        """In-memory attachment; the MIME type is guessed from ``filename`` if not given."""
        if not filename:
            raise ValueError("Attachment filename is required when providing raw bytes.")
        return cls(filename, content, *_split_mime(content_type or _guess_mime(filename)))


def _guess_mime(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def _split_mime(mime: str) -> tuple[str, str]:
    if "/" not in mime:
        return mime, "octet-stream"
    maintype, subtype = mime.split("/", 1)
    return maintype, subtype


@dataclass(slots=True)
class MailMessage:
    """A generic send request as handed over by the host application."""

    to: AddressInput
    subject: str = ""
    body: str = ""
    body_type: BodyType | None = None
    headers: HeaderInput | None = None
    cc: AddressInput = field(default_factory=list)
    bcc: AddressInput = field(default_factory=list)
    attachments: list[Attachment | str | Path] = field(default_factory=list)
    reply_to: str | None = None


@dataclass(slots=True)
class NormalizedMessage:
    to: list[str]
    subject: str
    body: str
    content_type: BodyType
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: str | None = None
    # Headers not turned into structured fields above.
    headers: list[tuple[str, str]] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
