from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from mailrelay.common.config import LogLevel, LogType

ORDERABLE_COLUMNS = ("id", "type", "level", "created_at", "recipient", "transport")


@dataclass(frozen=True, slots=True)
class LogEntry:
    id: int
    type: LogType
    level: LogLevel
    message: str
    details: dict[str, Any]
    recipient: str | None
    subject: str | None
    transport: str | None
    actor: str | None
    created_at: datetime


@dataclass(slots=True)
class LogFilter:
    type: LogType | None = None
    level: LogLevel | None = None
    transport: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None


@dataclass(slots=True)
class LogPage:
    entries: list[LogEntry]
    total_count: int
    page: int
    page_size: int

    @property
    def page_count(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


@dataclass(slots=True)
class LogStats:
    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_level: dict[str, int] = field(default_factory=dict)
