from .events import AuditTrail
from .models import LogEntry, LogFilter, LogPage, LogStats
from .store import AuditLogStore

__all__ = ["AuditLogStore", "AuditTrail", "LogEntry", "LogFilter", "LogPage", "LogStats"]
