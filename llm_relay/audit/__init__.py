"""
Audit Trail

Hash-chained AuditRecords written through a non-blocking dispatcher.
"""

from .records import AuditRecord, ChainVerification, EventType, redact_headers, REDACTED
from .logger import AuditLogger, STORAGE_BACKENDS
from .dispatcher import SinkDispatcher

__all__ = [
    "AuditRecord",
    "ChainVerification",
    "EventType",
    "redact_headers",
    "REDACTED",
    "AuditLogger",
    "STORAGE_BACKENDS",
    "SinkDispatcher",
]
