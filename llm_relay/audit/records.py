"""
Audit records.

One AuditRecord per request/response cycle, including denials and errors.
Stored records are hash-chained: each carries the hash of its predecessor,
so edits or deletions in the stored trail are detectable.

Chain Structure:
    Record N: { data, prev_hash: hash(Record N-1), entry_hash: hash(data + prev_hash) }
"""

import json
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any


class EventType:
    FORWARD = "forward"
    DENIED = "denied"
    ERROR = "error"


REDACTED = "***"
_SECRET_HEADERS = ("authorization", "x-api-key", "api-key")


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of `headers` with credential values masked."""
    redacted = {}
    for name, value in headers.items():
        if name.lower() in _SECRET_HEADERS:
            scheme = value.split(" ", 1)[0] if " " in value else ""
            redacted[name] = f"{scheme} {REDACTED}".strip()
        else:
            redacted[name] = value
    return redacted


@dataclass
class AuditRecord:
    """A single request/response cycle through the relay."""
    event_type: str  # forward | denied | error
    route: str
    client_key: str
    method: str
    request_url: str

    target_url: Optional[str] = None
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    response_status: Optional[int] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    # Literal marker for streamed responses
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0

    # Context
    country: Optional[str] = None
    trace_id: Optional[str] = None

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Assigned by the store
    id: Optional[str] = None
    prev_hash: Optional[str] = None
    entry_hash: Optional[str] = None

    def _hashable(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("entry_hash")
        return data

    def compute_hash(self) -> str:
        """Compute hash of this record."""
        # Sort keys for determinism
        json_str = json.dumps(self._hashable(), sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "route": self.route,
            "client_key": self.client_key,
            "method": self.method,
            "request_url": self.request_url,
            "target_url": self.target_url,
            "request_headers": self.request_headers,
            "request_body": self.request_body,
            "response_status": self.response_status,
            "response_headers": self.response_headers,
            "response_body": self.response_body,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "country": self.country,
            "trace_id": self.trace_id,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        return cls(
            id=data.get("id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=data["event_type"],
            route=data["route"],
            client_key=data["client_key"],
            method=data["method"],
            request_url=data["request_url"],
            target_url=data.get("target_url"),
            request_headers=data.get("request_headers") or {},
            request_body=data.get("request_body"),
            response_status=data.get("response_status"),
            response_headers=data.get("response_headers") or {},
            response_body=data.get("response_body"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms") or 0,
            country=data.get("country"),
            trace_id=data.get("trace_id"),
            prev_hash=data.get("prev_hash"),
            entry_hash=data.get("entry_hash"),
        )


@dataclass
class ChainVerification:
    """Verification result for the audit chain."""
    valid: bool
    entries_checked: int
    first_invalid: Optional[str] = None
    error: Optional[str] = None
