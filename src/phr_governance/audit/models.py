"""Audit Models"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from phr_governance.clock import ensure_utc


class AuditAction(str, Enum):
    CREATED = "created"
    APPROVED = "approved"
    DENIED = "denied"
    REVOKED = "revoked"
    ACCESSED = "accessed"
    EXPIRED = "expired"
    MODIFIED = "modified"


class ActorType(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    SYSTEM = "system"
    GUARDIAN = "guardian"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable, hash-linked audit record."""
    id: str
    sequence: int
    consent_id: str  # consent request/artifact id or emergency grant id
    action: AuditAction
    timestamp: datetime
    actor: str
    actor_type: ActorType
    details: str
    data_accessed: tuple[str, ...] = ()
    ip_address: str | None = None
    device_info: str | None = None
    prev_hash: str = ""
    hash: str = ""

    def content(self) -> dict[str, Any]:
        """Hashed fields, excluding the hash itself."""
        return {
            "id": self.id,
            "sequence": self.sequence,
            "consent_id": self.consent_id,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "actor_type": self.actor_type.value,
            "details": self.details,
            "data_accessed": list(self.data_accessed),
            "ip_address": self.ip_address,
            "device_info": self.device_info,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.content(), "prev_hash": self.prev_hash, "hash": self.hash}


@dataclass
class AuditFilter:
    consent_id: str | None = None
    action: AuditAction | None = None
    actor_type: ActorType | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    limit: int | None = None

    def __post_init__(self):
        if self.start_time is not None:
            self.start_time = ensure_utc(self.start_time)
        if self.end_time is not None:
            self.end_time = ensure_utc(self.end_time)

    def matches(self, entry: AuditEntry) -> bool:
        if self.consent_id and entry.consent_id != self.consent_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.actor_type and entry.actor_type != self.actor_type:
            return False
        if self.start_time and entry.timestamp < self.start_time:
            return False
        if self.end_time and entry.timestamp > self.end_time:
            return False
        return True


@dataclass
class IntegrityReport:
    intact: bool
    total: int
    broken_at: int | None = None  # index of the first entry that fails to recompute
    issue: str | None = None
    checked_at: datetime | None = None
