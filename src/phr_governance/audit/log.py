"""Hash-chained Audit Log - append-only, tamper-evident"""
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable
import hashlib
import json
import threading
import uuid
import structlog

from phr_governance.audit.models import (
    ActorType, AuditAction, AuditEntry, AuditFilter, IntegrityReport
)
from phr_governance.clock import Clock, SystemClock
from phr_governance.storage.base import AuditBackend, call_backend

logger = structlog.get_logger(__name__)

GENESIS_HASH = ""


def compute_entry_hash(prev_hash: str, entry: AuditEntry) -> str:
    """hash = SHA256(prev_hash || canonical JSON of the entry content)."""
    payload = json.dumps(entry.content(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256((prev_hash + payload).encode("utf-8")).hexdigest()


class AuditLog:
    """
    Append-only audit trail shared by the consent lifecycle and emergency access.

    Each entry embeds the hash of its predecessor, so editing or removing
    any persisted entry is detectable by ``verify()``. Appends are serialized
    by a single lock that covers sequence assignment, hashing and the
    backend write only.
    """

    def __init__(self, backend: AuditBackend, clock: Clock | None = None):
        self._backend = backend
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()

    def append(
        self,
        consent_id: str,
        action: AuditAction,
        actor: str,
        actor_type: ActorType,
        details: str = "",
        data_accessed: Iterable[str] = (),
        ip_address: str | None = None,
        device_info: str | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Append an event. Raises StorageUnavailableError if the backend fails."""
        with self._lock:
            last = call_backend(self._backend.last, entity_id=consent_id)
            entry = self._chain(last, consent_id, action, actor, actor_type, details,
                                data_accessed, ip_address, device_info, timestamp)
            call_backend(self._backend.append, entry, entity_id=consent_id)

        logger.debug("Audit entry appended", sequence=entry.sequence,
                     consent_id=consent_id, action=action.value)
        return entry

    def append_many(self, events: Iterable[dict[str, Any]]) -> list[AuditEntry]:
        """
        Append several events as one backend write.

        Each event holds the keyword arguments of ``append``. Either every
        entry is stored or none is, so a cascade never leaves part of itself
        in the trail.
        """
        events = list(events)
        if not events:
            return []
        with self._lock:
            last = call_backend(self._backend.last, entity_id=events[0]["consent_id"])
            entries: list[AuditEntry] = []
            for event in events:
                last = self._chain(last, **event)
                entries.append(last)
            call_backend(self._backend.append_many, entries, entity_id=events[0]["consent_id"])

        logger.debug("Audit entries appended", first_sequence=entries[0].sequence,
                     count=len(entries))
        return entries

    def _chain(
        self,
        last: AuditEntry | None,
        consent_id: str,
        action: AuditAction,
        actor: str,
        actor_type: ActorType,
        details: str = "",
        data_accessed: Iterable[str] = (),
        ip_address: str | None = None,
        device_info: str | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        prev_hash = last.hash if last else GENESIS_HASH
        entry = AuditEntry(
            id=f"AUD-{uuid.uuid4().hex[:16].upper()}",
            sequence=(last.sequence + 1) if last else 1,
            consent_id=consent_id,
            action=action,
            timestamp=timestamp or self._clock.now(),
            actor=actor,
            actor_type=actor_type,
            details=details,
            data_accessed=tuple(data_accessed),
            ip_address=ip_address,
            device_info=device_info,
            prev_hash=prev_hash,
        )
        return replace(entry, hash=compute_entry_hash(prev_hash, entry))

    def verify(self) -> IntegrityReport:
        """
        Recompute the chain from the first entry.

        Returns the index of the first entry whose hash or back-link does
        not match; ``intact`` when the whole chain recomputes.
        """
        entries = call_backend(self._backend.entries)
        prev_hash = GENESIS_HASH
        for index, entry in enumerate(entries):
            if entry.prev_hash != prev_hash:
                return self._broken(index, len(entries), "prev_hash_mismatch", entry)
            if entry.sequence != index + 1:
                return self._broken(index, len(entries), "sequence_gap", entry)
            if compute_entry_hash(prev_hash, entry) != entry.hash:
                return self._broken(index, len(entries), "hash_mismatch", entry)
            prev_hash = entry.hash

        return IntegrityReport(intact=True, total=len(entries), checked_at=self._clock.now())

    def _broken(self, index: int, total: int, issue: str, entry: AuditEntry) -> IntegrityReport:
        logger.error("Audit integrity violation", index=index,
                     entry_id=entry.id, issue=issue)
        return IntegrityReport(
            intact=False,
            total=total,
            broken_at=index,
            issue=issue,
            checked_at=self._clock.now(),
        )

    def query(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        """Filtered entries in sequence order. Read-only."""
        audit_filter = audit_filter or AuditFilter()
        results = [e for e in call_backend(self._backend.entries) if audit_filter.matches(e)]
        if audit_filter.limit is not None:
            results = results[:audit_filter.limit]
        return results

    def export(self, audit_filter: AuditFilter | None = None) -> str:
        """Export audit entries as JSON for compliance reporting."""
        return json.dumps([e.to_dict() for e in self.query(audit_filter)], indent=2)

    def __len__(self) -> int:
        return len(call_backend(self._backend.entries))
