from dataclasses import replace
from datetime import datetime, timedelta
import json

import pytest

from phr_governance.audit.log import GENESIS_HASH, AuditLog, compute_entry_hash
from phr_governance.audit.models import ActorType, AuditAction, AuditFilter
from phr_governance.errors import StorageUnavailableError
from phr_governance.storage.memory import InMemoryAuditBackend


@pytest.fixture
def backend():
    return InMemoryAuditBackend()


@pytest.fixture
def audit(backend, clock):
    log = AuditLog(backend, clock)
    log.append("r1", AuditAction.CREATED, "Dr. Sharma", ActorType.PROVIDER, "Consent request received")
    clock.advance(hours=1)
    log.append("r1", AuditAction.APPROVED, "Patient", ActorType.PATIENT, "Consent approved")
    clock.advance(hours=1)
    log.append("r2", AuditAction.CREATED, "City Lab", ActorType.PROVIDER, "Consent request received")
    clock.advance(hours=1)
    log.append("r1", AuditAction.ACCESSED, "Dr. Sharma", ActorType.PROVIDER,
               data_accessed=["lab_report"])
    return log


def test_entries_are_hash_chained(audit, backend):
    entries = backend.entries()

    assert [e.sequence for e in entries] == [1, 2, 3, 4]
    assert entries[0].prev_hash == GENESIS_HASH
    for prev, entry in zip(entries, entries[1:]):
        assert entry.prev_hash == prev.hash
        assert entry.hash == compute_entry_hash(prev.hash, entry)

    report = audit.verify()
    assert report.intact
    assert report.total == 4
    assert report.broken_at is None


def test_tampered_entry_is_detected(audit, backend):
    backend._entries[2] = replace(backend._entries[2], details="nothing happened")

    report = audit.verify()

    assert not report.intact
    assert report.broken_at == 2
    assert report.issue == "hash_mismatch"


def test_removed_entry_is_detected(audit, backend):
    del backend._entries[1]

    report = audit.verify()

    assert not report.intact
    assert report.broken_at == 1


def test_rehashed_entry_breaks_next_link(audit, backend):
    forged = replace(backend._entries[1], actor="Someone else")
    backend._entries[1] = replace(forged, hash=compute_entry_hash(forged.prev_hash, forged))

    report = audit.verify()

    assert report.broken_at == 2
    assert report.issue == "prev_hash_mismatch"


def test_query_filters(audit, clock):
    start = clock.now() - timedelta(hours=1, minutes=30)

    assert [e.action for e in audit.query(AuditFilter(consent_id="r1"))] == [
        AuditAction.CREATED, AuditAction.APPROVED, AuditAction.ACCESSED,
    ]
    assert len(audit.query(AuditFilter(action=AuditAction.CREATED))) == 2
    assert len(audit.query(AuditFilter(actor_type=ActorType.PATIENT))) == 1
    assert [e.sequence for e in audit.query(AuditFilter(start_time=start))] == [3, 4]
    assert [e.sequence for e in audit.query(AuditFilter(limit=2))] == [1, 2]


def test_export_is_json(audit):
    exported = json.loads(audit.export(AuditFilter(consent_id="r2")))

    assert len(exported) == 1
    assert exported[0]["action"] == "created"
    assert exported[0]["actor_type"] == "provider"
    assert set(exported[0]) >= {"id", "sequence", "timestamp", "prev_hash", "hash"}


def test_backend_failure_surfaces(clock):
    class BrokenBackend(InMemoryAuditBackend):
        def append(self, entry):
            raise OSError("disk full")

    log = AuditLog(BrokenBackend(), clock)
    with pytest.raises(StorageUnavailableError) as exc:
        log.append("r1", AuditAction.CREATED, "Dr. Sharma", ActorType.PROVIDER)
    assert exc.value.entity_id == "r1"
    assert len(log) == 0


def test_service_trail_stays_intact(service, make_request, make_contact):
    service.submit_consent_request(make_request("r1"))
    service.decide("r1", "approve")
    service.configure_emergency_access(enabled=True)
    service.add_emergency_contact(make_contact("c1"))
    service.grant_emergency_access("c1", "fall detected")

    report = service.verify_audit_trail()
    assert report.intact
    assert report.total == 5
    assert json.loads(service.export_audit_trail())[0]["consent_id"] == "r1"


def test_naive_filter_times_are_treated_as_utc(audit):
    entries = audit.query(AuditFilter(start_time=datetime(2026, 1, 1, 2)))
    assert [e.sequence for e in entries] == [3, 4]

    entries = audit.query(AuditFilter(end_time=datetime(2026, 1, 1, 1)))
    assert [e.sequence for e in entries] == [1, 2]


def test_last_returns_newest_entry(audit, backend):
    assert backend.last().sequence == 4
    assert backend.last() == backend.entries()[-1]
    assert InMemoryAuditBackend().last() is None


def test_append_many_chains_one_batch(audit, backend):
    entries = audit.append_many([
        dict(consent_id="EMG-1", action=AuditAction.REVOKED, actor="Patient",
             actor_type=ActorType.PATIENT),
        dict(consent_id="emergency", action=AuditAction.MODIFIED, actor="Patient",
             actor_type=ActorType.PATIENT),
    ])

    assert [e.sequence for e in entries] == [5, 6]
    assert entries[1].prev_hash == entries[0].hash
    assert audit.verify().intact
    assert audit.append_many([]) == []


def test_failed_batch_appends_nothing(clock):
    class BrokenBatchBackend(InMemoryAuditBackend):
        def append_many(self, entries):
            raise OSError("disk full")

    backend = BrokenBatchBackend()
    log = AuditLog(backend, clock)
    log.append("r1", AuditAction.CREATED, "Dr. Sharma", ActorType.PROVIDER)

    with pytest.raises(StorageUnavailableError):
        log.append_many([
            dict(consent_id="EMG-1", action=AuditAction.REVOKED, actor="Patient",
                 actor_type=ActorType.PATIENT),
        ])
    assert len(log) == 1
