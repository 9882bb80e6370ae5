from datetime import datetime, timezone

import pytest

from phr_governance.audit.models import AuditAction
from phr_governance.consent.models import (
    ArtifactStatus, ConsentStatus, Decision, DenialRecord, GranularDataSelection,
)
from phr_governance.errors import (
    InvalidScopeError, InvalidTransitionError, NotFoundError, StorageUnavailableError,
    ValidationError,
)
from phr_governance.service import ConsentService
from phr_governance.storage.memory import (
    InMemoryAuditBackend, InMemoryConsentBackend, InMemoryEmergencyBackend,
)


def _actions(service):
    return [e.action for e in service.get_audit_trail()]


def test_approve_then_revoke(service, make_request):
    service.submit_consent_request(make_request("r1"))
    artifact = service.decide("r1", Decision.APPROVE)
    assert artifact.status == ArtifactStatus.ACTIVE
    assert artifact.consent_id == "r1"
    assert service.get_request("r1").status == ConsentStatus.APPROVED

    revoked = service.revoke_consent(artifact.id)
    assert revoked.status == ArtifactStatus.REVOKED
    assert service.get_artifact(artifact.id).status == ArtifactStatus.REVOKED
    assert service.get_request("r1").status == ConsentStatus.REVOKED

    assert _actions(service) == [AuditAction.CREATED, AuditAction.APPROVED, AuditAction.REVOKED]
    assert all(e.consent_id == "r1" for e in service.get_audit_trail())


def test_widening_data_types_rejected(service, make_request):
    service.submit_consent_request(make_request("r2", data_types=["lab_report"]))
    selection = GranularDataSelection(data_types=["lab_report", "vaccination"])

    with pytest.raises(InvalidScopeError) as exc:
        service.decide("r2", Decision.APPROVE, selection=selection)

    assert exc.value.entity_id == "r2"
    assert exc.value.field == "data_types"
    assert service.get_request("r2").status == ConsentStatus.PENDING
    assert service.list_artifacts() == []
    assert _actions(service) == [AuditAction.CREATED]


def test_widening_date_range_rejected(service, make_request):
    service.submit_consent_request(make_request("r1"))
    selection = GranularDataSelection(
        data_types=["lab_report"],
        date_range=(datetime(2025, 12, 1, tzinfo=timezone.utc),
                    datetime(2026, 3, 1, tzinfo=timezone.utc)),
    )
    with pytest.raises(InvalidScopeError):
        service.decide("r1", Decision.APPROVE, selection=selection)
    assert service.get_request("r1").status == ConsentStatus.PENDING


def test_granular_selection_narrows_scope(service, make_request):
    request = service.submit_consent_request(make_request("r1"))
    selection = GranularDataSelection(
        data_types=["lab_report"],
        date_range=(datetime(2026, 2, 1, tzinfo=timezone.utc),
                    datetime(2026, 3, 1, tzinfo=timezone.utc)),
        excluded_records=["rec-9"],
    )

    artifact = service.decide("r1", Decision.APPROVE, selection=selection)

    assert set(artifact.data_types) <= set(request.data_types)
    assert artifact.data_types == ("lab_report",)
    assert request.from_date <= artifact.scope.from_date <= artifact.scope.to_date <= request.to_date
    assert artifact.scope.excluded_records == ("rec-9",)
    approved = service.get_audit_trail()[-1]
    assert approved.action == AuditAction.APPROVED
    assert "1 data types, 1 excluded records" in approved.details


def test_empty_selection_is_validation_error(service, make_request):
    service.submit_consent_request(make_request("r1"))
    with pytest.raises(ValidationError):
        service.decide("r1", Decision.APPROVE, selection=GranularDataSelection(data_types=[]))


def test_inverted_selection_range_is_validation_error(service, make_request):
    service.submit_consent_request(make_request("r1"))
    selection = GranularDataSelection(
        data_types=["lab_report"],
        date_range=(datetime(2026, 3, 1, tzinfo=timezone.utc),
                    datetime(2026, 2, 1, tzinfo=timezone.utc)),
    )
    with pytest.raises(ValidationError) as exc:
        service.decide("r1", Decision.APPROVE, selection=selection)
    assert exc.value.field == "date_range"


def test_single_artifact_per_request(service, make_request):
    service.submit_consent_request(make_request("r1"))
    service.decide("r1", Decision.APPROVE)

    with pytest.raises(InvalidTransitionError):
        service.decide("r1", Decision.APPROVE)

    assert len(service.list_artifacts()) == 1
    assert _actions(service) == [AuditAction.CREATED, AuditAction.APPROVED]


def test_deny_creates_no_artifact(service, make_request):
    service.submit_consent_request(make_request("r1"))

    denial = service.decide("r1", Decision.DENY, reason="Not my doctor")

    assert isinstance(denial, DenialRecord)
    assert denial.reason == "Not my doctor"
    assert service.get_request("r1").status == ConsentStatus.DENIED
    assert service.list_artifacts() == []
    last = service.get_audit_trail()[-1]
    assert last.action == AuditAction.DENIED
    assert last.details == "Not my doctor"

    with pytest.raises(InvalidTransitionError):
        service.decide("r1", Decision.APPROVE)


def test_deny_requires_reason(service, make_request):
    service.submit_consent_request(make_request("r1"))
    with pytest.raises(ValidationError):
        service.decide("r1", "deny")
    assert service.get_request("r1").status == ConsentStatus.PENDING


def test_invalid_decision(service, make_request):
    service.submit_consent_request(make_request("r1"))
    with pytest.raises(ValidationError):
        service.decide("r1", "maybe")


def test_revoke_terminal_artifact_fails_without_audit(service, make_request):
    service.submit_consent_request(make_request("r1"))
    artifact = service.decide("r1", Decision.APPROVE)
    service.revoke_consent(artifact.id)
    before = len(service.get_audit_trail())

    with pytest.raises(InvalidTransitionError):
        service.revoke_consent(artifact.id)

    assert len(service.get_audit_trail()) == before


def test_unknown_ids_raise_not_found(service):
    with pytest.raises(NotFoundError):
        service.decide("missing", Decision.APPROVE)
    with pytest.raises(NotFoundError):
        service.revoke_consent("cons-art-missing")
    assert service.get_audit_trail() == []


def test_expire_sweep_is_idempotent(service, clock, make_request):
    service.submit_consent_request(make_request("r1"))
    artifact = service.decide("r1", Decision.APPROVE)
    service.submit_consent_request(make_request("r2", requester_id="lab-7"))

    now = datetime(2026, 7, 1, tzinfo=timezone.utc)
    first = service.lifecycle.expire_sweep(now)
    entries_after_first = len(service.get_audit_trail())
    second = service.lifecycle.expire_sweep(now)

    assert sorted(first) == ["r1", "r2"]
    assert second == []
    assert len(service.get_audit_trail()) == entries_after_first
    assert service.get_artifact(artifact.id).status == ArtifactStatus.EXPIRED
    assert service.get_request("r1").status == ConsentStatus.EXPIRED
    assert service.get_request("r2").status == ConsentStatus.EXPIRED
    expired = [e for e in service.get_audit_trail() if e.action == AuditAction.EXPIRED]
    assert len(expired) == 2
    assert all(e.actor == "system" for e in expired)


def test_sweep_leaves_unexpired_records(service, make_request):
    service.submit_consent_request(make_request("r1"))
    artifact = service.decide("r1", Decision.APPROVE)

    assert service.lifecycle.expire_sweep(datetime(2026, 6, 29, tzinfo=timezone.utc)) == []
    assert service.get_artifact(artifact.id).status == ArtifactStatus.ACTIVE


def test_approving_expired_request_fails(service, clock, make_request):
    service.submit_consent_request(make_request("r1"))
    clock.set(datetime(2026, 7, 2, tzinfo=timezone.utc))

    with pytest.raises(InvalidTransitionError) as exc:
        service.decide("r1", Decision.APPROVE)

    assert exc.value.field == "expiry_date"
    assert service.get_request("r1").status == ConsentStatus.PENDING


def test_failing_audit_backend_blocks_commit(clock, settings, make_request):
    class FlakyAuditBackend(InMemoryAuditBackend):
        fail = False

        def append(self, entry):
            if self.fail:
                raise ConnectionError("audit store offline")
            super().append(entry)

    audit_backend = FlakyAuditBackend()
    service = ConsentService(
        "patient-1",
        InMemoryConsentBackend(),
        InMemoryEmergencyBackend(),
        audit_backend,
        clock=clock,
        settings=settings,
    )
    service.submit_consent_request(make_request("r1"))
    audit_backend.fail = True

    with pytest.raises(StorageUnavailableError):
        service.decide("r1", Decision.APPROVE)

    assert service.get_request("r1").status == ConsentStatus.PENDING
    assert service.list_artifacts() == []
    assert len(service.get_audit_trail()) == 1


class FlakyConsentBackend(InMemoryConsentBackend):
    fail = False

    def save_request(self, request):
        if self.fail:
            raise ConnectionError("consent store offline")
        super().save_request(request)


@pytest.fixture
def flaky(clock, settings):
    backend = FlakyConsentBackend()
    service = ConsentService(
        "patient-1",
        backend,
        InMemoryEmergencyBackend(),
        InMemoryAuditBackend(),
        clock=clock,
        settings=settings,
    )
    return service, backend


def test_failed_approve_leaves_no_orphan_artifact(flaky, make_request):
    service, backend = flaky
    service.submit_consent_request(make_request("r1"))
    backend.fail = True

    with pytest.raises(StorageUnavailableError):
        service.decide("r1", Decision.APPROVE)

    assert service.get_request("r1").status == ConsentStatus.PENDING
    assert service.list_artifacts() == []

    backend.fail = False
    artifact = service.decide("r1", Decision.APPROVE)

    assert service.list_artifacts() == [artifact]
    assert service.get_request("r1").status == ConsentStatus.APPROVED


def test_failed_revoke_restores_artifact(flaky, make_request):
    service, backend = flaky
    service.submit_consent_request(make_request("r1"))
    artifact = service.decide("r1", Decision.APPROVE)
    backend.fail = True

    with pytest.raises(StorageUnavailableError):
        service.revoke_consent(artifact.id)

    assert service.get_artifact(artifact.id).status == ArtifactStatus.ACTIVE
    assert service.get_request("r1").status == ConsentStatus.APPROVED
