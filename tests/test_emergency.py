from datetime import timedelta

import pytest

from phr_governance.audit.models import ActorType, AuditAction
from phr_governance.emergency.models import AccessLevel
from phr_governance.errors import (
    ContactNotEligibleError, EmergencyAccessDisabledError, InvalidScopeError,
    InvalidTransitionError, NotActiveError, NotFoundError, StorageUnavailableError,
    ValidationError,
)
from phr_governance.service import ConsentService
from phr_governance.storage.memory import (
    InMemoryAuditBackend, InMemoryConsentBackend, InMemoryEmergencyBackend,
)


@pytest.fixture
def enabled(service, make_contact):
    service.configure_emergency_access(enabled=True, auto_expiry=True, expiry_hours=24)
    service.add_emergency_contact(make_contact("c1"))
    return service


def _actions(service):
    return [e.action for e in service.get_audit_trail()]


def test_grant_auto_expires(enabled, clock):
    t0 = clock.now()
    contact = enabled.grant_emergency_access("c1", "fall detected")

    assert contact.grant_id.startswith("EMG-")
    assert contact.access_granted_date == t0
    assert contact.access_expiry_date == t0 + timedelta(hours=24)
    granted = enabled.get_audit_trail()[-1]
    assert granted.action == AuditAction.APPROVED
    assert granted.actor_type == ActorType.SYSTEM
    assert granted.details == "fall detected"
    assert granted.consent_id == contact.grant_id

    cleared = enabled.emergency.expiry_sweep(t0 + timedelta(hours=25))

    assert cleared == ["c1"]
    stored = enabled.get_emergency_config().contact("c1")
    assert stored.grant_id is None
    assert stored.access_expiry_date is None
    expired = enabled.get_audit_trail()[-1]
    assert expired.action == AuditAction.EXPIRED
    assert expired.consent_id == contact.grant_id


def test_expiry_sweep_is_idempotent(enabled, clock):
    enabled.grant_emergency_access("c1", "fall detected")
    later = clock.now() + timedelta(hours=25)

    assert enabled.emergency.expiry_sweep(later) == ["c1"]
    entries = len(enabled.get_audit_trail())
    assert enabled.emergency.expiry_sweep(later) == []
    assert len(enabled.get_audit_trail()) == entries


def test_disabled_blocks_grant(service, make_contact):
    service.add_emergency_contact(make_contact("c1"))
    service.configure_emergency_access(enabled=False)
    before = len(service.get_audit_trail())

    with pytest.raises(EmergencyAccessDisabledError):
        service.grant_emergency_access("c1", "unconscious")

    assert len(service.get_audit_trail()) == before


def test_ineligible_and_unknown_contacts(enabled, make_contact):
    enabled.add_emergency_contact(make_contact("c2", eligible=False))
    before = len(enabled.get_audit_trail())

    with pytest.raises(ContactNotEligibleError) as exc:
        enabled.grant_emergency_access("c2", "fall detected")
    assert exc.value.entity_id == "c2"
    with pytest.raises(NotFoundError):
        enabled.grant_emergency_access("c9", "fall detected")

    assert len(enabled.get_audit_trail()) == before


def test_grant_requires_reason(enabled):
    with pytest.raises(ValidationError):
        enabled.grant_emergency_access("c1", "  ")


def test_second_grant_while_live_fails(enabled):
    enabled.grant_emergency_access("c1", "fall detected")
    with pytest.raises(InvalidTransitionError):
        enabled.grant_emergency_access("c1", "again")


def test_regrant_after_lapse_expires_old_grant(enabled, clock):
    first = enabled.grant_emergency_access("c1", "fall detected")
    clock.advance(hours=30)

    second = enabled.grant_emergency_access("c1", "second fall")

    assert second.grant_id != first.grant_id
    assert _actions(enabled)[-2:] == [AuditAction.EXPIRED, AuditAction.APPROVED]


def test_otp_required(enabled):
    enabled.configure_emergency_access(requires_otp=True)

    with pytest.raises(ValidationError) as exc:
        enabled.grant_emergency_access("c1", "fall detected")
    assert exc.value.field == "otp"

    assert enabled.grant_emergency_access("c1", "fall detected", otp_verified=True).has_grant


def test_disabling_revokes_active_grants(enabled):
    enabled.grant_emergency_access("c1", "fall detected")

    config = enabled.configure_emergency_access(enabled=False)

    assert config.active_grants == []
    assert _actions(enabled)[-2:] == [AuditAction.REVOKED, AuditAction.MODIFIED]


def test_shortening_expiry_clamps_grants(enabled, clock):
    t0 = clock.now()
    enabled.grant_emergency_access("c1", "fall detected")

    enabled.configure_emergency_access(expiry_hours=2)

    contact = enabled.get_emergency_config().contact("c1")
    assert contact.access_expiry_date == t0 + timedelta(hours=2)


def test_grant_without_auto_expiry_needs_explicit_revoke(enabled, clock):
    enabled.configure_emergency_access(auto_expiry=False)
    contact = enabled.grant_emergency_access("c1", "fall detected")
    assert contact.access_expiry_date is None

    assert enabled.emergency.expiry_sweep(clock.now() + timedelta(days=30)) == []

    revoked = enabled.revoke_emergency_access("c1")
    assert not revoked.has_grant
    assert enabled.get_audit_trail()[-1].action == AuditAction.REVOKED
    with pytest.raises(NotActiveError):
        enabled.revoke_emergency_access("c1")


def test_remove_contact_cascades_revoke(enabled):
    enabled.grant_emergency_access("c1", "fall detected")

    enabled.remove_emergency_contact("c1")

    assert enabled.get_emergency_config().contact("c1") is None
    assert _actions(enabled)[-2:] == [AuditAction.REVOKED, AuditAction.MODIFIED]


def test_add_contact_validation(enabled, make_contact):
    with pytest.raises(ValidationError):
        enabled.add_emergency_contact(make_contact("c1"))
    contact = make_contact("c3")
    contact.phone = ""
    with pytest.raises(ValidationError):
        enabled.add_emergency_contact(contact)


def test_configure_validation(service):
    with pytest.raises(ValidationError):
        service.configure_emergency_access(colour="red")
    with pytest.raises(ValidationError):
        service.configure_emergency_access(expiry_hours=0)
    with pytest.raises(ValidationError):
        service.configure_emergency_access(auto_expiry=True, expiry_hours=None)
    with pytest.raises(ValidationError):
        service.configure_emergency_access(access_level="everything")
    assert service.get_audit_trail() == []


def test_configure_emits_modified(service):
    config = service.configure_emergency_access(enabled=True, access_level="full",
                                                data_types=["blood_group", "allergies"])

    assert config.access_level == AccessLevel.FULL
    entry = service.get_audit_trail()[-1]
    assert entry.action == AuditAction.MODIFIED
    assert entry.consent_id == "emergency"


def test_record_access_respects_basic_level(enabled):
    enabled.configure_emergency_access(access_level="basic", data_types=["allergies"])
    contact = enabled.grant_emergency_access("c1", "fall detected")

    enabled.record_emergency_access("c1", ["allergies"])
    with pytest.raises(InvalidScopeError):
        enabled.record_emergency_access("c1", ["mental_health_record"])

    accessed = [e for e in enabled.get_audit_trail() if e.action == AuditAction.ACCESSED]
    assert len(accessed) == 1
    assert accessed[0].consent_id == contact.grant_id

    enabled.configure_emergency_access(access_level="full")
    enabled.record_emergency_access("c1", ["mental_health_record"])


def test_record_access_after_expiry(enabled, clock):
    enabled.grant_emergency_access("c1", "fall detected")
    clock.advance(hours=25)

    with pytest.raises(NotActiveError):
        enabled.record_emergency_access("c1", ["allergies"])
    assert not enabled.emergency.is_access_active("c1")


class BatchFailingAuditBackend(InMemoryAuditBackend):
    fail = False

    def append_many(self, entries):
        if self.fail:
            raise ConnectionError("audit store offline")
        super().append_many(entries)


@pytest.fixture
def failing_audit(clock, settings, make_contact):
    audit_backend = BatchFailingAuditBackend()
    service = ConsentService(
        "patient-1",
        InMemoryConsentBackend(),
        InMemoryEmergencyBackend(),
        audit_backend,
        clock=clock,
        settings=settings,
    )
    service.configure_emergency_access(enabled=True, expiry_hours=24)
    service.add_emergency_contact(make_contact("c1"))
    service.grant_emergency_access("c1", "fall detected")
    audit_backend.fail = True
    return service


def test_failed_disable_writes_no_partial_cascade(failing_audit):
    before = len(failing_audit.get_audit_trail())

    with pytest.raises(StorageUnavailableError):
        failing_audit.configure_emergency_access(enabled=False)

    assert len(failing_audit.get_audit_trail()) == before
    assert AuditAction.REVOKED not in _actions(failing_audit)
    config = failing_audit.get_emergency_config()
    assert config.enabled
    assert config.contact("c1").has_grant
    assert failing_audit.verify_audit_trail().intact


def test_failed_remove_contact_writes_no_partial_cascade(failing_audit):
    before = len(failing_audit.get_audit_trail())

    with pytest.raises(StorageUnavailableError):
        failing_audit.remove_emergency_contact("c1")

    assert len(failing_audit.get_audit_trail()) == before
    assert failing_audit.get_emergency_config().contact("c1").has_grant
