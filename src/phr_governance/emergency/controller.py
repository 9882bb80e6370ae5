"""Break-the-Glass Emergency Access - time-bound grants to designated contacts"""
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable
import threading
import uuid
import structlog

from phr_governance.audit.log import AuditLog
from phr_governance.audit.models import ActorType, AuditAction
from phr_governance.clock import Clock, SystemClock, ensure_utc
from phr_governance.emergency.models import AccessLevel, EmergencyAccessConfig, EmergencyContact
from phr_governance.errors import (
    ContactNotEligibleError, EmergencyAccessDisabledError, InvalidScopeError,
    InvalidTransitionError, NotActiveError, NotFoundError, ValidationError,
)
from phr_governance.storage.base import EmergencyBackend, call_backend

logger = structlog.get_logger(__name__)

EMERGENCY_CONFIG_ID = "emergency"
PATIENT = "Patient"
SYSTEM = "system"

CONFIGURABLE_FIELDS = frozenset(
    {"enabled", "access_level", "auto_expiry", "expiry_hours", "requires_otp", "data_types"}
)


class EmergencyAccessController:
    """
    Break-glass access for one patient.

    Every grant is either bounded by ``expiry_hours`` or must be revoked
    explicitly, and only contacts marked eligible in advance can receive
    one. The patient's config (contacts included) is a single record; its
    lock serializes foreground calls and is taken per contact by the sweep.
    """

    def __init__(self, backend: EmergencyBackend, audit: AuditLog, patient_id: str,
                 clock: Clock | None = None, default_expiry_hours: int = 24):
        self._backend = backend
        self._audit = audit
        self._clock = clock or SystemClock()
        self.patient_id = patient_id
        self._default_expiry_hours = default_expiry_hours
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> EmergencyAccessConfig:
        config = call_backend(self._backend.load_config, self.patient_id, entity_id=self.patient_id)
        if config is None:
            config = EmergencyAccessConfig(
                patient_id=self.patient_id,
                expiry_hours=self._default_expiry_hours,
            )
        return config

    def configure(self, actor: str = PATIENT, **updates: Any) -> EmergencyAccessConfig:
        """
        Merge partial updates into the config.

        Disabling emergency access revokes every active grant. Shortening
        ``expiry_hours`` (or turning auto-expiry on) pulls active grants'
        expiry back inside the new bound.
        """
        unknown = sorted(set(updates) - CONFIGURABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown emergency access setting(s): {', '.join(unknown)}",
                                  entity_id=self.patient_id, field=unknown[0])
        if not updates:
            raise ValidationError("No emergency access settings to update",
                                  entity_id=self.patient_id)

        with self._lock:
            current = self.get_config()
            merged = replace(current, **self._coerce(updates))
            self._validate(merged)
            now = self._clock.now()

            revoked: list[EmergencyContact] = []
            contacts = []
            for contact in merged.emergency_contacts:
                if contact.has_grant and not merged.enabled:
                    revoked.append(contact)
                    contact = self._cleared(contact)
                elif contact.has_grant and merged.auto_expiry:
                    bound = contact.access_granted_date + timedelta(hours=merged.expiry_hours)
                    if contact.access_expiry_date is None or contact.access_expiry_date > bound:
                        contact = replace(contact, access_expiry_date=bound)
                contacts.append(contact)
            merged = replace(merged, emergency_contacts=contacts)

            events = [
                self._revoked_event(contact, actor, now, "feature disabled") for contact in revoked
            ]
            events.append(dict(
                consent_id=EMERGENCY_CONFIG_ID,
                action=AuditAction.MODIFIED,
                actor=actor,
                actor_type=ActorType.PATIENT,
                details=f"Updated emergency access configuration: {', '.join(sorted(updates))}",
                timestamp=now,
            ))
            self._audit.append_many(events)
            self._save(merged)

        logger.info("Emergency access configured", patient_id=self.patient_id,
                    enabled=merged.enabled, auto_expiry=merged.auto_expiry,
                    expiry_hours=merged.expiry_hours, revoked=len(revoked))
        return merged

    def add_contact(self, contact: EmergencyContact, actor: str = PATIENT) -> EmergencyContact:
        if not contact.id or not contact.name.strip() or not contact.phone.strip():
            raise ValidationError("Please enter name and phone number",
                                  entity_id=contact.id or None, field="phone")
        contact = replace(contact, grant_id=None, access_granted_date=None, access_expiry_date=None)

        with self._lock:
            config = self.get_config()
            if config.contact(contact.id) is not None:
                raise ValidationError(f"Emergency contact {contact.id} already exists",
                                      entity_id=contact.id, field="id")
            self._audit.append(
                consent_id=EMERGENCY_CONFIG_ID,
                action=AuditAction.MODIFIED,
                actor=actor,
                actor_type=ActorType.PATIENT,
                details=f"Added emergency contact {contact.id} ({contact.relationship})",
            )
            self._save(replace(config, emergency_contacts=[*config.emergency_contacts, contact]))

        logger.info("Emergency contact added", contact_id=contact.id,
                    eligible=contact.can_access_emergency_data)
        return contact

    def remove_contact(self, contact_id: str, actor: str = PATIENT) -> None:
        """Remove a contact; an active grant is revoked first."""
        with self._lock:
            config = self.get_config()
            contact = self._require_contact(config, contact_id)
            now = self._clock.now()
            events = []
            if contact.has_grant:
                events.append(self._revoked_event(contact, actor, now, "contact removed"))
            events.append(dict(
                consent_id=EMERGENCY_CONFIG_ID,
                action=AuditAction.MODIFIED,
                actor=actor,
                actor_type=ActorType.PATIENT,
                details=f"Removed emergency contact {contact_id}",
                timestamp=now,
            ))
            self._audit.append_many(events)
            remaining = [c for c in config.emergency_contacts if c.id != contact_id]
            self._save(replace(config, emergency_contacts=remaining))

        logger.info("Emergency contact removed", contact_id=contact_id,
                    cascaded_revoke=contact.has_grant)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant_access(self, contact_id: str, reason: str, actor: str | None = None,
                     otp_verified: bool = False) -> EmergencyContact:
        """Issue a break-glass grant to an eligible contact."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for emergency access",
                                  entity_id=contact_id, field="reason")

        with self._lock:
            config = self.get_config()
            if not config.enabled:
                raise EmergencyAccessDisabledError(
                    "Emergency access is disabled", entity_id=self.patient_id, field="enabled"
                )
            contact = self._require_contact(config, contact_id)
            if not contact.can_access_emergency_data:
                raise ContactNotEligibleError(
                    f"Contact {contact_id} is not permitted to access emergency data",
                    entity_id=contact_id, field="can_access_emergency_data",
                )
            if config.requires_otp and not otp_verified:
                raise ValidationError("OTP verification is required for emergency access",
                                      entity_id=contact_id, field="otp")

            now = self._clock.now()
            if contact.grant_live_at(now):
                raise InvalidTransitionError(
                    f"Contact {contact_id} already holds an active emergency grant",
                    entity_id=contact_id, field="grant_id",
                )
            events = []
            if contact.has_grant:
                # lapsed but not yet swept
                events.append(self._expired_event(contact, now))
                contact = self._cleared(contact)

            granted = replace(
                contact,
                grant_id=f"EMG-{uuid.uuid4().hex[:12]}",
                access_granted_date=now,
                access_expiry_date=(
                    now + timedelta(hours=config.expiry_hours) if config.auto_expiry else None
                ),
            )
            events.append(dict(
                consent_id=granted.grant_id,
                action=AuditAction.APPROVED,
                actor=actor or contact_id,
                actor_type=ActorType.SYSTEM,
                details=reason,
                timestamp=now,
            ))
            self._audit.append_many(events)
            self._save(self._with_contact(config, granted))

        logger.warning("Emergency access granted", contact_id=contact_id,
                       grant_id=granted.grant_id,
                       expires_at=granted.access_expiry_date.isoformat()
                       if granted.access_expiry_date else None)
        return granted

    def revoke_access(self, contact_id: str, actor: str = PATIENT) -> EmergencyContact:
        """Explicitly end a contact's grant. The only way to end a grant without auto-expiry."""
        with self._lock:
            config = self.get_config()
            contact = self._require_contact(config, contact_id)
            if not contact.has_grant:
                raise NotActiveError(f"Contact {contact_id} has no active emergency grant",
                                     entity_id=contact_id)
            self._audit.append(
                consent_id=contact.grant_id,
                action=AuditAction.REVOKED,
                actor=actor,
                actor_type=ActorType.PATIENT,
                details=f"Emergency access for {contact.name} revoked",
            )
            cleared = self._cleared(contact)
            self._save(self._with_contact(config, cleared))

        logger.info("Emergency access revoked", contact_id=contact_id)
        return cleared

    def record_access(self, contact_id: str, data_accessed: Iterable[str] = (),
                      ip_address: str | None = None,
                      device_info: str | None = None) -> None:
        """Audit a read made under a live grant."""
        accessed = tuple(data_accessed)
        with self._lock:
            config = self.get_config()
            contact = self._require_contact(config, contact_id)
            now = self._clock.now()
            if not config.enabled or not contact.grant_live_at(now):
                raise NotActiveError(f"Contact {contact_id} has no live emergency grant",
                                     entity_id=contact_id)
            if config.access_level == AccessLevel.BASIC:
                outside = [dt for dt in accessed if dt not in config.data_types]
                if outside:
                    raise InvalidScopeError(
                        f"Basic emergency access does not cover: {', '.join(outside)}",
                        entity_id=contact_id, field="data_accessed",
                    )
            self._audit.append(
                consent_id=contact.grant_id,
                action=AuditAction.ACCESSED,
                actor=contact.name,
                actor_type=ActorType.SYSTEM,
                details="Emergency break-glass access used",
                data_accessed=accessed,
                ip_address=ip_address,
                device_info=device_info,
                timestamp=now,
            )

    def is_access_active(self, contact_id: str, now: datetime | None = None) -> bool:
        config = self.get_config()
        contact = config.contact(contact_id)
        now = ensure_utc(now) if now else self._clock.now()
        return bool(config.enabled and contact and contact.grant_live_at(now))

    def expiry_sweep(self, now: datetime | None = None) -> list[str]:
        """
        Clear grants whose expiry has passed.

        Idempotent: each contact is re-read under the lock and only cleared
        if its grant is still present and lapsed.
        """
        now = ensure_utc(now) if now else self._clock.now()
        expired: list[str] = []
        candidates = [
            c.id for c in self.get_config().emergency_contacts
            if c.has_grant and c.access_expiry_date is not None and c.access_expiry_date < now
        ]
        for contact_id in candidates:
            with self._lock:
                config = self.get_config()
                contact = config.contact(contact_id)
                if (contact is None or not contact.has_grant
                        or contact.access_expiry_date is None
                        or not contact.access_expiry_date < now):
                    continue
                self._audit.append(**self._expired_event(contact, now))
                self._save(self._with_contact(config, self._cleared(contact)))
            expired.append(contact_id)

        if expired:
            logger.info("Emergency grant expiry sweep", expired=len(expired), now=now.isoformat())
        return expired

    # ------------------------------------------------------------------

    @staticmethod
    def _expired_event(contact: EmergencyContact, now: datetime) -> dict[str, Any]:
        return dict(
            consent_id=contact.grant_id,
            action=AuditAction.EXPIRED,
            actor=SYSTEM,
            actor_type=ActorType.SYSTEM,
            details=f"Emergency access for {contact.name} expired",
            timestamp=now,
        )

    @staticmethod
    def _revoked_event(contact: EmergencyContact, actor: str, now: datetime,
                       cause: str) -> dict[str, Any]:
        return dict(
            consent_id=contact.grant_id,
            action=AuditAction.REVOKED,
            actor=actor,
            actor_type=ActorType.PATIENT,
            details=f"Emergency access for {contact.name} revoked: {cause}",
            timestamp=now,
        )

    def _coerce(self, updates: dict[str, Any]) -> dict[str, Any]:
        coerced = dict(updates)
        if "access_level" in coerced:
            try:
                coerced["access_level"] = AccessLevel(coerced["access_level"])
            except ValueError:
                raise ValidationError(f"Invalid access_level {coerced['access_level']!r}",
                                      entity_id=self.patient_id, field="access_level")
        for name in ("enabled", "auto_expiry", "requires_otp"):
            if name in coerced and not isinstance(coerced[name], bool):
                raise ValidationError(f"{name} must be a boolean",
                                      entity_id=self.patient_id, field=name)
        if "data_types" in coerced:
            coerced["data_types"] = list(dict.fromkeys(coerced["data_types"] or []))
        return coerced

    def _validate(self, config: EmergencyAccessConfig) -> None:
        hours = config.expiry_hours
        if hours is not None and (isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0):
            raise ValidationError("expiry_hours must be a positive integer",
                                  entity_id=self.patient_id, field="expiry_hours")
        if config.auto_expiry and hours is None:
            raise ValidationError("expiry_hours is required when auto_expiry is enabled",
                                  entity_id=self.patient_id, field="expiry_hours")

    def _require_contact(self, config: EmergencyAccessConfig, contact_id: str) -> EmergencyContact:
        contact = config.contact(contact_id)
        if contact is None:
            raise NotFoundError(f"Emergency contact {contact_id} not found", entity_id=contact_id)
        return contact

    @staticmethod
    def _cleared(contact: EmergencyContact) -> EmergencyContact:
        return replace(contact, grant_id=None, access_granted_date=None, access_expiry_date=None)

    @staticmethod
    def _with_contact(config: EmergencyAccessConfig,
                      contact: EmergencyContact) -> EmergencyAccessConfig:
        contacts = [contact if c.id == contact.id else c for c in config.emergency_contacts]
        return replace(config, emergency_contacts=contacts)

    def _save(self, config: EmergencyAccessConfig) -> None:
        call_backend(self._backend.save_config, config, entity_id=self.patient_id)
