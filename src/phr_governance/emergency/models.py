"""Emergency (break-glass) access models"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccessLevel(str, Enum):
    BASIC = "basic"  # only the configured emergency data types
    FULL = "full"


@dataclass
class EmergencyContact:
    id: str
    name: str
    relationship: str
    phone: str
    email: str | None = None
    can_access_emergency_data: bool = False
    # Set only while a grant is active
    grant_id: str | None = None
    access_granted_date: datetime | None = None
    access_expiry_date: datetime | None = None

    @property
    def has_grant(self) -> bool:
        return self.grant_id is not None

    def grant_live_at(self, now: datetime) -> bool:
        if not self.has_grant:
            return False
        return self.access_expiry_date is None or self.access_expiry_date >= now


@dataclass
class EmergencyAccessConfig:
    """Per-patient break-glass settings and contact list."""
    patient_id: str
    enabled: bool = False
    access_level: AccessLevel = AccessLevel.BASIC
    emergency_contacts: list[EmergencyContact] = field(default_factory=list)
    auto_expiry: bool = True
    expiry_hours: int | None = 24
    requires_otp: bool = False
    data_types: list[str] = field(default_factory=list)

    def contact(self, contact_id: str) -> EmergencyContact | None:
        for contact in self.emergency_contacts:
            if contact.id == contact_id:
                return contact
        return None

    @property
    def active_grants(self) -> list[EmergencyContact]:
        return [c for c in self.emergency_contacts if c.has_grant]
