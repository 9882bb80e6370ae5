from datetime import datetime, timezone

import pytest

from phr_governance.clock import FixedClock
from phr_governance.config import GovernanceSettings
from phr_governance.consent.models import ConsentRequest
from phr_governance.emergency.models import EmergencyContact
from phr_governance.service import ConsentService

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return GovernanceSettings(_env_file=None)


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def service(clock, settings):
    return ConsentService.in_memory("patient-1", clock=clock, settings=settings)


@pytest.fixture
def make_request():
    def _make(
        request_id="r1",
        data_types=("lab_report", "imaging"),
        purpose="treatment",
        requester_id="dr-1",
        requester_name="Dr. Sharma",
        requester_type="doctor",
        from_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
        to_date=datetime(2026, 6, 30, tzinfo=timezone.utc),
        expiry_date=datetime(2026, 6, 30, tzinfo=timezone.utc),
    ):
        return ConsentRequest(
            id=request_id,
            requester_id=requester_id,
            requester_name=requester_name,
            requester_type=requester_type,
            purpose=purpose,
            data_types=tuple(data_types),
            from_date=from_date,
            to_date=to_date,
            expiry_date=expiry_date,
        )
    return _make


@pytest.fixture
def make_contact():
    def _make(contact_id="c1", eligible=True):
        return EmergencyContact(
            id=contact_id,
            name="Priya Kumar",
            relationship="spouse",
            phone="9876543210",
            can_access_emergency_data=eligible,
        )
    return _make
