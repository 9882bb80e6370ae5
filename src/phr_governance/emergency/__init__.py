"""Break-the-Glass emergency access"""
from phr_governance.emergency.controller import EmergencyAccessController
from phr_governance.emergency.models import AccessLevel, EmergencyAccessConfig, EmergencyContact

__all__ = ["EmergencyAccessController", "AccessLevel", "EmergencyAccessConfig", "EmergencyContact"]
