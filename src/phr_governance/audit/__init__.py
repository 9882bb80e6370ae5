"""Tamper-evident audit trail"""
from phr_governance.audit.log import AuditLog, compute_entry_hash
from phr_governance.audit.models import (
    ActorType, AuditAction, AuditEntry, AuditFilter, IntegrityReport
)

__all__ = [
    "AuditLog", "compute_entry_hash", "ActorType", "AuditAction",
    "AuditEntry", "AuditFilter", "IntegrityReport",
]
