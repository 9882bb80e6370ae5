"""
PHR Governance

Consent lifecycle, risk assessment, break-glass emergency access and a
tamper-evident audit trail for a personal health record.
"""

__version__ = "0.1.0"
