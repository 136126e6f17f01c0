"""Clinic Onboarding - Data Models"""
from .domain import (
    # Enums
    Region, ClinicType, Severity, InviteCodeStatus, AuditAction,
    REGION_LABELS, CLINIC_TYPE_CODES,
    # Code format
    ClinicCodeParts, FormatCheck,
    # Stored records
    ClinicRecord, InviteCodeRecord, AttemptRecord, InviteUsageRecord, SecurityAlert,
    # Results
    RateLimitDecision, AnomalyReport, ValidationResult, IssuedInviteCode, InviteCodePage,
    utcnow,
)

__all__ = [
    "Region", "ClinicType", "Severity", "InviteCodeStatus", "AuditAction",
    "REGION_LABELS", "CLINIC_TYPE_CODES",
    "ClinicCodeParts", "FormatCheck",
    "ClinicRecord", "InviteCodeRecord", "AttemptRecord", "InviteUsageRecord", "SecurityAlert",
    "RateLimitDecision", "AnomalyReport", "ValidationResult", "IssuedInviteCode", "InviteCodePage",
    "utcnow",
]
