"""Clinic Onboarding - Code Engine

Issues clinic codes and invite codes, validates and consumes invite codes,
and watches validation traffic for brute-force patterns. Components are
wired together by `build_engine`.
"""
from .alert_review import SecurityAlertReview
from .anomaly_detector import AnomalyDetector
from .audit import AuditSink, StoreAuditSink
from .authorization import ClinicAuthorizer, StoreClinicAuthorizer
from .clinic_code_issuer import ClinicCodeIssuer
from .code_format import (
    build_clinic_code,
    build_invite_code,
    extract_clinic_code,
    parse_clinic_code,
    sanitize_code,
    validate_clinic_code,
    validate_invite_code_format,
)
from .engine import CodeEngine, build_engine
from .invite_code_issuer import InviteCodeIssuer
from .invite_code_manager import InviteCodeManager
from .invite_code_validator import InviteCodeValidator, ValidationCache
from .monitor import SuspiciousActivityMonitor
from .rate_limiter import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore
from .security import CodeHasher, FieldCipher, mask_code, random_token
from .sql_store import SqlAlchemyCodeStore
from .store import CodeStore, InMemoryCodeStore

__all__ = [
    "SecurityAlertReview",
    "AnomalyDetector",
    "AuditSink",
    "StoreAuditSink",
    "ClinicAuthorizer",
    "StoreClinicAuthorizer",
    "ClinicCodeIssuer",
    "build_clinic_code",
    "build_invite_code",
    "extract_clinic_code",
    "parse_clinic_code",
    "sanitize_code",
    "validate_clinic_code",
    "validate_invite_code_format",
    "CodeEngine",
    "build_engine",
    "InviteCodeIssuer",
    "InviteCodeManager",
    "InviteCodeValidator",
    "ValidationCache",
    "SuspiciousActivityMonitor",
    "CounterStore",
    "InMemoryCounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "CodeHasher",
    "FieldCipher",
    "mask_code",
    "random_token",
    "SqlAlchemyCodeStore",
    "CodeStore",
    "InMemoryCodeStore",
]
