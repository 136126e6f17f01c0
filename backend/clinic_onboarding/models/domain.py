"""
Clinic Onboarding - Domain Models

Plain dataclasses passed between the code engine components and the
CodeStore collaborator. Storage adapters translate to and from these; no
component outside an adapter touches ORM rows.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..errors import ErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Region(str, Enum):
    SEOUL = "SEOUL"
    BUSAN = "BUSAN"
    DAEGU = "DAEGU"
    INCHEON = "INCHEON"
    GWANGJU = "GWANGJU"
    DAEJEON = "DAEJEON"
    ULSAN = "ULSAN"
    SEJONG = "SEJONG"
    GYEONGGI = "GYEONGGI"
    GANGWON = "GANGWON"
    CHUNGBUK = "CHUNGBUK"
    CHUNGNAM = "CHUNGNAM"
    JEONBUK = "JEONBUK"
    JEONNAM = "JEONNAM"
    GYEONGBUK = "GYEONGBUK"
    GYEONGNAM = "GYEONGNAM"
    JEJU = "JEJU"

    @classmethod
    def from_label(cls, label: str) -> Optional["Region"]:
        """Resolve an enum name (any case) or a Korean region label."""
        if not label:
            return None
        key = label.strip()
        try:
            return cls(key.upper())
        except ValueError:
            return REGION_LABELS.get(key)


REGION_LABELS: Dict[str, Region] = {
    "서울": Region.SEOUL,
    "부산": Region.BUSAN,
    "대구": Region.DAEGU,
    "인천": Region.INCHEON,
    "광주": Region.GWANGJU,
    "대전": Region.DAEJEON,
    "울산": Region.ULSAN,
    "세종": Region.SEJONG,
    "경기": Region.GYEONGGI,
    "강원": Region.GANGWON,
    "충북": Region.CHUNGBUK,
    "충남": Region.CHUNGNAM,
    "전북": Region.JEONBUK,
    "전남": Region.JEONNAM,
    "경북": Region.GYEONGBUK,
    "경남": Region.GYEONGNAM,
    "제주": Region.JEJU,
}


class ClinicType(str, Enum):
    CLINIC = "clinic"
    TRADITIONAL_CLINIC = "traditional-clinic"
    HOSPITAL = "hospital"

    @property
    def code(self) -> str:
        """Segment used inside a clinic code."""
        return CLINIC_TYPE_CODES[self]

    @classmethod
    def from_label(cls, label: str) -> Optional["ClinicType"]:
        if not label:
            return None
        key = label.strip().lower().replace("_", "-")
        if key == "oriental-clinic":
            return cls.TRADITIONAL_CLINIC
        try:
            return cls(key)
        except ValueError:
            return None

    @classmethod
    def from_code(cls, code: str) -> Optional["ClinicType"]:
        for clinic_type, type_code in CLINIC_TYPE_CODES.items():
            if type_code == code:
                return clinic_type
        return None


CLINIC_TYPE_CODES: Dict[ClinicType, str] = {
    ClinicType.CLINIC: "CLINIC",
    ClinicType.TRADITIONAL_CLINIC: "ORIENTAL",
    ClinicType.HOSPITAL: "HOSPITAL",
}


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return {"LOW": 0, "MEDIUM": 1, "HIGH": 2}[self.value]


class InviteCodeStatus(str, Enum):
    """Lifecycle state derived from the stored fields. Non-ACTIVE is terminal."""
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"
    DEACTIVATED = "DEACTIVATED"


class AuditAction(str, Enum):
    CODE_VALIDATION = "code_validation"
    CODE_USE = "code_use"
    INVITE_CODE_GENERATION = "invite_code_generation"
    INVITE_CODE_DEACTIVATION = "invite_code_deactivation"
    CLINIC_CODE_GENERATION = "clinic_code_generation"
    CLINIC_DEACTIVATION = "clinic_deactivation"
    SECURITY_ALERT_RESOLUTION = "security_alert_resolution"


# =============================================================================
# CODE FORMAT
# =============================================================================

@dataclass(frozen=True)
class ClinicCodeParts:
    prefix: str
    region: Region
    clinic_type: ClinicType
    sequence: int


@dataclass
class FormatCheck:
    """Every structural defect found in an invite code, for caller feedback."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


# =============================================================================
# STORED RECORDS
# =============================================================================

@dataclass
class ClinicRecord:
    code: str
    name: str
    clinic_type: ClinicType
    region: Region
    owner_id: str
    clinic_id: str = field(default_factory=lambda: str(uuid4()))
    address: Optional[str] = None
    phone: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None

    def public_info(self) -> Dict[str, Any]:
        return {
            "clinicCode": self.code,
            "clinicName": self.name,
            "clinicType": self.clinic_type.value,
            "region": self.region.value,
        }


@dataclass
class InviteCodeRecord:
    clinic_code: str
    code_hash: str
    created_by: str
    description: str = ""
    max_uses: Optional[int] = None
    used_count: int = 0
    active: bool = True
    expires_at: Optional[datetime] = None
    code_hint: str = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.used_count >= self.max_uses

    def remaining_uses(self) -> Optional[int]:
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - self.used_count)

    def status(self, now: datetime) -> InviteCodeStatus:
        if self.is_expired(now):
            return InviteCodeStatus.EXPIRED
        if not self.active:
            return InviteCodeStatus.DEACTIVATED
        if self.is_exhausted():
            return InviteCodeStatus.EXHAUSTED
        return InviteCodeStatus.ACTIVE

    def copy(self) -> "InviteCodeRecord":
        return replace(self)


@dataclass(frozen=True)
class AttemptRecord:
    """Append-only audit entry. Never holds a full plaintext code."""
    action: str
    client_ip: str
    user_agent: str
    success: bool
    actor: str = "anonymous"
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class InviteUsageRecord:
    code_id: str
    consumer_id: str
    client_ip: str = ""
    user_agent: str = ""
    used_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class SecurityAlert:
    alert_type: str
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    id: str = field(default_factory=lambda: str(uuid4()))
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }


@dataclass
class AnomalyReport:
    suspicious: bool
    reasons: List[str] = field(default_factory=list)
    severity: Severity = Severity.LOW


@dataclass
class ValidationResult:
    """Outcome of InviteCodeValidator.validate / use."""
    valid: bool
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    clinic: Optional[ClinicRecord] = None
    code_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    remaining_uses: Optional[int] = None
    rate_limit: Optional[RateLimitDecision] = None
    cached: bool = False

    @classmethod
    def failure(
        cls,
        error_code: ErrorCode,
        error: str,
        errors: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
        rate_limit: Optional[RateLimitDecision] = None,
    ) -> "ValidationResult":
        return cls(
            valid=False,
            error_code=error_code,
            error=error,
            errors=errors or [],
            suggestions=suggestions or [],
            rate_limit=rate_limit,
        )

    def to_response(self) -> Dict[str, Any]:
        """API body. Keys follow the client contract (camelCase)."""
        if self.valid:
            return {
                "success": True,
                "hospitalInfo": self.clinic.public_info() if self.clinic else None,
                "codeInfo": {
                    "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
                    "remainingUses": self.remaining_uses,
                },
            }
        return {
            "success": False,
            "error": self.error,
            "errorCode": self.error_code.value if self.error_code else None,
            "errors": list(self.errors),
            "suggestions": list(self.suggestions),
        }


@dataclass
class IssuedInviteCode:
    """The only object that ever carries a plaintext invite code."""
    plain_code: str
    record: InviteCodeRecord


@dataclass
class InviteCodePage:
    codes: List[InviteCodeRecord]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


@dataclass
class SecurityAlertPage:
    alerts: List[SecurityAlert]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1
