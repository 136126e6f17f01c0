"""
Clinic Onboarding - SQLAlchemy ORM Models
Relational tables behind the SQL CodeStore adapter
"""
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint,
)
from ..database import Base


# All DateTime columns hold naive UTC; the store adapter attaches tzinfo on read.


class ClinicDB(Base):
    """A clinic and its clinic code."""
    __tablename__ = "clinics"

    code = Column(String(32), primary_key=True)  # OB-SEOUL-CLINIC-001
    clinic_id = Column(String(36), unique=True, nullable=False)  # UUID
    name = Column(String(100), nullable=False)
    clinic_type = Column(String(32), nullable=False)
    region = Column(String(16), nullable=False, index=True)

    # Encrypted with FieldCipher when FIELD_ENCRYPTION_KEY is set
    address = Column(Text, nullable=True)
    phone = Column(Text, nullable=True)

    owner_id = Column(String(64), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    deactivated_at = Column(DateTime, nullable=True)


class ClinicCodeSequenceDB(Base):
    """Last allocated sequence per region x clinic type."""
    __tablename__ = "clinic_code_sequences"

    region = Column(String(16), primary_key=True)
    clinic_type = Column(String(32), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class InviteCodeDB(Base):
    """Invite code. Only the keyed hash is stored, never the plaintext."""
    __tablename__ = "invite_codes"
    __table_args__ = (
        UniqueConstraint("code_hash", "clinic_code", name="uq_invite_codes_hash_clinic"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    clinic_code = Column(String(32), ForeignKey("clinics.code"), nullable=False, index=True)
    code_hash = Column(String(128), nullable=False)
    code_hint = Column(String(64), nullable=False, default="")  # masked, last 4 chars
    description = Column(String(200), nullable=False, default="")

    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)

    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_used_at = Column(DateTime, nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    deactivated_by = Column(String(64), nullable=True)


class InviteCodeUsageDB(Base):
    """One row per successful invite code use."""
    __tablename__ = "invite_code_usages"

    id = Column(String(36), primary_key=True)
    code_id = Column(String(36), ForeignKey("invite_codes.id"), nullable=False, index=True)
    consumer_id = Column(String(64), nullable=False)
    client_ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    used_at = Column(DateTime, default=datetime.utcnow)


class AuditLogDB(Base):
    """Append-only attempt log."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True)
    actor = Column(String(64), nullable=False, default="anonymous")
    action = Column(String(64), nullable=False, index=True)
    client_ip = Column(String(64), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    details = Column(JSON, nullable=True, default=dict)  # never holds a full code
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class SecurityAlertDB(Base):
    __tablename__ = "security_alerts"

    id = Column(String(36), primary_key=True)
    alert_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False)
    details = Column(JSON, nullable=True, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)
