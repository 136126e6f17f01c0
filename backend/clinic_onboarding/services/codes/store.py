"""
CodeStore

The persistence collaborator the code engine depends on, plus an in-memory
adapter for single-process use and tests. The SQLAlchemy adapter lives in
sql_store.py.

Two operations carry the concurrency guarantees of the engine:
- next_sequence: atomic per (region, type) allocation, never repeats
- consume_invite_code: atomic compare-and-increment of used_count
Both must be a single atomic step at the store, never a client-side
read-modify-write.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ...errors import DuplicateCodeError
from ...models.domain import (
    AttemptRecord, ClinicRecord, ClinicType, InviteCodeRecord, InviteCodeStatus,
    InviteUsageRecord, Region, SecurityAlert, Severity,
)


LIST_STATUSES = ("active", "inactive", "expired")
SORT_FIELDS = ("created_at", "expires_at", "used_count", "max_uses", "description")
SORT_ORDERS = ("asc", "desc")


def matches_status(record: InviteCodeRecord, status: Optional[str], now: datetime) -> bool:
    """
    Listing filter.

    active   - usable right now
    expired  - expires_at has passed (terminal whatever the active flag)
    inactive - not expired, but deactivated or exhausted
    """
    if status is None:
        return True
    current = record.status(now)
    if status == "active":
        return current is InviteCodeStatus.ACTIVE
    if status == "expired":
        return current is InviteCodeStatus.EXPIRED
    if status == "inactive":
        return current in (InviteCodeStatus.DEACTIVATED, InviteCodeStatus.EXHAUSTED)
    raise ValueError(f"Unknown status filter: {status}")


class CodeStore(ABC):
    """Persistence operations consumed by the issuers, validator and manager."""

    # -- clinics -------------------------------------------------------------

    @abstractmethod
    async def next_sequence(self, region: Region, clinic_type: ClinicType) -> int:
        """Atomically allocate the next sequence number for (region, type)."""

    @abstractmethod
    async def insert_clinic(self, clinic: ClinicRecord) -> ClinicRecord:
        """Persist a clinic. Raises DuplicateCodeError if the code exists."""

    @abstractmethod
    async def get_clinic(self, code: str) -> Optional[ClinicRecord]:
        ...

    @abstractmethod
    async def deactivate_clinic(self, code: str, now: datetime) -> Optional[ClinicRecord]:
        ...

    # -- invite codes --------------------------------------------------------

    @abstractmethod
    async def insert_invite_code(self, record: InviteCodeRecord) -> InviteCodeRecord:
        """Persist an invite code. Raises DuplicateCodeError on (hash, clinic) collision."""

    @abstractmethod
    async def find_invite_code(self, code_hash: str, clinic_code: str) -> Optional[InviteCodeRecord]:
        ...

    @abstractmethod
    async def get_invite_code(self, code_id: str) -> Optional[InviteCodeRecord]:
        ...

    @abstractmethod
    async def consume_invite_code(self, code_id: str, now: datetime) -> Optional[InviteCodeRecord]:
        """
        Increment used_count iff the code is active, unexpired and below max_uses.

        Returns the updated record, or None when the increment was refused.
        """

    @abstractmethod
    async def deactivate_invite_code(self, code_id: str, deactivated_by: str, now: datetime) -> Optional[InviteCodeRecord]:
        """Soft-deactivate. Idempotent: an inactive code is returned unchanged."""

    @abstractmethod
    async def list_invite_codes(
        self,
        clinic_code: str,
        now: datetime,
        status: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[InviteCodeRecord], int]:
        """Return (page, total matching)."""

    @abstractmethod
    async def record_usage(self, usage: InviteUsageRecord) -> None:
        ...

    @abstractmethod
    async def list_usages(self, code_id: str) -> List[InviteUsageRecord]:
        """Usage records, newest first."""

    # -- audit ---------------------------------------------------------------

    @abstractmethod
    async def append_attempt(self, attempt: AttemptRecord) -> None:
        ...

    @abstractmethod
    async def recent_attempts(self, action: str, client_ip: str, since: datetime) -> List[AttemptRecord]:
        ...

    @abstractmethod
    async def insert_alert(self, alert: SecurityAlert) -> None:
        ...

    @abstractmethod
    async def list_alerts(
        self,
        severity: Optional[Severity] = None,
        alert_type: Optional[str] = None,
        resolved: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SecurityAlert], int]:
        """Return (page, total matching), newest first."""

    @abstractmethod
    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolution: str, now: datetime
    ) -> Optional[SecurityAlert]:
        """
        Mark an unresolved alert resolved.

        Returns None when the alert is missing or was already resolved.
        """

    async def close(self) -> None:
        """Release resources held by the adapter."""


class InMemoryCodeStore(CodeStore):
    """
    Process-local CodeStore.

    A single threading lock makes each operation atomic; records are copied
    in and out so callers never alias stored state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.clinics: Dict[str, ClinicRecord] = {}
        self.sequences: Dict[Tuple[Region, ClinicType], int] = {}
        self.invite_codes: Dict[str, InviteCodeRecord] = {}
        self._hash_index: Dict[Tuple[str, str], str] = {}
        self.usages: List[InviteUsageRecord] = []
        self.attempts: List[AttemptRecord] = []
        self.alerts: List[SecurityAlert] = []

    async def next_sequence(self, region: Region, clinic_type: ClinicType) -> int:
        with self._lock:
            value = self.sequences.get((region, clinic_type), 0) + 1
            self.sequences[(region, clinic_type)] = value
            return value

    async def insert_clinic(self, clinic: ClinicRecord) -> ClinicRecord:
        with self._lock:
            if clinic.code in self.clinics:
                raise DuplicateCodeError(f"Clinic code {clinic.code} already exists")
            self.clinics[clinic.code] = replace(clinic)
            return replace(clinic)

    async def get_clinic(self, code: str) -> Optional[ClinicRecord]:
        with self._lock:
            clinic = self.clinics.get(code)
            return replace(clinic) if clinic else None

    async def deactivate_clinic(self, code: str, now: datetime) -> Optional[ClinicRecord]:
        with self._lock:
            clinic = self.clinics.get(code)
            if clinic is None:
                return None
            if clinic.active:
                clinic.active = False
                clinic.deactivated_at = now
            return replace(clinic)

    async def insert_invite_code(self, record: InviteCodeRecord) -> InviteCodeRecord:
        with self._lock:
            key = (record.code_hash, record.clinic_code)
            if key in self._hash_index or record.id in self.invite_codes:
                raise DuplicateCodeError("Invite code already exists")
            self.invite_codes[record.id] = record.copy()
            self._hash_index[key] = record.id
            return record.copy()

    async def find_invite_code(self, code_hash: str, clinic_code: str) -> Optional[InviteCodeRecord]:
        with self._lock:
            code_id = self._hash_index.get((code_hash, clinic_code))
            return self.invite_codes[code_id].copy() if code_id else None

    async def get_invite_code(self, code_id: str) -> Optional[InviteCodeRecord]:
        with self._lock:
            record = self.invite_codes.get(code_id)
            return record.copy() if record else None

    async def consume_invite_code(self, code_id: str, now: datetime) -> Optional[InviteCodeRecord]:
        with self._lock:
            record = self.invite_codes.get(code_id)
            if record is None or record.status(now) is not InviteCodeStatus.ACTIVE:
                return None
            record.used_count += 1
            record.last_used_at = now
            return record.copy()

    async def deactivate_invite_code(self, code_id: str, deactivated_by: str, now: datetime) -> Optional[InviteCodeRecord]:
        with self._lock:
            record = self.invite_codes.get(code_id)
            if record is None:
                return None
            if record.active:
                record.active = False
                record.deactivated_at = now
                record.deactivated_by = deactivated_by
            return record.copy()

    async def list_invite_codes(
        self,
        clinic_code: str,
        now: datetime,
        status: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[InviteCodeRecord], int]:
        with self._lock:
            matching = [
                r.copy() for r in self.invite_codes.values()
                if r.clinic_code == clinic_code and matches_status(r, status, now)
            ]
        present = [r for r in matching if getattr(r, sort_by) is not None]
        missing = [r for r in matching if getattr(r, sort_by) is None]
        present.sort(key=lambda r: getattr(r, sort_by), reverse=sort_order == "desc")
        ordered = present + missing
        return ordered[offset:offset + limit], len(ordered)

    async def record_usage(self, usage: InviteUsageRecord) -> None:
        with self._lock:
            self.usages.append(usage)

    async def list_usages(self, code_id: str) -> List[InviteUsageRecord]:
        with self._lock:
            usages = [u for u in self.usages if u.code_id == code_id]
        return sorted(usages, key=lambda u: u.used_at, reverse=True)

    async def append_attempt(self, attempt: AttemptRecord) -> None:
        with self._lock:
            self.attempts.append(attempt)

    async def recent_attempts(self, action: str, client_ip: str, since: datetime) -> List[AttemptRecord]:
        with self._lock:
            found = [
                a for a in self.attempts
                if a.action == action and a.client_ip == client_ip and a.timestamp >= since
            ]
        return sorted(found, key=lambda a: a.timestamp, reverse=True)

    async def insert_alert(self, alert: SecurityAlert) -> None:
        with self._lock:
            self.alerts.append(alert)

    async def list_alerts(
        self,
        severity: Optional[Severity] = None,
        alert_type: Optional[str] = None,
        resolved: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SecurityAlert], int]:
        with self._lock:
            matching = [
                a for a in self.alerts
                if (severity is None or a.severity == severity)
                and (alert_type is None or a.alert_type == alert_type)
                and (resolved is None or a.resolved == resolved)
            ]
        matching.sort(key=lambda a: a.created_at, reverse=True)
        return matching[offset:offset + limit], len(matching)

    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolution: str, now: datetime
    ) -> Optional[SecurityAlert]:
        with self._lock:
            for index, alert in enumerate(self.alerts):
                if alert.id != alert_id:
                    continue
                if alert.resolved:
                    return None
                resolved_alert = replace(
                    alert, resolved=True, resolved_at=now, resolved_by=resolved_by, resolution_notes=resolution,
                )
                self.alerts[index] = resolved_alert
                return resolved_alert
        return None
