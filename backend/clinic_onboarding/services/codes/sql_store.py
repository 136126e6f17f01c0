"""
SQLAlchemy CodeStore

CodeStore adapter over the async SQLAlchemy session factory.

Atomicity:
- next_sequence increments the (region, type) row with a single UPDATE and
  reads it back inside the same transaction; the row lock (PostgreSQL) or
  the database write lock (SQLite) serializes concurrent allocators.
- consume_invite_code is one conditional UPDATE; rowcount tells whether
  the increment was accepted.

Driver errors are translated: unique violations become DuplicateCodeError,
everything else StoreError.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...errors import DuplicateCodeError, StoreError
from ...models.db_models import (
    AuditLogDB, ClinicCodeSequenceDB, ClinicDB, InviteCodeDB, InviteCodeUsageDB, SecurityAlertDB,
)
from ...models.domain import (
    AttemptRecord, ClinicRecord, ClinicType, InviteCodeRecord, InviteUsageRecord, Region,
    SecurityAlert, Severity,
)
from .security import FieldCipher
from .store import CodeStore

logger = logging.getLogger(__name__)

SEQUENCE_INIT_ATTEMPTS = 3


def _to_db(moment: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for storage."""
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _from_db(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class SqlAlchemyCodeStore(CodeStore):

    def __init__(self, session_factory, cipher: Optional[FieldCipher] = None):
        self.session_factory = session_factory
        self.cipher = cipher

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            raise DuplicateCodeError("Unique constraint violated") from e
        except SQLAlchemyError as e:
            logger.error(f"Datastore operation failed: {e}")
            raise StoreError("Datastore operation failed") from e

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    def _seal(self, value: Optional[str]) -> Optional[str]:
        if value is None or self.cipher is None:
            return value
        return self.cipher.encrypt(value)

    def _open(self, value: Optional[str]) -> Optional[str]:
        if value is None or self.cipher is None:
            return value
        return self.cipher.decrypt(value)

    def _clinic(self, row: ClinicDB) -> ClinicRecord:
        return ClinicRecord(
            code=row.code,
            name=row.name,
            clinic_type=ClinicType(row.clinic_type),
            region=Region(row.region),
            owner_id=row.owner_id,
            clinic_id=row.clinic_id,
            address=self._open(row.address),
            phone=self._open(row.phone),
            active=row.active,
            created_at=_from_db(row.created_at),
            deactivated_at=_from_db(row.deactivated_at),
        )

    @staticmethod
    def _invite(row: InviteCodeDB) -> InviteCodeRecord:
        return InviteCodeRecord(
            id=row.id,
            clinic_code=row.clinic_code,
            code_hash=row.code_hash,
            code_hint=row.code_hint,
            created_by=row.created_by,
            description=row.description or "",
            max_uses=row.max_uses,
            used_count=row.used_count,
            active=row.active,
            expires_at=_from_db(row.expires_at),
            created_at=_from_db(row.created_at),
            last_used_at=_from_db(row.last_used_at),
            deactivated_at=_from_db(row.deactivated_at),
            deactivated_by=row.deactivated_by,
        )

    # =========================================================================
    # CLINICS
    # =========================================================================

    async def next_sequence(self, region: Region, clinic_type: ClinicType) -> int:
        where = and_(
            ClinicCodeSequenceDB.region == region.value,
            ClinicCodeSequenceDB.clinic_type == clinic_type.value,
        )
        for _ in range(SEQUENCE_INIT_ATTEMPTS):
            async with self._transaction() as session:
                result = await session.execute(
                    update(ClinicCodeSequenceDB)
                    .where(where)
                    .values(last_value=ClinicCodeSequenceDB.last_value + 1)
                )
                if result.rowcount:
                    value = await session.execute(select(ClinicCodeSequenceDB.last_value).where(where))
                    return value.scalar_one()

            # First allocation for this pair
            try:
                async with self._transaction() as session:
                    session.add(ClinicCodeSequenceDB(
                        region=region.value, clinic_type=clinic_type.value, last_value=1,
                    ))
                return 1
            except DuplicateCodeError:
                # Another allocator created the row first; increment it instead
                continue

        raise StoreError(f"Could not allocate a sequence for {region.value}/{clinic_type.value}")

    async def insert_clinic(self, clinic: ClinicRecord) -> ClinicRecord:
        async with self._transaction() as session:
            session.add(ClinicDB(
                code=clinic.code,
                clinic_id=clinic.clinic_id,
                name=clinic.name,
                clinic_type=clinic.clinic_type.value,
                region=clinic.region.value,
                address=self._seal(clinic.address),
                phone=self._seal(clinic.phone),
                owner_id=clinic.owner_id,
                active=clinic.active,
                created_at=_to_db(clinic.created_at),
                deactivated_at=_to_db(clinic.deactivated_at),
            ))
        return clinic

    async def get_clinic(self, code: str) -> Optional[ClinicRecord]:
        async with self._transaction() as session:
            row = await session.get(ClinicDB, code)
            return self._clinic(row) if row else None

    async def deactivate_clinic(self, code: str, now: datetime) -> Optional[ClinicRecord]:
        async with self._transaction() as session:
            await session.execute(
                update(ClinicDB)
                .where(ClinicDB.code == code, ClinicDB.active.is_(True))
                .values(active=False, deactivated_at=_to_db(now))
            )
            row = (await session.execute(select(ClinicDB).where(ClinicDB.code == code))).scalar_one_or_none()
            return self._clinic(row) if row else None

    # =========================================================================
    # INVITE CODES
    # =========================================================================

    async def insert_invite_code(self, record: InviteCodeRecord) -> InviteCodeRecord:
        async with self._transaction() as session:
            session.add(InviteCodeDB(
                id=record.id,
                clinic_code=record.clinic_code,
                code_hash=record.code_hash,
                code_hint=record.code_hint,
                description=record.description,
                max_uses=record.max_uses,
                used_count=record.used_count,
                active=record.active,
                expires_at=_to_db(record.expires_at),
                created_by=record.created_by,
                created_at=_to_db(record.created_at),
            ))
        return record.copy()

    async def find_invite_code(self, code_hash: str, clinic_code: str) -> Optional[InviteCodeRecord]:
        async with self._transaction() as session:
            row = (await session.execute(
                select(InviteCodeDB).where(
                    InviteCodeDB.code_hash == code_hash,
                    InviteCodeDB.clinic_code == clinic_code,
                )
            )).scalar_one_or_none()
            return self._invite(row) if row else None

    async def get_invite_code(self, code_id: str) -> Optional[InviteCodeRecord]:
        async with self._transaction() as session:
            row = await session.get(InviteCodeDB, code_id)
            return self._invite(row) if row else None

    async def consume_invite_code(self, code_id: str, now: datetime) -> Optional[InviteCodeRecord]:
        moment = _to_db(now)
        async with self._transaction() as session:
            result = await session.execute(
                update(InviteCodeDB)
                .where(
                    InviteCodeDB.id == code_id,
                    InviteCodeDB.active.is_(True),
                    or_(InviteCodeDB.expires_at.is_(None), InviteCodeDB.expires_at > moment),
                    or_(InviteCodeDB.max_uses.is_(None), InviteCodeDB.used_count < InviteCodeDB.max_uses),
                )
                .values(used_count=InviteCodeDB.used_count + 1, last_used_at=moment)
            )
            if result.rowcount != 1:
                return None
            row = (await session.execute(select(InviteCodeDB).where(InviteCodeDB.id == code_id))).scalar_one()
            return self._invite(row)

    async def deactivate_invite_code(self, code_id: str, deactivated_by: str, now: datetime) -> Optional[InviteCodeRecord]:
        async with self._transaction() as session:
            await session.execute(
                update(InviteCodeDB)
                .where(InviteCodeDB.id == code_id, InviteCodeDB.active.is_(True))
                .values(active=False, deactivated_at=_to_db(now), deactivated_by=deactivated_by)
            )
            row = (await session.execute(select(InviteCodeDB).where(InviteCodeDB.id == code_id))).scalar_one_or_none()
            return self._invite(row) if row else None

    @staticmethod
    def _status_filter(status: Optional[str], now: datetime):
        expired = and_(InviteCodeDB.expires_at.is_not(None), InviteCodeDB.expires_at <= now)
        exhausted = and_(InviteCodeDB.max_uses.is_not(None), InviteCodeDB.used_count >= InviteCodeDB.max_uses)
        if status is None:
            return None
        if status == "expired":
            return expired
        if status == "active":
            return and_(InviteCodeDB.active.is_(True), not_(expired), not_(exhausted))
        if status == "inactive":
            return and_(not_(expired), or_(InviteCodeDB.active.is_(False), exhausted))
        raise ValueError(f"Unknown status filter: {status}")

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
        conditions = [InviteCodeDB.clinic_code == clinic_code]
        status_filter = self._status_filter(status, _to_db(now))
        if status_filter is not None:
            conditions.append(status_filter)

        column = getattr(InviteCodeDB, sort_by)
        ordering = column.desc() if sort_order == "desc" else column.asc()

        async with self._transaction() as session:
            total = (await session.execute(
                select(func.count()).select_from(InviteCodeDB).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(InviteCodeDB)
                .where(*conditions)
                .order_by(ordering.nulls_last(), InviteCodeDB.id)
                .offset(offset)
                .limit(limit)
            )).scalars().all()
            return [self._invite(row) for row in rows], total

    async def record_usage(self, usage: InviteUsageRecord) -> None:
        async with self._transaction() as session:
            session.add(InviteCodeUsageDB(
                id=usage.id,
                code_id=usage.code_id,
                consumer_id=usage.consumer_id,
                client_ip=usage.client_ip,
                user_agent=usage.user_agent,
                used_at=_to_db(usage.used_at),
            ))

    async def list_usages(self, code_id: str) -> List[InviteUsageRecord]:
        async with self._transaction() as session:
            rows = (await session.execute(
                select(InviteCodeUsageDB)
                .where(InviteCodeUsageDB.code_id == code_id)
                .order_by(InviteCodeUsageDB.used_at.desc())
            )).scalars().all()
            return [
                InviteUsageRecord(
                    id=row.id,
                    code_id=row.code_id,
                    consumer_id=row.consumer_id,
                    client_ip=row.client_ip or "",
                    user_agent=row.user_agent or "",
                    used_at=_from_db(row.used_at),
                )
                for row in rows
            ]

    # =========================================================================
    # AUDIT
    # =========================================================================

    async def append_attempt(self, attempt: AttemptRecord) -> None:
        async with self._transaction() as session:
            session.add(AuditLogDB(
                id=attempt.id,
                actor=attempt.actor,
                action=attempt.action,
                client_ip=attempt.client_ip,
                user_agent=attempt.user_agent,
                success=attempt.success,
                details=attempt.details,
                timestamp=_to_db(attempt.timestamp),
            ))

    async def recent_attempts(self, action: str, client_ip: str, since: datetime) -> List[AttemptRecord]:
        async with self._transaction() as session:
            rows = (await session.execute(
                select(AuditLogDB)
                .where(
                    AuditLogDB.action == action,
                    AuditLogDB.client_ip == client_ip,
                    AuditLogDB.timestamp >= _to_db(since),
                )
                .order_by(AuditLogDB.timestamp.desc())
            )).scalars().all()
            return [
                AttemptRecord(
                    id=row.id,
                    actor=row.actor,
                    action=row.action,
                    client_ip=row.client_ip or "",
                    user_agent=row.user_agent or "",
                    success=row.success,
                    details=row.details or {},
                    timestamp=_from_db(row.timestamp),
                )
                for row in rows
            ]

    async def insert_alert(self, alert: SecurityAlert) -> None:
        async with self._transaction() as session:
            session.add(SecurityAlertDB(
                id=alert.id,
                alert_type=alert.alert_type,
                severity=alert.severity.value,
                details=alert.details,
                created_at=_to_db(alert.created_at),
                resolved=alert.resolved,
            ))

    @staticmethod
    def _alert(row: SecurityAlertDB) -> SecurityAlert:
        return SecurityAlert(
            id=row.id,
            alert_type=row.alert_type,
            severity=Severity(row.severity),
            details=row.details or {},
            created_at=_from_db(row.created_at),
            resolved=bool(row.resolved),
            resolved_at=_from_db(row.resolved_at),
            resolved_by=row.resolved_by,
            resolution_notes=row.resolution_notes,
        )

    async def list_alerts(
        self,
        severity: Optional[Severity] = None,
        alert_type: Optional[str] = None,
        resolved: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SecurityAlert], int]:
        conditions = []
        if severity is not None:
            conditions.append(SecurityAlertDB.severity == severity.value)
        if alert_type is not None:
            conditions.append(SecurityAlertDB.alert_type == alert_type)
        if resolved is not None:
            conditions.append(SecurityAlertDB.resolved.is_(resolved))

        async with self._transaction() as session:
            total = (await session.execute(
                select(func.count()).select_from(SecurityAlertDB).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(SecurityAlertDB)
                .where(*conditions)
                .order_by(SecurityAlertDB.created_at.desc(), SecurityAlertDB.id)
                .offset(offset)
                .limit(limit)
            )).scalars().all()
            return [self._alert(row) for row in rows], total

    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolution: str, now: datetime
    ) -> Optional[SecurityAlert]:
        async with self._transaction() as session:
            result = await session.execute(
                update(SecurityAlertDB)
                .where(SecurityAlertDB.id == alert_id, SecurityAlertDB.resolved.is_(False))
                .values(
                    resolved=True,
                    resolved_at=_to_db(now),
                    resolved_by=resolved_by,
                    resolution_notes=resolution,
                )
            )
            if result.rowcount != 1:
                return None
            row = (await session.execute(select(SecurityAlertDB).where(SecurityAlertDB.id == alert_id))).scalar_one()
            return self._alert(row)
