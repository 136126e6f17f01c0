"""
Invite Code Manager

Issuer-side management of existing invite codes: paginated listing,
idempotent soft deactivation and usage history. Every operation is limited
to the clinic's owner.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from ...errors import InvalidInputError, NotFoundError
from ...models.domain import (
    AttemptRecord, AuditAction, InviteCodePage, InviteCodeRecord, InviteUsageRecord, utcnow,
)
from .audit import AuditSink
from .authorization import ClinicAuthorizer
from .invite_code_validator import ValidationCache
from .store import LIST_STATUSES, SORT_FIELDS, SORT_ORDERS, CodeStore

logger = logging.getLogger(__name__)

MAX_PAGE = 1000
MAX_PAGE_SIZE = 100


class InviteCodeManager:

    def __init__(
        self,
        store: CodeStore,
        authorizer: ClinicAuthorizer,
        sink: AuditSink,
        cache: Optional[ValidationCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.authorizer = authorizer
        self.sink = sink
        self.cache = cache
        self.clock = clock

    async def list_codes(
        self,
        issuer_id: str,
        clinic_code: str,
        status: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> InviteCodePage:
        if status is not None and status not in LIST_STATUSES:
            raise InvalidInputError(f"status must be one of {', '.join(LIST_STATUSES)}")
        if sort_by not in SORT_FIELDS:
            raise InvalidInputError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        if sort_order not in SORT_ORDERS:
            raise InvalidInputError("sort_order must be asc or desc")
        if not 1 <= page <= MAX_PAGE:
            raise InvalidInputError(f"page must be between 1 and {MAX_PAGE}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        clinic = await self.authorizer.authorize(issuer_id, clinic_code)
        codes, total = await self.store.list_invite_codes(
            clinic.code,
            now=self.clock(),
            status=status,
            sort_by=sort_by,
            sort_order=sort_order,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return InviteCodePage(codes=codes, total=total, page=page, limit=limit)

    async def deactivate(self, code_id: str, issuer_id: str, client_ip: Optional[str] = None,
                         user_agent: Optional[str] = None) -> InviteCodeRecord:
        """
        Soft-deactivate an invite code.

        Deactivating an already inactive code returns it unchanged.
        """
        record = await self._owned_code(code_id, issuer_id)
        was_active = record.active
        record = await self.store.deactivate_invite_code(code_id, issuer_id, self.clock())
        if self.cache is not None:
            self.cache.invalidate_code_id(code_id)

        if was_active:
            logger.info(f"Invite code {record.code_hint} deactivated")
        try:
            await self.sink.record_attempt(AttemptRecord(
                action=AuditAction.INVITE_CODE_DEACTIVATION.value,
                client_ip=client_ip or "",
                user_agent=user_agent or "",
                success=True,
                actor=issuer_id,
                details={"code_id": code_id, "clinic_code": record.clinic_code, "already_inactive": not was_active},
                timestamp=self.clock(),
            ))
        except Exception:
            logger.exception("Failed to write audit record for invite code deactivation")
        return record

    async def usage_history(self, code_id: str, issuer_id: str) -> List[InviteUsageRecord]:
        await self._owned_code(code_id, issuer_id)
        return await self.store.list_usages(code_id)

    async def _owned_code(self, code_id: str, issuer_id: str) -> InviteCodeRecord:
        record = await self.store.get_invite_code(code_id)
        if record is None:
            raise NotFoundError("Invite code not found")
        await self.authorizer.authorize(issuer_id, record.clinic_code)
        return record
