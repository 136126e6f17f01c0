"""
Invite Code Issuer

Mints {CLINIC CODE}-{YYYYMM}-{SUFFIX8} invite codes for a clinic the issuer
owns. The plaintext code is returned exactly once inside IssuedInviteCode;
only its keyed hash and a masked hint are stored.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ...config import RateLimitPolicy
from ...errors import (
    ClinicInactiveError, CodeEngineError, DuplicateCodeError, GenerationExhaustedError,
    InvalidInputError, RateLimitedError, StoreError,
)
from ...models.domain import AttemptRecord, AuditAction, InviteCodeRecord, IssuedInviteCode, utcnow
from .audit import AuditSink
from .authorization import ClinicAuthorizer
from .code_format import SUFFIX_ALPHABET, SUFFIX_LENGTH, build_invite_code, year_month_of
from .rate_limiter import RateLimiter
from .security import CodeHasher, mask_code, random_token
from .store import CodeStore

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 200
MIN_MAX_USES = 1
MAX_MAX_USES = 1000
MAX_GENERATION_ATTEMPTS = 5


class InviteCodeIssuer:

    def __init__(
        self,
        store: CodeStore,
        hasher: CodeHasher,
        rate_limiter: RateLimiter,
        authorizer: ClinicAuthorizer,
        sink: AuditSink,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hasher = hasher
        self.rate_limiter = rate_limiter
        self.authorizer = authorizer
        self.sink = sink
        self.policy = policy or RateLimitPolicy()
        self.clock = clock

    async def issue(
        self,
        clinic_code: str,
        description: str,
        issuer_id: str,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedInviteCode:
        """
        Issue a new invite code for `clinic_code`.

        Raises:
            InvalidInputError: description too long or max_uses out of range
            NotAuthorizedError: issuer does not own the clinic
            ClinicInactiveError: clinic was deactivated
            RateLimitedError: issuer exceeded the generation limit
            StoreError: datastore failure
        """
        details: Dict[str, Any] = {"clinic_code": clinic_code}
        success = False
        try:
            issued = await self._issue(clinic_code, description, issuer_id, max_uses, expires_at)
            success = True
            details.update(code_id=issued.record.id, code_hint=issued.record.code_hint)
            logger.info(f"Issued invite code {issued.record.code_hint} for clinic {clinic_code}")
            return issued
        except CodeEngineError as e:
            details["error_code"] = e.error_code.value
            raise
        finally:
            try:
                await self.sink.record_attempt(AttemptRecord(
                    action=AuditAction.INVITE_CODE_GENERATION.value,
                    client_ip=client_ip or "",
                    user_agent=user_agent or "",
                    success=success,
                    actor=issuer_id or "anonymous",
                    details=details,
                    timestamp=self.clock(),
                ))
            except Exception:
                logger.exception("Failed to write audit record for invite code generation")

    async def _issue(self, clinic_code, description, issuer_id, max_uses, expires_at) -> IssuedInviteCode:
        now = self.clock()
        description = (description or "").strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        if max_uses is not None and not MIN_MAX_USES <= max_uses <= MAX_MAX_USES:
            raise InvalidInputError(f"max_uses must be between {MIN_MAX_USES} and {MAX_MAX_USES}")
        # An expiry already in the past is accepted; the code is simply born expired
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        clinic = await self.authorizer.authorize(issuer_id, clinic_code)
        if not clinic.active:
            raise ClinicInactiveError("Cannot issue invite codes for an inactive clinic")

        decision = await self.rate_limiter.check_rule("generate_invite", issuer_id, self.policy.generate_invite)
        if not decision.allowed:
            raise RateLimitedError("Too many invite codes generated. Please try again later.", decision=decision)

        try:
            for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
                plain_code = build_invite_code(
                    clinic.code, year_month_of(now), random_token(SUFFIX_LENGTH, SUFFIX_ALPHABET)
                )
                code_hash = await asyncio.to_thread(self.hasher.hash, plain_code)
                record = InviteCodeRecord(
                    clinic_code=clinic.code,
                    code_hash=code_hash,
                    created_by=issuer_id,
                    description=description,
                    max_uses=max_uses,
                    expires_at=expires_at,
                    code_hint=mask_code(plain_code),
                    created_at=now,
                )
                try:
                    stored = await self.store.insert_invite_code(record)
                    return IssuedInviteCode(plain_code=plain_code, record=stored)
                except DuplicateCodeError:
                    logger.warning(f"Invite code collision (attempt {attempt}/{MAX_GENERATION_ATTEMPTS})")
        except CodeEngineError:
            raise
        except Exception as e:
            logger.exception("Invite code issuance failed in the store")
            raise StoreError("Failed to store invite code") from e

        raise GenerationExhaustedError(
            f"Could not generate a unique invite code after {MAX_GENERATION_ATTEMPTS} attempts"
        )
