"""
Clinic Code Issuer

Mints OB-{REGION}-{TYPE}-{SEQ3} codes.

Sequence numbers are allocated atomically by the store per (region, type),
so two concurrent issuances can never format the same code. If an insert
still collides (a code created out of band) the next sequence is tried, up
to MAX_GENERATION_ATTEMPTS times.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ...config import RateLimitPolicy
from ...errors import (
    ClinicInactiveError, CodeEngineError, DuplicateCodeError, GenerationExhaustedError,
    InvalidFormatError, InvalidInputError, NotAuthorizedError, NotFoundError,
    RateLimitedError, StoreError,
)
from ...models.domain import AttemptRecord, AuditAction, ClinicRecord, ClinicType, Region, utcnow
from .audit import AuditSink
from .code_format import MAX_SEQUENCE, build_clinic_code, sanitize_code, validate_clinic_code
from .invite_code_validator import ValidationCache
from .rate_limiter import RateLimiter
from .store import CodeStore

logger = logging.getLogger(__name__)

MAX_GENERATION_ATTEMPTS = 5
MAX_NAME_LENGTH = 100
MAX_ADDRESS_LENGTH = 255
MAX_PHONE_LENGTH = 32


class ClinicCodeIssuer:

    def __init__(
        self,
        store: CodeStore,
        rate_limiter: RateLimiter,
        sink: AuditSink,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        cache: Optional[ValidationCache] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.sink = sink
        self.cache = cache
        self.policy = policy or RateLimitPolicy()
        self.clock = clock

    # =========================================================================
    # ISSUE
    # =========================================================================

    async def issue(
        self,
        name: str,
        clinic_type: Union[ClinicType, str],
        region: Union[Region, str],
        issuer_id: str,
        address: Optional[str] = None,
        phone: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ClinicRecord:
        """
        Create a clinic with a fresh clinic code.

        Raises:
            InvalidInputError: bad name, type or region
            RateLimitedError: too many issuances from this IP
            GenerationExhaustedError: no free sequence within the attempt bound
            StoreError: datastore failure
        """
        details: Dict[str, Any] = {}
        success = False
        try:
            clinic = await self._issue(name, clinic_type, region, issuer_id, address, phone, client_ip, details)
            success = True
            details["clinic_code"] = clinic.code
            logger.info(f"Issued clinic code {clinic.code}")
            return clinic
        except CodeEngineError as e:
            details["error_code"] = e.error_code.value
            raise
        finally:
            await self._audit(AuditAction.CLINIC_CODE_GENERATION, issuer_id, client_ip, user_agent, success, details)

    async def _issue(self, name, clinic_type, region, issuer_id, address, phone, client_ip, details) -> ClinicRecord:
        name = (name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise InvalidInputError(f"Clinic name is required and must be at most {MAX_NAME_LENGTH} characters")
        if address is not None and len(address) > MAX_ADDRESS_LENGTH:
            raise InvalidInputError(f"Address must be at most {MAX_ADDRESS_LENGTH} characters")
        if phone is not None and len(phone) > MAX_PHONE_LENGTH:
            raise InvalidInputError(f"Phone number must be at most {MAX_PHONE_LENGTH} characters")
        if not issuer_id:
            raise InvalidInputError("An issuer identity is required")

        resolved_type = clinic_type if isinstance(clinic_type, ClinicType) else ClinicType.from_label(clinic_type)
        if resolved_type is None:
            raise InvalidInputError(f"Unknown clinic type: {clinic_type}")
        resolved_region = region if isinstance(region, Region) else Region.from_label(region)
        if resolved_region is None:
            raise InvalidInputError(f"Unknown region: {region}")
        details.update(region=resolved_region.value, clinic_type=resolved_type.value)

        if client_ip:
            decision = await self.rate_limiter.check_rule("generate_clinic", client_ip, self.policy.generate_clinic)
            if not decision.allowed:
                raise RateLimitedError("Too many clinic code requests. Please try again later.", decision=decision)

        try:
            for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
                sequence = await self.store.next_sequence(resolved_region, resolved_type)
                if sequence > MAX_SEQUENCE:
                    raise GenerationExhaustedError(
                        f"All {MAX_SEQUENCE} clinic codes for {resolved_region.value}/{resolved_type.code} are taken"
                    )

                code = build_clinic_code(resolved_region, resolved_type, sequence)
                clinic = ClinicRecord(
                    code=code,
                    name=name,
                    clinic_type=resolved_type,
                    region=resolved_region,
                    owner_id=issuer_id,
                    address=address,
                    phone=phone,
                    created_at=self.clock(),
                )
                try:
                    return await self.store.insert_clinic(clinic)
                except DuplicateCodeError:
                    logger.warning(f"Clinic code collision on {code} (attempt {attempt}/{MAX_GENERATION_ATTEMPTS})")
        except CodeEngineError:
            raise
        except Exception as e:
            logger.exception("Clinic code issuance failed in the store")
            raise StoreError("Failed to store clinic code") from e

        raise GenerationExhaustedError(
            f"Could not generate a unique clinic code after {MAX_GENERATION_ATTEMPTS} attempts"
        )

    # =========================================================================
    # DEACTIVATE / LOOKUP
    # =========================================================================

    async def deactivate(self, clinic_code: str, issuer_id: str, client_ip: Optional[str] = None,
                         user_agent: Optional[str] = None) -> ClinicRecord:
        """Soft-deactivate a clinic. Idempotent; owner only."""
        details: Dict[str, Any] = {"clinic_code": clinic_code}
        success = False
        try:
            clinic = await self.store.get_clinic(clinic_code)
            if clinic is None:
                raise NotFoundError("Clinic not found")
            if clinic.owner_id != issuer_id:
                raise NotAuthorizedError("You do not have permission to manage this clinic")

            was_active = clinic.active
            clinic = await self.store.deactivate_clinic(clinic_code, self.clock())
            if self.cache is not None:
                details["cache_entries_dropped"] = self.cache.invalidate_clinic(clinic.code)
            details["already_inactive"] = not was_active
            success = True
            return clinic
        except CodeEngineError as e:
            details["error_code"] = e.error_code.value
            raise
        finally:
            await self._audit(AuditAction.CLINIC_DEACTIVATION, issuer_id, client_ip, user_agent, success, details)

    async def lookup(self, clinic_code: str) -> ClinicRecord:
        """Public verification of a clinic code."""
        code = sanitize_code(clinic_code)
        if not validate_clinic_code(code):
            raise InvalidFormatError("Invalid clinic code format")
        clinic = await self.store.get_clinic(code)
        if clinic is None:
            raise NotFoundError("Clinic not found")
        if not clinic.active:
            raise ClinicInactiveError("This clinic is no longer active")
        return clinic

    async def _audit(self, action: AuditAction, actor: Optional[str], client_ip: Optional[str],
                     user_agent: Optional[str], success: bool, details: Dict[str, Any]) -> None:
        try:
            await self.sink.record_attempt(AttemptRecord(
                action=action.value,
                client_ip=client_ip or "",
                user_agent=user_agent or "",
                success=success,
                actor=actor or "anonymous",
                details=details,
                timestamp=self.clock(),
            ))
        except Exception:
            logger.exception(f"Failed to write audit record for {action.value}")
