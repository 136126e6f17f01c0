"""
Invite Code Validator

Runs the fixed sequence of checks for a customer-entered invite code and
short-circuits on the first failure:

    1. rate limit per client IP                  -> RATE_LIMITED
    2. sanitize + format check                    -> INVALID_FORMAT
    3. extract the clinic code                    -> INVALID_FORMAT
    4. successful-result cache (validate only)
    5. clinic exists and is active                -> CLINIC_INACTIVE
    6. hash lookup                                -> NOT_FOUND
    7. expiry (terminal regardless of `active`)   -> EXPIRED
    8. active flag                                -> NOT_FOUND
    9. usage limit                                -> MAX_USES_EXCEEDED
   10. success

Every call appends exactly one AttemptRecord, whatever the outcome.
Unexpected failures become SYSTEM_ERROR with an opaque message.

`use` runs the same pipeline and then consumes one use through the store's
atomic compare-and-increment.
"""
import asyncio
import hashlib
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from ...config import MAX_VALIDATION_CACHE_TTL_SECONDS, RateLimitPolicy, RateLimitRule
from ...errors import OPAQUE_SYSTEM_MESSAGE, ErrorCode
from ...models.domain import (
    AttemptRecord, AuditAction, InviteCodeRecord, InviteUsageRecord, RateLimitDecision,
    ValidationResult, utcnow,
)
from .audit import AuditSink
from .code_format import (
    MAX_RAW_INPUT_LENGTH, extract_clinic_code, sanitize_code, validate_invite_code_format,
)
from .monitor import SuspiciousActivityMonitor
from .rate_limiter import RateLimiter
from .security import CodeHasher, constant_time_equals, mask_code
from .store import CodeStore

logger = logging.getLogger(__name__)

# Failures that feed the suspicious-activity scan
SCAN_TRIGGERS = frozenset({ErrorCode.RATE_LIMITED, ErrorCode.NOT_FOUND, ErrorCode.INVALID_FORMAT})


# =============================================================================
# VALIDATION CACHE
# =============================================================================

@dataclass
class _CacheEntry:
    result: ValidationResult
    stored_at: datetime


class ValidationCache:
    """
    Short-lived cache of successful validations keyed by (code, client IP).

    Keys are SHA-256 digests so no plaintext code is held in memory. Only
    successes are cached; entries whose code has expired are dropped on read.
    """

    def __init__(
        self,
        ttl_seconds: int = MAX_VALIDATION_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        max_entries: int = 10_000,
    ):
        self.ttl_seconds = max(0, min(ttl_seconds, MAX_VALIDATION_CACHE_TTL_SECONDS))
        self.clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(code: str, client_ip: str) -> str:
        return hashlib.sha256(f"{code}|{client_ip}".encode("utf-8")).hexdigest()

    def get(self, code: str, client_ip: str) -> Optional[ValidationResult]:
        if not self.ttl_seconds:
            return None
        now = self.clock()
        key = self._key(code, client_ip)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stale = (now - entry.stored_at).total_seconds() >= self.ttl_seconds
            expired = entry.result.expires_at is not None and entry.result.expires_at <= now
            if stale or expired:
                del self._entries[key]
                return None
            return entry.result

    def put(self, code: str, client_ip: str, result: ValidationResult) -> None:
        if not self.ttl_seconds or not result.valid:
            return
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._entries.pop(next(iter(self._entries)))
            self._entries[self._key(code, client_ip)] = _CacheEntry(result=result, stored_at=self.clock())

    def invalidate_code_id(self, code_id: str) -> int:
        """Drop every entry for one invite code. Returns how many were dropped."""
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.result.code_id == code_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def invalidate_clinic(self, clinic_code: str) -> int:
        """Drop every entry whose code belongs to `clinic_code`."""
        with self._lock:
            keys = [
                k for k, e in self._entries.items()
                if e.result.clinic is not None and e.result.clinic.code == clinic_code
            ]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# VALIDATOR
# =============================================================================

@dataclass
class _AttemptContext:
    """What the audit record needs to know about one call."""
    code_hint: str = ""
    code_format_valid: bool = False
    code_id: Optional[str] = None
    rate_limit: Optional[RateLimitDecision] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def details(self, result: ValidationResult) -> Dict[str, Any]:
        details = {
            "code_id": self.code_id,
            "code_format_valid": self.code_format_valid,
            "code_hint": self.code_hint,
            "error_code": result.error_code.value if result.error_code else None,
            "cached": result.cached,
        }
        details.update(self.extra)
        return details


class InviteCodeValidator:

    def __init__(
        self,
        store: CodeStore,
        hasher: CodeHasher,
        rate_limiter: RateLimiter,
        sink: AuditSink,
        monitor: Optional[SuspiciousActivityMonitor] = None,
        cache: Optional[ValidationCache] = None,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hasher = hasher
        self.rate_limiter = rate_limiter
        self.sink = sink
        self.monitor = monitor
        self.cache = cache if cache is not None else ValidationCache(clock=clock)
        self.policy = policy or RateLimitPolicy()
        self.clock = clock

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def validate(
        self,
        raw_code: Optional[str],
        client_ip: str,
        user_agent: str = "",
        actor: Optional[str] = None,
    ) -> ValidationResult:
        """Check whether `raw_code` is currently redeemable. Consumes nothing."""
        ctx = _AttemptContext()
        try:
            result, _ = await self._check(raw_code, client_ip, "validate", self.policy.validate, ctx, use_cache=True)
        except Exception:
            logger.exception("Invite code validation failed")
            result = self._system_error(ctx)

        await self._record(AuditAction.CODE_VALIDATION, actor, client_ip, user_agent, result, ctx)
        return result

    async def use(
        self,
        raw_code: Optional[str],
        consumer_id: str,
        client_ip: str,
        user_agent: str = "",
    ) -> ValidationResult:
        """Validate and atomically consume one use of `raw_code` for `consumer_id`."""
        ctx = _AttemptContext()
        try:
            if not consumer_id:
                result = ValidationResult.failure(
                    ErrorCode.INVALID_INPUT, "A signed-in account is required to use an invite code."
                )
            else:
                result, record = await self._check(raw_code, client_ip, "use", self.policy.use, ctx, use_cache=False)
                if result.valid:
                    result = await self._consume(record, result, consumer_id, client_ip, user_agent)
        except Exception:
            logger.exception("Invite code use failed")
            result = self._system_error(ctx)

        await self._record(AuditAction.CODE_USE, consumer_id, client_ip, user_agent, result, ctx)
        return result

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _check(
        self,
        raw_code: Optional[str],
        client_ip: str,
        limit_action: str,
        rule: RateLimitRule,
        ctx: _AttemptContext,
        use_cache: bool,
    ) -> Tuple[ValidationResult, Optional[InviteCodeRecord]]:
        decision = await self.rate_limiter.check_rule(limit_action, client_ip, rule)
        ctx.rate_limit = decision
        if not decision.allowed:
            wait = max(1, math.ceil((decision.reset_at - self.clock()).total_seconds()))
            return self._fail(ErrorCode.RATE_LIMITED, f"Too many attempts. Please try again in {wait} seconds.", ctx), None

        if not isinstance(raw_code, str) or not raw_code.strip():
            return self._fail(ErrorCode.INVALID_FORMAT, "Please enter an invite code.", ctx), None
        if len(raw_code) > MAX_RAW_INPUT_LENGTH:
            return self._fail(ErrorCode.INVALID_FORMAT, "Invite code is too long.", ctx), None

        code = sanitize_code(raw_code)
        ctx.code_hint = mask_code(code)
        check = validate_invite_code_format(code)
        ctx.code_format_valid = check.valid
        if not check.valid:
            return self._fail(
                ErrorCode.INVALID_FORMAT, check.errors[0], ctx,
                errors=check.errors, suggestions=check.suggestions,
            ), None

        clinic_code = extract_clinic_code(code)
        if clinic_code is None:
            return self._fail(ErrorCode.INVALID_FORMAT, "Invite code does not contain a valid clinic code.", ctx), None

        if use_cache:
            cached = self.cache.get(code, client_ip)
            if cached is not None:
                ctx.code_id = cached.code_id
                return replace(cached, rate_limit=decision, cached=True), None

        clinic = await self.store.get_clinic(clinic_code)
        if clinic is None or not clinic.active:
            return self._fail(ErrorCode.CLINIC_INACTIVE, "This clinic is not accepting new members.", ctx), None

        code_hash = await asyncio.to_thread(self.hasher.hash, code)
        record = await self.store.find_invite_code(code_hash, clinic_code)
        if record is None or not constant_time_equals(record.code_hash, code_hash):
            return self._fail(ErrorCode.NOT_FOUND, "Invite code not found.", ctx), None
        ctx.code_id = record.id

        failure = self._classify(record, ctx)
        if failure is not None:
            return failure, None

        result = ValidationResult(
            valid=True,
            clinic=clinic,
            code_id=record.id,
            expires_at=record.expires_at,
            remaining_uses=record.remaining_uses(),
            rate_limit=decision,
        )
        if use_cache:
            self.cache.put(code, client_ip, result)
        return result, record

    def _classify(self, record: Optional[InviteCodeRecord], ctx: _AttemptContext) -> Optional[ValidationResult]:
        """Failure for an unusable record, or None when it can be used."""
        if record is None:
            return self._fail(ErrorCode.NOT_FOUND, "Invite code not found.", ctx)
        if record.is_expired(self.clock()):
            return self._fail(
                ErrorCode.EXPIRED, f"This invite code expired on {record.expires_at.date().isoformat()}.", ctx
            )
        if not record.active:
            return self._fail(ErrorCode.NOT_FOUND, "Invite code not found.", ctx)
        if record.is_exhausted():
            return self._fail(
                ErrorCode.MAX_USES_EXCEEDED,
                f"This invite code has reached its usage limit ({record.used_count}/{record.max_uses}).",
                ctx,
            )
        return None

    async def _consume(
        self,
        record: InviteCodeRecord,
        result: ValidationResult,
        consumer_id: str,
        client_ip: str,
        user_agent: str,
    ) -> ValidationResult:
        now = self.clock()
        ctx = _AttemptContext(code_id=record.id, rate_limit=result.rate_limit)
        updated = await self.store.consume_invite_code(record.id, now)
        if updated is None:
            # Lost a race or the code changed since the check; report its current state
            current = await self.store.get_invite_code(record.id)
            failure = self._classify(current, ctx)
            if failure is None:
                failure = self._fail(ErrorCode.MAX_USES_EXCEEDED, "This invite code has reached its usage limit.", ctx)
            return failure

        await self.store.record_usage(InviteUsageRecord(
            code_id=record.id,
            consumer_id=consumer_id,
            client_ip=client_ip or "",
            user_agent=user_agent or "",
            used_at=now,
        ))
        self.cache.invalidate_code_id(record.id)
        logger.info(f"Invite code {record.code_hint} used ({updated.used_count}/{updated.max_uses or 'unlimited'})")
        return replace(result, remaining_uses=updated.remaining_uses())

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _fail(error_code: ErrorCode, message: str, ctx: _AttemptContext, errors=None, suggestions=None) -> ValidationResult:
        return ValidationResult.failure(
            error_code,
            message,
            errors=errors,
            suggestions=suggestions,
            rate_limit=ctx.rate_limit,
        )

    @staticmethod
    def _system_error(ctx: _AttemptContext) -> ValidationResult:
        return ValidationResult.failure(ErrorCode.SYSTEM_ERROR, OPAQUE_SYSTEM_MESSAGE, rate_limit=ctx.rate_limit)

    async def _record(
        self,
        action: AuditAction,
        actor: Optional[str],
        client_ip: str,
        user_agent: str,
        result: ValidationResult,
        ctx: _AttemptContext,
    ) -> None:
        try:
            await self.sink.record_attempt(AttemptRecord(
                action=action.value,
                client_ip=client_ip or "",
                user_agent=user_agent or "",
                success=result.valid,
                actor=actor or "anonymous",
                details=ctx.details(result),
                timestamp=self.clock(),
            ))
        except Exception:
            logger.exception(f"Failed to write audit record for {action.value}")

        if self.monitor is not None and result.error_code in SCAN_TRIGGERS:
            self.monitor.schedule(client_ip or "", action.value)
