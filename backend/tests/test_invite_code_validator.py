"""
Tests for InviteCodeValidator.

Test Coverage:
1. Successful validation with clinic info and remaining uses
2. Rate limiting per client IP
3. Expiry is terminal regardless of the active flag
4. Usage limits, including concurrent use of a single-use code
5. Exactly one audit record per call, never with the plaintext code
6. Opaque system errors and audit failures
7. Successful-result cache
8. Anomaly scans on repeated failures
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from clinic_onboarding.errors import OPAQUE_SYSTEM_MESSAGE, ErrorCode
from clinic_onboarding.models.domain import Severity


UNKNOWN_SUFFIX_CODE = "OB-SEOUL-CLINIC-001-202401-ZZZZZZZZ"


@pytest.fixture
async def issue(engine, clinic):
    """Issue an invite code for the doctor-1 clinic and return (plain_code, record)."""
    async def _issue(**kwargs):
        issued = await engine.invite_codes.issue(clinic.code, kwargs.pop("description", ""), "doctor-1", **kwargs)
        return issued.plain_code, issued.record
    return _issue


# =============================================================================
# TEST: VALIDATE
# =============================================================================

class TestValidate:

    async def test_valid_code(self, engine, issue):
        code, record = await issue(max_uses=5)

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.valid is True
        assert result.error_code is None
        assert result.clinic.code == "OB-SEOUL-CLINIC-001"
        assert result.code_id == record.id
        assert result.remaining_uses == 5
        body = result.to_response()
        assert body["success"] is True
        assert body["hospitalInfo"]["clinicCode"] == "OB-SEOUL-CLINIC-001"
        assert body["codeInfo"]["remainingUses"] == 5

    async def test_validation_consumes_nothing(self, engine, issue, store):
        code, record = await issue(max_uses=1)
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        await engine.validator.validate(code, "10.0.0.2", "pytest")
        assert store.invite_codes[record.id].used_count == 0

    async def test_sanitizes_input(self, engine, issue):
        code, _ = await issue()
        result = await engine.validator.validate(f"  {code.lower()}  ", "10.0.0.1", "pytest")
        assert result.valid is True

    async def test_unlimited_code_has_no_remaining_count(self, engine, issue):
        code, _ = await issue()
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.remaining_uses is None
        assert result.to_response()["codeInfo"]["expiresAt"] is None

    async def test_invalid_format_lists_every_error(self, engine):
        result = await engine.validator.validate("OB-SEOUL-CLINIC-001-202413-abc", "10.0.0.1", "pytest")

        assert result.valid is False
        assert result.error_code is ErrorCode.INVALID_FORMAT
        assert result.error == result.errors[0]
        assert len(result.errors) >= 1
        assert any("OB-REGION-TYPE" in s for s in result.suggestions)

    async def test_raw_input_over_100_chars(self, engine):
        result = await engine.validator.validate("A" * 101, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.INVALID_FORMAT

    @pytest.mark.parametrize("raw", [None, "", "   "])
    async def test_missing_code(self, engine, raw):
        result = await engine.validator.validate(raw, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.INVALID_FORMAT
        assert result.error == "Please enter an invite code."

    async def test_unknown_code(self, engine, clinic):
        result = await engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.NOT_FOUND

    async def test_unknown_clinic(self, engine):
        result = await engine.validator.validate("OB-BUSAN-HOSPITAL-007-202401-A7B9X2K5", "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.CLINIC_INACTIVE

    async def test_inactive_clinic(self, engine, issue, clinic):
        code, _ = await issue()
        await engine.clinic_codes.deactivate(clinic.code, "doctor-1")

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.CLINIC_INACTIVE

    async def test_deactivated_code_reads_as_not_found(self, engine, issue):
        code, record = await issue()
        await engine.manager.deactivate(record.id, "doctor-1")

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.NOT_FOUND
        assert result.error == "Invite code not found."


# =============================================================================
# TEST: RATE LIMIT
# =============================================================================

class TestRateLimit:

    async def test_fourth_attempt_in_a_minute_is_limited(self, engine, issue):
        code, _ = await issue()
        for _ in range(3):
            bad = await engine.validator.validate("garbage", "10.0.0.1", "pytest")
            assert bad.error_code is ErrorCode.INVALID_FORMAT

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.RATE_LIMITED
        assert result.rate_limit.allowed is False
        assert result.rate_limit.remaining == 0
        assert "try again" in result.error

    async def test_rate_limit_reported_before_not_found(self, engine, clinic):
        outcomes = [
            (await engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.0.0.1", "pytest")).error_code
            for _ in range(4)
        ]
        assert outcomes == [ErrorCode.NOT_FOUND] * 3 + [ErrorCode.RATE_LIMITED]

    async def test_limit_is_per_ip(self, engine, issue):
        code, _ = await issue()
        for _ in range(4):
            await engine.validator.validate("garbage", "10.0.0.1", "pytest")

        result = await engine.validator.validate(code, "10.0.0.2", "pytest")
        assert result.valid is True

    async def test_window_reopens(self, engine, issue, clock):
        code, _ = await issue()
        for _ in range(4):
            await engine.validator.validate("garbage", "10.0.0.1", "pytest")

        clock.advance(seconds=61)
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.valid is True


# =============================================================================
# TEST: EXPIRY AND USAGE LIMITS
# =============================================================================

class TestExpiryAndUsage:

    async def test_expired_code(self, engine, issue, clock):
        code, _ = await issue(expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.EXPIRED
        assert "2024-01-16" in result.error

    async def test_expiry_instant_itself_is_expired(self, engine, issue, clock):
        code, _ = await issue(expires_at=clock.now + timedelta(hours=1))
        clock.advance(hours=1)
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.EXPIRED

    async def test_expiry_wins_over_deactivation(self, engine, issue, clock):
        code, record = await issue(expires_at=clock.now + timedelta(days=1))
        await engine.manager.deactivate(record.id, "doctor-1")
        clock.advance(days=2)

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.EXPIRED

    async def test_max_uses_exceeded(self, engine, issue):
        code, _ = await issue(max_uses=1)
        used = await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")
        assert used.valid is True

        result = await engine.validator.validate(code, "10.0.0.2", "pytest")

        assert result.error_code is ErrorCode.MAX_USES_EXCEEDED
        assert "1/1" in result.error


# =============================================================================
# TEST: USE
# =============================================================================

class TestUse:

    async def test_use_increments_and_records_usage(self, engine, issue, store, clock):
        code, record = await issue(max_uses=3)

        result = await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")

        assert result.valid is True
        assert result.remaining_uses == 2
        stored = store.invite_codes[record.id]
        assert stored.used_count == 1
        assert stored.last_used_at == clock.now
        assert len(store.usages) == 1
        assert store.usages[0].consumer_id == "customer-1"
        assert store.usages[0].code_id == record.id

    async def test_use_requires_consumer(self, engine, issue, store):
        code, record = await issue()
        result = await engine.validator.use(code, "", "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.INVALID_INPUT
        assert store.invite_codes[record.id].used_count == 0

    async def test_use_of_expired_code_changes_nothing(self, engine, issue, store, clock):
        code, record = await issue(max_uses=3, expires_at=clock.now + timedelta(minutes=1))
        clock.advance(minutes=2)

        result = await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.EXPIRED
        assert store.invite_codes[record.id].used_count == 0
        assert store.usages == []

    async def test_concurrent_use_of_single_use_code(self, engine, issue, store):
        code, record = await issue(max_uses=1)

        results = await asyncio.gather(*[
            engine.validator.use(code, f"customer-{i}", f"10.0.1.{i}", "pytest") for i in range(10)
        ])

        assert sum(1 for r in results if r.valid) == 1
        assert all(r.error_code is ErrorCode.MAX_USES_EXCEEDED for r in results if not r.valid)
        assert store.invite_codes[record.id].used_count == 1
        assert len(store.usages) == 1

    async def test_concurrent_use_never_exceeds_max(self, engine, issue, store):
        code, record = await issue(max_uses=3)

        results = await asyncio.gather(*[
            engine.validator.use(code, f"customer-{i}", f"10.0.2.{i}", "pytest") for i in range(12)
        ])

        assert sum(1 for r in results if r.valid) == 3
        assert store.invite_codes[record.id].used_count == 3

    async def test_use_has_its_own_rate_limit(self, engine, issue):
        code, _ = await issue()
        for _ in range(3):
            await engine.validator.validate("garbage", "10.0.0.1", "pytest")

        result = await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")
        assert result.valid is True


# =============================================================================
# TEST: AUDIT
# =============================================================================

class TestAudit:

    async def test_exactly_one_attempt_per_call(self, engine, issue, store, clock):
        code, _ = await issue(max_uses=1, expires_at=clock.now + timedelta(days=1))
        calls = [
            engine.validator.validate(code, "10.0.0.1", "pytest"),
            engine.validator.validate("garbage", "10.0.0.2", "pytest"),
            engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.0.0.3", "pytest"),
            engine.validator.use(code, "customer-1", "10.0.0.4", "pytest"),
            engine.validator.use(code, "customer-2", "10.0.0.5", "pytest"),
        ]
        for call in calls:
            before = len([a for a in store.attempts if a.action in ("code_validation", "code_use")])
            await call
            after = len([a for a in store.attempts if a.action in ("code_validation", "code_use")])
            assert after == before + 1

    async def test_rate_limited_calls_are_audited(self, engine, store):
        for _ in range(5):
            await engine.validator.validate("garbage", "10.0.0.1", "pytest")

        validations = [a for a in store.attempts if a.action == "code_validation"]
        assert len(validations) == 5
        assert [a.details["error_code"] for a in validations[-2:]] == ["RATE_LIMITED", "RATE_LIMITED"]

    async def test_attempt_details(self, engine, issue, store):
        code, record = await issue()
        await engine.validator.validate(code, "10.0.0.1", "agent/1.0", actor="customer-9")

        attempt = [a for a in store.attempts if a.action == "code_validation"][-1]
        assert attempt.success is True
        assert attempt.actor == "customer-9"
        assert attempt.client_ip == "10.0.0.1"
        assert attempt.user_agent == "agent/1.0"
        assert attempt.details["code_id"] == record.id
        assert attempt.details["code_format_valid"] is True

    async def test_anonymous_actor_by_default(self, engine, store):
        await engine.validator.validate("garbage", "10.0.0.1", "pytest")
        assert store.attempts[-1].actor == "anonymous"

    async def test_plaintext_never_in_audit(self, engine, issue, store):
        code, _ = await issue()
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")
        await engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.0.0.1", "pytest")

        for attempt in store.attempts:
            assert code not in str(attempt.details)
            assert UNKNOWN_SUFFIX_CODE not in str(attempt.details)

    async def test_audit_failure_does_not_change_outcome(self, engine, issue):
        code, _ = await issue()
        engine.validator.sink.record_attempt = AsyncMock(side_effect=RuntimeError("audit table locked"))

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.valid is True


# =============================================================================
# TEST: SYSTEM ERRORS
# =============================================================================

class TestSystemErrors:

    async def test_store_failure_is_opaque(self, engine, issue, store):
        code, _ = await issue()
        store.get_clinic = AsyncMock(side_effect=RuntimeError("password authentication failed for db"))

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.SYSTEM_ERROR
        assert result.error == OPAQUE_SYSTEM_MESSAGE
        assert "password" not in str(result.to_response())
        assert store.attempts[-1].action == "code_validation"
        assert store.attempts[-1].success is False

    async def test_use_store_failure_is_opaque(self, engine, issue, store):
        code, _ = await issue()
        store.consume_invite_code = AsyncMock(side_effect=RuntimeError("deadlock detected"))

        result = await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.SYSTEM_ERROR
        assert store.attempts[-1].action == "code_use"


# =============================================================================
# TEST: CACHE
# =============================================================================

class TestValidationCache:

    async def test_second_validation_is_served_from_cache(self, engine, issue, store):
        code, _ = await issue()
        store.find_invite_code = AsyncMock(wraps=store.find_invite_code)

        first = await engine.validator.validate(code, "10.0.0.1", "pytest")
        second = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert first.cached is False
        assert second.cached is True
        assert second.valid is True
        assert store.find_invite_code.await_count == 1

    async def test_cache_hit_is_still_rate_limited_and_audited(self, engine, issue, store):
        code, _ = await issue()
        for _ in range(3):
            await engine.validator.validate(code, "10.0.0.1", "pytest")

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.RATE_LIMITED
        assert len([a for a in store.attempts if a.action == "code_validation"]) == 4

    async def test_cache_is_per_ip(self, engine, issue):
        code, _ = await issue()
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        other = await engine.validator.validate(code, "10.0.0.2", "pytest")
        assert other.cached is False

    async def test_cache_rechecks_expiry(self, engine, issue, clock):
        code, _ = await issue(expires_at=clock.now + timedelta(minutes=2))
        assert (await engine.validator.validate(code, "10.0.0.1", "pytest")).valid is True

        clock.advance(minutes=3)
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.EXPIRED

    async def test_cache_entries_expire(self, engine, issue, clock):
        code, _ = await issue()
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        clock.advance(minutes=5)
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.cached is False

    async def test_use_invalidates_cache(self, engine, issue):
        code, _ = await issue(max_uses=1)
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        await engine.validator.use(code, "customer-1", "10.0.0.1", "pytest")

        result = await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert result.error_code is ErrorCode.MAX_USES_EXCEEDED

    async def test_clinic_deactivation_invalidates_cache(self, engine, issue, clinic):
        code, _ = await issue()
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert len(engine.cache) == 1

        await engine.clinic_codes.deactivate(clinic.code, "doctor-1")
        result = await engine.validator.validate(code, "10.0.0.1", "pytest")

        assert result.error_code is ErrorCode.CLINIC_INACTIVE
        assert result.cached is False
        assert len(engine.cache) == 0

    async def test_failures_are_not_cached(self, engine, clinic):
        await engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.0.0.1", "pytest")
        assert len(engine.cache) == 0


# =============================================================================
# TEST: ANOMALY SCANS
# =============================================================================

class TestAnomalyScans:

    async def test_repeated_failures_raise_high_alert(self, engine, clinic, store):
        for _ in range(10):
            await engine.validator.validate(UNKNOWN_SUFFIX_CODE, "10.6.6.6", "pytest")
        await engine.monitor.drain()

        assert store.alerts
        assert all(a.alert_type == "MULTIPLE_FAILED_CODES" for a in store.alerts)
        assert any(a.severity is Severity.HIGH for a in store.alerts)
        assert all(a.details["client_ip"] == "10.6.6.6" for a in store.alerts)

    async def test_success_does_not_schedule_scan(self, engine, issue, store):
        code, _ = await issue()
        await engine.validator.validate(code, "10.0.0.1", "pytest")
        assert engine.monitor.pending == 0
        await engine.monitor.drain()
        assert store.alerts == []
