"""
Code Engine wiring.

Builds every component once from Settings and hands them out together.
Nothing here is a module-level singleton: the application keeps one
CodeEngine on `app.state`, tests build their own.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from ...config import Settings
from ...models.domain import utcnow
from .alert_review import SecurityAlertReview
from .anomaly_detector import AnomalyDetector
from .audit import AuditSink, StoreAuditSink
from .authorization import ClinicAuthorizer, StoreClinicAuthorizer
from .clinic_code_issuer import ClinicCodeIssuer
from .invite_code_issuer import InviteCodeIssuer
from .invite_code_manager import InviteCodeManager
from .invite_code_validator import InviteCodeValidator, ValidationCache
from .monitor import SuspiciousActivityMonitor
from .rate_limiter import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore
from .security import CodeHasher, FieldCipher
from .sql_store import SqlAlchemyCodeStore
from .store import CodeStore, InMemoryCodeStore

logger = logging.getLogger(__name__)


@dataclass
class CodeEngine:
    store: CodeStore
    rate_limiter: RateLimiter
    sink: AuditSink
    authorizer: ClinicAuthorizer
    monitor: SuspiciousActivityMonitor
    cache: ValidationCache
    clinic_codes: ClinicCodeIssuer
    invite_codes: InviteCodeIssuer
    validator: InviteCodeValidator
    manager: InviteCodeManager
    alerts: SecurityAlertReview
    clock: Callable[[], datetime]

    async def close(self) -> None:
        await self.monitor.drain()
        await self.store.close()


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """IANA zone for the off-hours heuristic; None means the host's local zone."""
    if not name:
        return None
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def build_store(settings: Settings, session_factory=None) -> CodeStore:
    if settings.store_backend == "memory":
        return InMemoryCodeStore()
    if settings.store_backend == "sql":
        if session_factory is None:
            raise ValueError("The sql store backend needs a session factory")
        cipher = FieldCipher(settings.field_encryption_key) if settings.field_encryption_key else None
        return SqlAlchemyCodeStore(session_factory, cipher=cipher)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.store_backend}")


def build_counter_store(settings: Settings) -> CounterStore:
    if settings.rate_limit_backend == "redis":
        return RedisCounterStore.from_url(settings.redis_url)
    if settings.rate_limit_backend == "memory":
        return InMemoryCounterStore()
    raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.rate_limit_backend}")


def build_engine(
    settings: Settings,
    store: Optional[CodeStore] = None,
    counter_store: Optional[CounterStore] = None,
    session_factory=None,
    clock: Callable[[], datetime] = utcnow,
) -> CodeEngine:
    """Assemble a CodeEngine. Explicit `store` / `counter_store` win over settings."""
    if store is None:
        store = build_store(settings, session_factory)
    if counter_store is None:
        counter_store = build_counter_store(settings)

    hasher = CodeHasher(settings.code_hash_secret, iterations=settings.code_hash_iterations)
    rate_limiter = RateLimiter(counter_store, clock=clock)
    sink = StoreAuditSink(store)
    authorizer = StoreClinicAuthorizer(store)
    detector = AnomalyDetector(policy=settings.anomaly, local_tz=resolve_timezone(settings.anomaly_timezone), clock=clock)
    monitor = SuspiciousActivityMonitor(store, sink, detector=detector, policy=settings.anomaly, clock=clock)
    cache = ValidationCache(ttl_seconds=settings.validation_cache_ttl_seconds, clock=clock)

    logger.info(
        f"Code engine ready (store={type(store).__name__}, counters={type(counter_store).__name__})"
    )
    return CodeEngine(
        store=store,
        rate_limiter=rate_limiter,
        sink=sink,
        authorizer=authorizer,
        monitor=monitor,
        cache=cache,
        clinic_codes=ClinicCodeIssuer(
            store, rate_limiter, sink, policy=settings.rate_limits, clock=clock, cache=cache
        ),
        invite_codes=InviteCodeIssuer(
            store, hasher, rate_limiter, authorizer, sink, policy=settings.rate_limits, clock=clock
        ),
        validator=InviteCodeValidator(
            store, hasher, rate_limiter, sink,
            monitor=monitor, cache=cache, policy=settings.rate_limits, clock=clock,
        ),
        manager=InviteCodeManager(store, authorizer, sink, cache=cache, clock=clock),
        alerts=SecurityAlertReview(store, sink, clock=clock),
        clock=clock,
    )
