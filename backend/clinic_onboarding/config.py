"""
Clinic Onboarding - Configuration

Settings are read from environment variables. Rate-limit and anomaly
thresholds are policy objects so deployments can tune them; the defaults
match the long-standing production values.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


MAX_VALIDATION_CACHE_TTL_SECONDS = 300


@dataclass(frozen=True)
class RateLimitRule:
    """A fixed-window limit: `max_attempts` per `window_ms`."""
    max_attempts: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limits per action. Identity is the client IP unless noted."""
    validate: RateLimitRule = RateLimitRule(3, 60_000)
    use: RateLimitRule = RateLimitRule(3, 60_000)
    generate_invite: RateLimitRule = RateLimitRule(5, 3_600_000)  # per issuer
    generate_clinic: RateLimitRule = RateLimitRule(3, 3_600_000)


@dataclass(frozen=True)
class AnomalyPolicy:
    """Thresholds for the suspicious-activity heuristics."""
    failure_window_seconds: int = 5 * 60
    high_failure_count: int = 10
    medium_failure_count: int = 5
    max_user_agents_per_ip: int = 5
    off_hours: Tuple[int, int] = (2, 5)  # inclusive local hours
    off_hours_ratio: float = 0.8
    scan_window_seconds: int = 60 * 60


@dataclass
class Settings:
    """Runtime settings."""
    database_url: str = "sqlite+aiosqlite:///./clinic_onboarding.db"
    store_backend: str = "sql"  # sql | memory
    jwt_secret_key: str = "clinic-onboarding-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    code_hash_secret: str = "clinic-onboarding-code-hash-secret-change-in-production"
    code_hash_iterations: int = 100_000
    field_encryption_key: Optional[str] = None
    rate_limit_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    validation_cache_ttl_seconds: int = MAX_VALIDATION_CACHE_TTL_SECONDS
    anomaly_timezone: Optional[str] = None
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    # Peers allowed to set X-Forwarded-For / X-Real-IP (addresses or CIDR blocks)
    trusted_proxies: List[str] = field(default_factory=list)
    rate_limits: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    anomaly: AnomalyPolicy = field(default_factory=AnomalyPolicy)

    def __post_init__(self):
        # Cached validation results must not outlive five minutes
        self.validation_cache_ttl_seconds = max(
            0, min(self.validation_cache_ttl_seconds, MAX_VALIDATION_CACHE_TTL_SECONDS)
        )


def load_settings() -> Settings:
    """Build Settings from the environment."""
    origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    proxies = os.getenv("TRUSTED_PROXIES", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        store_backend=os.getenv("STORE_BACKEND", Settings.store_backend),
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", Settings.jwt_secret_key),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", Settings.jwt_algorithm),
        code_hash_secret=os.getenv("CODE_HASH_SECRET", Settings.code_hash_secret),
        code_hash_iterations=int(os.getenv("CODE_HASH_ITERATIONS", str(Settings.code_hash_iterations))),
        field_encryption_key=os.getenv("FIELD_ENCRYPTION_KEY"),
        rate_limit_backend=os.getenv("RATE_LIMIT_BACKEND", Settings.rate_limit_backend),
        redis_url=os.getenv("REDIS_URL", Settings.redis_url),
        validation_cache_ttl_seconds=int(
            os.getenv("VALIDATION_CACHE_TTL_SECONDS", str(MAX_VALIDATION_CACHE_TTL_SECONDS))
        ),
        anomaly_timezone=os.getenv("ANOMALY_TIMEZONE"),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        trusted_proxies=[p.strip() for p in proxies.split(",") if p.strip()],
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
