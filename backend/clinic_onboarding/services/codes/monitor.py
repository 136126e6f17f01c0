"""
Suspicious Activity Monitor

Loads the recent attempts of one client IP, runs the AnomalyDetector over
them and raises a MULTIPLE_FAILED_CODES alert when the pattern is
suspicious.

Scans are scheduled fire-and-forget from the request path: `schedule`
returns immediately, failures are logged and never reach the caller.
Task references are held until completion so the loop cannot drop them.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from ...config import AnomalyPolicy
from ...models.domain import AnomalyReport, AuditAction, SecurityAlert, utcnow
from .anomaly_detector import AnomalyDetector
from .audit import AuditSink
from .store import CodeStore

logger = logging.getLogger(__name__)

ALERT_MULTIPLE_FAILED_CODES = "MULTIPLE_FAILED_CODES"


class SuspiciousActivityMonitor:

    def __init__(
        self,
        store: CodeStore,
        sink: AuditSink,
        detector: Optional[AnomalyDetector] = None,
        policy: Optional[AnomalyPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sink = sink
        self.policy = policy or AnomalyPolicy()
        self.detector = detector or AnomalyDetector(policy=self.policy, clock=clock)
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def scan(self, client_ip: str, action: str = AuditAction.CODE_VALIDATION.value) -> AnomalyReport:
        """Analyze the last scan window for `client_ip`; alert when suspicious."""
        now = self.clock()
        since = now - timedelta(seconds=self.policy.scan_window_seconds)
        attempts = await self.store.recent_attempts(action, client_ip, since)
        report = self.detector.analyze(attempts, now=now)

        if report.suspicious:
            await self.sink.raise_alert(SecurityAlert(
                alert_type=ALERT_MULTIPLE_FAILED_CODES,
                severity=report.severity,
                details={
                    "client_ip": client_ip,
                    "action": action,
                    "reasons": report.reasons,
                    "attempt_count": len(attempts),
                    "failed_count": sum(1 for a in attempts if not a.success),
                },
                created_at=now,
            ))
        return report

    def schedule(self, client_ip: str, action: str = AuditAction.CODE_VALIDATION.value) -> Optional[asyncio.Task]:
        """Start a background scan. Returns the task, or None outside an event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; suspicious activity scan skipped")
            return None

        task = loop.create_task(self._scan_logged(client_ip, action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _scan_logged(self, client_ip: str, action: str) -> None:
        try:
            await self.scan(client_ip, action)
        except Exception:
            logger.exception("Suspicious activity scan failed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled scan to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
