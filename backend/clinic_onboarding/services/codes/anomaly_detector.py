"""
Anomaly Detector

Stateless analysis over a window of recent attempts. Each heuristic is
evaluated independently; the reported severity is the worst one triggered.

Heuristics (thresholds come from AnomalyPolicy):
- burst failures: many failed attempts within a short window
- user-agent fan-out: many distinct user agents behind one IP
- off-hours pattern: most attempts in the small hours, local time
"""
from collections import defaultdict
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Set

from ...config import AnomalyPolicy
from ...models.domain import AnomalyReport, AttemptRecord, Severity, utcnow


REASON_BURST_FAILURES = "burst failures"
REASON_REPEATED_FAILURES = "repeated failures"
REASON_USER_AGENT_FAN_OUT = "credential-stuffing-like fan-out"
REASON_OFF_HOURS = "off-hours pattern"


class AnomalyDetector:
    """Flags suspicious attempt patterns. Has no side effects."""

    def __init__(
        self,
        policy: Optional[AnomalyPolicy] = None,
        local_tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.policy = policy or AnomalyPolicy()
        self.local_tz = local_tz
        self.clock = clock

    def analyze(self, attempts: Iterable[AttemptRecord], now: Optional[datetime] = None) -> AnomalyReport:
        attempts = list(attempts)
        now = now or self.clock()
        reasons: List[str] = []
        severity = Severity.LOW

        failure_severity = self._check_failures(attempts, now)
        if failure_severity is Severity.HIGH:
            reasons.append(REASON_BURST_FAILURES)
        elif failure_severity is Severity.MEDIUM:
            reasons.append(REASON_REPEATED_FAILURES)
        severity = _worst(severity, failure_severity)

        if self._user_agent_fan_out(attempts):
            reasons.append(REASON_USER_AGENT_FAN_OUT)
            severity = _worst(severity, Severity.MEDIUM)

        if self._off_hours(attempts):
            reasons.append(REASON_OFF_HOURS)
            severity = _worst(severity, Severity.MEDIUM)

        return AnomalyReport(suspicious=bool(reasons), reasons=reasons, severity=severity)

    def _check_failures(self, attempts: List[AttemptRecord], now: datetime) -> Severity:
        since = now - timedelta(seconds=self.policy.failure_window_seconds)
        failures = sum(1 for a in attempts if not a.success and since <= a.timestamp <= now)

        if failures >= self.policy.high_failure_count:
            return Severity.HIGH
        if failures >= self.policy.medium_failure_count:
            return Severity.MEDIUM
        return Severity.LOW

    def _user_agent_fan_out(self, attempts: List[AttemptRecord]) -> bool:
        agents_by_ip: Dict[str, Set[str]] = defaultdict(set)
        for attempt in attempts:
            agents_by_ip[attempt.client_ip].add(attempt.user_agent)
        return any(len(agents) > self.policy.max_user_agents_per_ip for agents in agents_by_ip.values())

    def _off_hours(self, attempts: List[AttemptRecord]) -> bool:
        if not attempts:
            return False
        start, end = self.policy.off_hours
        night = sum(1 for a in attempts if start <= self._local_hour(a.timestamp) <= end)
        return night > len(attempts) * self.policy.off_hours_ratio

    def _local_hour(self, moment: datetime) -> int:
        if self.local_tz is not None:
            return moment.astimezone(self.local_tz).hour
        return moment.astimezone().hour


def _worst(a: Severity, b: Severity) -> Severity:
    return a if a.rank >= b.rank else b
