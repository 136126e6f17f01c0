"""
Security Alert Review

Admin-side listing and resolution of the alerts raised by the
suspicious-activity monitor. An alert is resolved once, with a note;
resolving it again is a NOT_FOUND.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from ...errors import InvalidInputError, NotFoundError
from ...models.domain import AttemptRecord, AuditAction, SecurityAlert, SecurityAlertPage, Severity, utcnow
from .audit import AuditSink
from .store import CodeStore

logger = logging.getLogger(__name__)

MAX_PAGE = 1000
MAX_PAGE_SIZE = 100
MAX_RESOLUTION_LENGTH = 500


class SecurityAlertReview:

    def __init__(self, store: CodeStore, sink: AuditSink, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.sink = sink
        self.clock = clock

    async def list_alerts(
        self,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
        resolved: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SecurityAlertPage:
        """Alerts matching every given filter, newest first."""
        resolved_severity = None
        if severity is not None:
            try:
                resolved_severity = Severity(severity.strip().upper())
            except ValueError:
                raise InvalidInputError(f"severity must be one of {', '.join(s.value for s in Severity)}")
        if not 1 <= page <= MAX_PAGE:
            raise InvalidInputError(f"page must be between 1 and {MAX_PAGE}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        alerts, total = await self.store.list_alerts(
            severity=resolved_severity,
            alert_type=alert_type.strip().upper() if alert_type else None,
            resolved=resolved,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return SecurityAlertPage(alerts=alerts, total=total, page=page, limit=limit)

    async def resolve(
        self,
        alert_id: str,
        admin_id: str,
        resolution: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SecurityAlert:
        """
        Mark an open alert resolved.

        Raises:
            InvalidInputError: resolution note missing or too long
            NotFoundError: no such alert, or it was already resolved
        """
        resolution = resolution.strip() if isinstance(resolution, str) else ""
        if not resolution:
            raise InvalidInputError("A resolution note is required")
        if len(resolution) > MAX_RESOLUTION_LENGTH:
            raise InvalidInputError(f"Resolution must be at most {MAX_RESOLUTION_LENGTH} characters")

        alert = await self.store.resolve_alert(alert_id, admin_id, resolution, self.clock())
        if alert is None:
            raise NotFoundError("Security alert not found or already resolved")

        logger.info(f"Security alert {alert.id} ({alert.alert_type}) resolved by {admin_id}")
        try:
            await self.sink.record_attempt(AttemptRecord(
                action=AuditAction.SECURITY_ALERT_RESOLUTION.value,
                client_ip=client_ip or "",
                user_agent=user_agent or "",
                success=True,
                actor=admin_id,
                details={"alert_id": alert.id, "alert_type": alert.alert_type, "severity": alert.severity.value},
                timestamp=self.clock(),
            ))
        except Exception:
            logger.exception("Failed to write audit record for security alert resolution")
        return alert
