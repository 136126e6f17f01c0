"""
Audit Sink

Where attempt records and security alerts go. Attempt records are awaited
by the caller before it responds; alerts are raised from background scans.
"""
import logging
from abc import ABC, abstractmethod

from ...models.domain import AttemptRecord, SecurityAlert
from .store import CodeStore

logger = logging.getLogger(__name__)


class AuditSink(ABC):

    @abstractmethod
    async def record_attempt(self, attempt: AttemptRecord) -> None:
        """Append one attempt record."""

    @abstractmethod
    async def raise_alert(self, alert: SecurityAlert) -> None:
        """Persist or forward a security alert."""


class StoreAuditSink(AuditSink):
    """Writes audit records and alerts into the CodeStore tables."""

    def __init__(self, store: CodeStore):
        self.store = store

    async def record_attempt(self, attempt: AttemptRecord) -> None:
        await self.store.append_attempt(attempt)

    async def raise_alert(self, alert: SecurityAlert) -> None:
        logger.warning(
            f"Security alert {alert.alert_type} severity={alert.severity.value} "
            f"reasons={alert.details.get('reasons')}"
        )
        await self.store.insert_alert(alert)
