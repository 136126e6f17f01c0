"""
Security Alert API Routes

Admin review of the alerts raised by the suspicious-activity monitor.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ..auth import Principal, require_admin
from ..models.domain import SecurityAlert
from ..services.codes import CodeEngine
from .deps import client_ip, get_engine, user_agent


router = APIRouter(prefix="/security/alerts", tags=["security-alerts"])


class ResolveAlertRequest(BaseModel):
    """Resolution note for an alert."""
    resolution: Any = Field(None, description="What was done about the alert (max 500 characters)")


def serialize_alert(alert: SecurityAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "alert_type": alert.alert_type,
        "severity": alert.severity.value,
        "details": alert.details,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
        "resolved": alert.resolved,
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
        "resolved_by": alert.resolved_by,
        "resolution_notes": alert.resolution_notes,
    }


@router.get("")
async def list_security_alerts(
    severity: Optional[str] = None,
    alert_type: Optional[str] = None,
    resolved: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    principal: Principal = Depends(require_admin),
    engine: CodeEngine = Depends(get_engine),
):
    """List security alerts, newest first."""
    result = await engine.alerts.list_alerts(
        severity=severity, alert_type=alert_type, resolved=resolved, page=page, limit=limit
    )
    return {
        "alerts": [serialize_alert(a) for a in result.alerts],
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "total_pages": result.total_pages,
            "has_next": result.has_next,
            "has_prev": result.has_prev,
        },
    }


@router.put("/{alert_id}/resolve")
async def resolve_security_alert(
    alert_id: str,
    body: ResolveAlertRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    engine: CodeEngine = Depends(get_engine),
):
    """Resolve an open alert with a note."""
    alert = await engine.alerts.resolve(
        alert_id,
        principal.user_id,
        body.resolution,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "alert": serialize_alert(alert)}
