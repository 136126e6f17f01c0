"""
Shared request dependencies and response helpers for the code routers.
"""
import ipaddress
import math
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse

from ..errors import CodeEngineError, ErrorCode, RateLimitedError
from ..models.domain import ClinicRecord, InviteCodeRecord, ValidationResult, utcnow
from ..services.codes import CodeEngine


# errorCode -> HTTP status; anything unlisted is a 400
ERROR_STATUS = {
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.GENERATION_EXHAUSTED: 409,
    ErrorCode.STORE_ERROR: 500,
    ErrorCode.SYSTEM_ERROR: 500,
}

# Validation rejections are all 400, NOT_FOUND included; only rate limits
# and server faults get their own status.
VALIDATION_STATUS = {
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.STORE_ERROR: 500,
    ErrorCode.SYSTEM_ERROR: 500,
}


def get_engine(request: Request) -> CodeEngine:
    return request.app.state.engine


def _is_trusted(address: str, trusted: Sequence[str]) -> bool:
    if not address or not trusted:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        ip = None
    for entry in trusted:
        if address == entry:
            return True
        if ip is not None and "/" in entry:
            try:
                if ip in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
    return False


def client_ip(request: Request) -> str:
    """
    The address rate limits and audit records are keyed on.

    Forwarding headers count only when the socket peer is a trusted proxy.
    X-Forwarded-For is then read right to left and the first hop that is not
    itself a trusted proxy wins; X-Real-IP is the fallback.
    """
    peer = request.client.host if request.client else "unknown"
    settings = getattr(request.app.state, "settings", None)
    trusted = settings.trusted_proxies if settings is not None else []
    if not _is_trusted(peer, trusted):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted(hop, trusted):
                return hop
        if hops:
            return hops[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def validation_response(result: ValidationResult, now: Optional[datetime] = None) -> JSONResponse:
    """Render a ValidationResult with rate-limit headers."""
    status_code = 200 if result.valid else VALIDATION_STATUS.get(result.error_code, 400)
    headers = result.rate_limit.headers() if result.rate_limit else {}
    if status_code == 429 and result.rate_limit:
        headers["Retry-After"] = str(_retry_after(result.rate_limit.reset_at, now))
    return JSONResponse(content=result.to_response(), status_code=status_code, headers=headers)


def error_response(error: CodeEngineError, now: Optional[datetime] = None) -> JSONResponse:
    status_code = ERROR_STATUS.get(error.error_code, 400)
    headers: Dict[str, str] = {}
    if isinstance(error, RateLimitedError) and error.decision is not None:
        headers = error.decision.headers()
        headers["Retry-After"] = str(_retry_after(error.decision.reset_at, now))
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error.public_message,
            "errorCode": error.error_code.value,
        },
        headers=headers,
    )


def _retry_after(reset_at: datetime, now: Optional[datetime] = None) -> int:
    return max(1, math.ceil((reset_at - (now or utcnow())).total_seconds()))


def _iso(moment):
    return moment.isoformat() if moment else None


def serialize_invite_code(record: InviteCodeRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": record.id,
        "clinic_code": record.clinic_code,
        "code_hint": record.code_hint,
        "description": record.description,
        "max_uses": record.max_uses,
        "used_count": record.used_count,
        "remaining_uses": record.remaining_uses(),
        "active": record.active,
        "status": record.status(now or utcnow()).value,
        "expires_at": _iso(record.expires_at),
        "created_at": _iso(record.created_at),
        "last_used_at": _iso(record.last_used_at),
        "deactivated_at": _iso(record.deactivated_at),
    }


def serialize_clinic(clinic: ClinicRecord) -> Dict[str, Any]:
    return {
        "clinic_id": clinic.clinic_id,
        "code": clinic.code,
        "name": clinic.name,
        "clinic_type": clinic.clinic_type.value,
        "region": clinic.region.value,
        "address": clinic.address,
        "phone": clinic.phone,
        "active": clinic.active,
        "created_at": _iso(clinic.created_at),
        "deactivated_at": _iso(clinic.deactivated_at),
    }
