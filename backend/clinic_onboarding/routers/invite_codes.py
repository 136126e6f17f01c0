"""
Invite Code API Routes

Customer-facing validation and use, plus issuer-side issuance and
management. Validation bodies keep the client's camelCase contract;
management responses use the API's snake_case.
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator

from ..auth import Principal, get_current_principal, get_optional_principal, require_issuer
from ..services.codes import CodeEngine
from .deps import (
    client_ip, get_engine, serialize_invite_code, user_agent, validation_response,
)


router = APIRouter(prefix="/invite-codes", tags=["invite-codes"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CodeRequest(BaseModel):
    """An invite code as typed by the customer."""
    code: Any = Field(None, description="Invite code, e.g. OB-SEOUL-CLINIC-001-202401-A7B9X2K5")


class CreateInviteCodeRequest(BaseModel):
    """Request to issue a new invite code."""
    clinic_code: str = Field(..., description="Clinic the code grants access to")
    description: str = Field(default="", description="Issuer-facing note")
    max_uses: Optional[int] = Field(None, description="Usage limit; omit for unlimited")
    expires_at: Optional[datetime] = Field(None, description="Expiry instant; omit for no expiry")

    @field_validator("clinic_code")
    @classmethod
    def normalize_clinic_code(cls, v: str) -> str:
        return v.strip().upper()


# =============================================================================
# CUSTOMER ENDPOINTS
# =============================================================================

@router.post("/validate")
async def validate_invite_code(
    body: CodeRequest,
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
    engine: CodeEngine = Depends(get_engine),
):
    """
    Check an invite code without consuming it.

    Rate limited per client IP; every call is audited.
    """
    result = await engine.validator.validate(
        body.code,
        client_ip(request),
        user_agent(request),
        actor=principal.user_id if principal else None,
    )
    return validation_response(result, now=engine.clock())


@router.post("/use")
async def use_invite_code(
    body: CodeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    engine: CodeEngine = Depends(get_engine),
):
    """Redeem one use of an invite code for the signed-in customer."""
    result = await engine.validator.use(
        body.code,
        principal.user_id,
        client_ip(request),
        user_agent(request),
    )
    return validation_response(result, now=engine.clock())


# =============================================================================
# ISSUER ENDPOINTS
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invite_code(
    body: CreateInviteCodeRequest,
    request: Request,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    """
    Issue an invite code.

    The plaintext code is in this response only; it cannot be retrieved later.
    """
    issued = await engine.invite_codes.issue(
        clinic_code=body.clinic_code,
        description=body.description,
        issuer_id=principal.user_id,
        max_uses=body.max_uses,
        expires_at=body.expires_at,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return {
        "success": True,
        "invite_code": issued.plain_code,
        "code": serialize_invite_code(issued.record, now=engine.clock()),
    }


@router.get("")
async def list_invite_codes(
    clinic_code: str,
    status: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    """List a clinic's invite codes with filtering, sorting and pagination."""
    result = await engine.manager.list_codes(
        principal.user_id,
        clinic_code.strip().upper(),
        status=status,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {
        "codes": [serialize_invite_code(c, now=engine.clock()) for c in result.codes],
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "total_pages": result.total_pages,
            "has_next": result.has_next,
            "has_prev": result.has_prev,
        },
    }


@router.put("/{code_id}/deactivate")
async def deactivate_invite_code(
    code_id: str,
    request: Request,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    """Deactivate an invite code. Repeating the call is harmless."""
    record = await engine.manager.deactivate(
        code_id, principal.user_id, client_ip=client_ip(request), user_agent=user_agent(request)
    )
    return {"success": True, "code": serialize_invite_code(record, now=engine.clock())}


@router.get("/{code_id}/usage-history")
async def get_usage_history(
    code_id: str,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    """Who used an invite code and when, newest first."""
    usages = await engine.manager.usage_history(code_id, principal.user_id)
    return {
        "code_id": code_id,
        "total": len(usages),
        "usages": [
            {
                "id": u.id,
                "consumer_id": u.consumer_id,
                "used_at": u.used_at.isoformat(),
                "client_ip": u.client_ip,
                "user_agent": u.user_agent,
            }
            for u in usages
        ],
    }
