"""
Clinic Code API Routes

Issuers create and deactivate clinics; anyone may verify a clinic code.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator

from ..auth import Principal, require_issuer
from ..services.codes import CodeEngine
from .deps import client_ip, get_engine, serialize_clinic, user_agent


router = APIRouter(prefix="/clinic-codes", tags=["clinic-codes"])


class CreateClinicRequest(BaseModel):
    """Request to register a clinic and mint its clinic code."""
    name: str = Field(..., description="Clinic name")
    clinic_type: str = Field(..., description="clinic, traditional-clinic or hospital")
    region: str = Field(..., description="Region name (SEOUL) or Korean label (서울)")
    address: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_clinic_code(
    body: CreateClinicRequest,
    request: Request,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    clinic = await engine.clinic_codes.issue(
        name=body.name,
        clinic_type=body.clinic_type,
        region=body.region,
        issuer_id=principal.user_id,
        address=body.address,
        phone=body.phone,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "clinic": serialize_clinic(clinic)}


@router.get("/{clinic_code}")
async def verify_clinic_code(clinic_code: str, engine: CodeEngine = Depends(get_engine)):
    """Public check that a clinic code belongs to an active clinic."""
    clinic = await engine.clinic_codes.lookup(clinic_code)
    return {"valid": True, "clinic": clinic.public_info()}


@router.put("/{clinic_code}/deactivate")
async def deactivate_clinic_code(
    clinic_code: str,
    request: Request,
    principal: Principal = Depends(require_issuer),
    engine: CodeEngine = Depends(get_engine),
):
    clinic = await engine.clinic_codes.deactivate(
        clinic_code.strip().upper(),
        principal.user_id,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "clinic": serialize_clinic(clinic)}
