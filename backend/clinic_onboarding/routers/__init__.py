"""Clinic Onboarding - API Routers"""
from .invite_codes import router as invite_codes_router
from .clinic_codes import router as clinic_codes_router
from .security_alerts import router as security_alerts_router

__all__ = [
    "invite_codes_router",
    "clinic_codes_router",
    "security_alerts_router",
]
