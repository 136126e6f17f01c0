"""
Clinic ownership checks.

Issuer-side operations (issue, list, deactivate, usage history) are allowed
only for the identity that owns the clinic. The lookup is delegated so a
deployment can plug in its own identity provider.
"""
from abc import ABC, abstractmethod

from ...errors import NotAuthorizedError
from ...models.domain import ClinicRecord
from .store import CodeStore


class ClinicAuthorizer(ABC):

    @abstractmethod
    async def authorize(self, issuer_id: str, clinic_code: str) -> ClinicRecord:
        """Return the clinic if `issuer_id` may manage it, else raise NotAuthorizedError."""


class StoreClinicAuthorizer(ClinicAuthorizer):
    """Ownership is the clinic's `owner_id` as recorded at issuance."""

    def __init__(self, store: CodeStore):
        self.store = store

    async def authorize(self, issuer_id: str, clinic_code: str) -> ClinicRecord:
        clinic = await self.store.get_clinic(clinic_code)
        # Unknown clinics look the same as foreign ones
        if clinic is None or not issuer_id or clinic.owner_id != issuer_id:
            raise NotAuthorizedError("You do not have permission to manage this clinic")
        return clinic
