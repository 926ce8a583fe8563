"""
Patient persistence for the sync services.

Loads tenant-scoped patients together with the organization and facility
they are synchronized under, and writes the network identity produced by
identity sync.
"""

from dataclasses import dataclass
from typing import List, Optional

from hie_sync.core.database import AsyncSessionLocal, transaction
from hie_sync.core.errors import FacilityNotFoundError, IdentityConflictError, PatientNotFoundError
from hie_sync.core.logging import get_logger
from hie_sync.models import Facility, Organization, Patient
from hie_sync.schemas.patient import NetworkIdentity, NetworkSource
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

logger = get_logger(__name__)


@dataclass
class PatientContext:
    """Organization and facility a patient is synchronized under"""

    organization: Organization
    facility: Facility


class PatientRepository:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def get_patient(self, tenant_id: str, patient_id: str) -> Patient:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Patient).where(Patient.id == patient_id, Patient.cx_id == tenant_id)
            )
            patient = result.scalar_one_or_none()
        if patient is None:
            raise PatientNotFoundError(f"Patient {patient_id} not found", {"tenant_id": tenant_id})
        return patient

    async def list_patients(self, tenant_id: str) -> List[Patient]:
        async with self.session_factory() as session:
            result = await session.execute(select(Patient).where(Patient.cx_id == tenant_id).order_by(Patient.id))
            return list(result.scalars().all())

    async def get_patient_context(self, patient: Patient, facility_id: str) -> PatientContext:
        async with self.session_factory() as session:
            org_result = await session.execute(select(Organization).where(Organization.cx_id == patient.cx_id))
            organization = org_result.scalar_one_or_none()
            fac_result = await session.execute(
                select(Facility).where(Facility.id == facility_id, Facility.cx_id == patient.cx_id)
            )
            facility = fac_result.scalars().first()
        if organization is None:
            raise FacilityNotFoundError(
                f"Organization not found for tenant {patient.cx_id}", {"patient_id": patient.id}
            )
        if facility is None:
            raise FacilityNotFoundError(
                f"Facility {facility_id} not found", {"patient_id": patient.id, "tenant_id": patient.cx_id}
            )
        return PatientContext(organization=organization, facility=facility)

    async def set_network_identity(
        self,
        patient: Patient,
        remote_patient_id: str,
        remote_person_id: Optional[str] = None,
        source: NetworkSource = NetworkSource.COMMONWELL,
    ) -> NetworkIdentity:
        """
        Persist the remote ids of a patient.

        The remote patient id is written once; a different id for an already
        registered patient raises IdentityConflictError. A missing person id
        keeps the stored one.
        """
        async with transaction(self.session_factory) as session:
            stored = await self._lock_patient(session, patient)
            current = stored.get_network_identity(source)
            if current and current.remote_patient_id != remote_patient_id:
                raise IdentityConflictError(
                    "Remote patient id is already assigned",
                    {
                        "patient_id": patient.id,
                        "stored_remote_patient_id": current.remote_patient_id,
                        "new_remote_patient_id": remote_patient_id,
                    },
                )
            identity = NetworkIdentity(
                remote_patient_id=remote_patient_id,
                remote_person_id=remote_person_id or (current.remote_person_id if current else None),
            )
            stored.data = stored.with_network_identity(identity, source)

        patient.data = stored.data
        logger.info(
            "network_identity_stored",
            patient_id=patient.id,
            source=source.value,
            remote_patient_id=identity.remote_patient_id,
            remote_person_id=identity.remote_person_id,
        )
        return identity

    async def clear_person_id(self, patient: Patient, source: NetworkSource = NetworkSource.COMMONWELL) -> None:
        """Forget the linked person, keeping the remote patient id."""
        async with transaction(self.session_factory) as session:
            stored = await self._lock_patient(session, patient)
            current = stored.get_network_identity(source)
            if current is None:
                return
            stored.data = stored.with_network_identity(
                NetworkIdentity(remote_patient_id=current.remote_patient_id), source
            )
        patient.data = stored.data

    async def _lock_patient(self, session, patient: Patient) -> Patient:
        result = await session.execute(
            select(Patient).where(Patient.id == patient.id, Patient.cx_id == patient.cx_id).with_for_update()
        )
        stored = result.scalar_one_or_none()
        if stored is None:
            raise PatientNotFoundError(f"Patient {patient.id} not found", {"tenant_id": patient.cx_id})
        return stored
