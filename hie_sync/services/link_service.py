"""
Manual management of a patient's Person link on the network.
"""

from typing import Any, Dict, List, Optional

from hie_sync.core.errors import NetworkIdentityMissingError
from hie_sync.core.logging import get_logger
from hie_sync.core.sentry import capture_error
from hie_sync.integrations.network.models import get_id
from hie_sync.models import Patient
from hie_sync.schemas.patient import NetworkIdentity, PatientLinks, PersonLinkDTO
from hie_sync.services.identity_sync import IdentitySyncEngine, SyncSession
from hie_sync.services.patient_conversion import get_matching_strong_ids

logger = get_logger(__name__)

LINK_CONTEXT = "network.patient.link"


def person_to_dto(person: Dict[str, Any]) -> Optional[PersonLinkDTO]:
    person_id = get_id(person)
    if not person_id:
        return None
    details = person.get("details") or {}
    name = (details.get("name") or [{}])[0]
    return PersonLinkDTO(
        id=person_id,
        first_name=" ".join(name.get("given") or []) or None,
        last_name=" ".join(name.get("family") or []) or None,
        birth_date=details.get("birthDate"),
        gender=(details.get("gender") or {}).get("code"),
    )


class LinkService:
    """Read, create and reset Patient<>Person links"""

    def __init__(self, engine: IdentitySyncEngine):
        self.engine = engine

    async def get_links(self, patient: Patient, facility_id: str) -> PatientLinks:
        """The linked person and the persons matching the patient's demographics."""
        identity = self._require_identity(patient)
        session = await self.engine.open_session(patient, facility_id)

        current: List[PersonLinkDTO] = []
        if identity.remote_person_id:
            result = await session.client.get_person(session.meta, identity.remote_person_id)
            if not result.not_found:
                dto = person_to_dto(result.unwrap() or {})
                if dto:
                    current.append(dto)

        current_ids = {dto.id for dto in current}
        persons = (await session.client.find_person(session.meta, identity.remote_patient_id)).unwrap()
        potential = [
            dto for dto in (person_to_dto(p) for p in persons) if dto is not None and dto.id not in current_ids
        ]
        return PatientLinks(current_links=current, potential_links=potential)

    async def create_link(self, patient: Patient, facility_id: str, person_id: str) -> None:
        """Link the patient to `person_id`, replacing an existing link to another person."""
        identity = self._require_identity(patient)
        session = await self.engine.open_session(patient, facility_id)
        try:
            if identity.remote_person_id and identity.remote_person_id != person_id:
                await self._reset(session, patient, identity)

            person = (await session.client.get_person(session.meta, person_id)).unwrap() or {}
            strong_ids = get_matching_strong_ids(person, session.network_patient)
            (
                await session.client.add_or_upgrade_patient_link(
                    session.meta,
                    person_id,
                    session.client.patient_url(identity.remote_patient_id),
                    strong_ids[0] if strong_ids else None,
                )
            ).unwrap()
            await self.engine.patients.set_network_identity(
                patient, identity.remote_patient_id, person_id, source=self.engine.source
            )
            logger.info("patient_link_created", patient_id=patient.id, remote_person_id=person_id)
        except Exception as e:
            capture_error(
                e,
                {
                    "patient_id": patient.id,
                    "remote_person_id": person_id,
                    "network_reference": session.reference,
                    "context": f"{LINK_CONTEXT}.create",
                },
            )
            raise

    async def reset_link(self, patient: Patient, facility_id: str) -> None:
        """Remove the Patient<>Person link and forget the stored person id."""
        identity = self._require_identity(patient)
        if not identity.remote_person_id:
            return
        session = await self.engine.open_session(patient, facility_id)
        try:
            await self._reset(session, patient, identity)
        except Exception as e:
            capture_error(
                e,
                {
                    "patient_id": patient.id,
                    "network_reference": session.reference,
                    "context": f"{LINK_CONTEXT}.reset",
                },
            )
            raise

    async def _reset(self, session: SyncSession, patient: Patient, identity: NetworkIdentity) -> None:
        result = await session.client.reset_patient_link(
            session.meta, identity.remote_person_id, identity.remote_patient_id
        )
        if not result.not_found:
            result.unwrap()
        await self.engine.patients.clear_person_id(patient, source=self.engine.source)
        logger.info("patient_link_reset", patient_id=patient.id, remote_person_id=identity.remote_person_id)

    def _require_identity(self, patient: Patient) -> NetworkIdentity:
        identity = patient.get_network_identity(self.engine.source)
        if identity is None:
            raise NetworkIdentityMissingError(
                f"Patient {patient.id} is not registered with the network", {"tenant_id": patient.cx_id}
            )
        return identity
