"""
Identity synchronization with the remote network

Keeps a patient's NetworkIdentity consistent with the network and advances
the Patient<>Person link toward the highest trust level it supports.

Flow for a new patient:
1. Register the Patient for the owning organization (id stored right away)
2. Find a Person matching the demographics, or enroll a new one (id stored)
3. Link Patient to Person, with a shared strong identifier as proof
4. Best-effort upgrade of the patient's LOLA 1 network links

Ids already stored are never rolled back when a later step fails.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from hie_sync.core.errors import RegistrationError
from hie_sync.core.logging import get_logger
from hie_sync.core.sentry import capture_error, capture_warning
from hie_sync.integrations.network import NetworkClient, NetworkClientFactory, PatientLink, RequestMetadata, StrongId
from hie_sync.integrations.network.models import get_id, get_patient_id, get_self_link
from hie_sync.models import Patient
from hie_sync.schemas.patient import NetworkSource
from hie_sync.services.patient_conversion import get_matching_strong_ids, make_person_for_patient, patient_to_network
from hie_sync.services.patient_store import PatientContext, PatientRepository

logger = get_logger(__name__)

CREATE_CONTEXT = "network.patient.create"
UPDATE_CONTEXT = "network.patient.update"
DELETE_CONTEXT = "network.patient.delete"


@dataclass
class SyncSession:
    """Everything needed to talk to the network about one patient"""

    context: PatientContext
    client: NetworkClient
    meta: RequestMetadata
    network_patient: Dict[str, Any]

    @property
    def reference(self) -> Optional[str]:
        return self.client.last_reference_header


@dataclass
class LinkInfo:
    """State of the link between a person and the patient"""

    link: Optional[PatientLink]
    strong_ids: List[StrongId]

    @property
    def has_link(self) -> bool:
        return self.link is not None and self.link.assurance_level is not None

    @property
    def is_trusted(self) -> bool:
        return self.link is not None and self.link.is_trusted

    @property
    def needs_upgrade(self) -> bool:
        return not self.has_link or (not self.is_trusted and bool(self.strong_ids))


class IdentitySyncEngine:
    def __init__(
        self,
        client_factory: NetworkClientFactory,
        patients: PatientRepository,
        source: NetworkSource = NetworkSource.COMMONWELL,
    ):
        self.client_factory = client_factory
        self.patients = patients
        self.source = source

    async def open_session(self, patient: Patient, facility_id: str) -> SyncSession:
        context = await self.patients.get_patient_context(patient, facility_id)
        return SyncSession(
            context=context,
            client=self.client_factory.for_organization(context.organization),
            meta=self.client_factory.request_metadata(context.organization, context.facility),
            network_patient=patient_to_network(patient, context.organization),
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def sync_create(self, patient: Patient, facility_id: str) -> None:
        session: Optional[SyncSession] = None
        try:
            session = await self.open_session(patient, facility_id)
            remote_patient_id, patient_href = await self.register_patient(patient, session)
            await self.find_or_create_person_and_link(patient, session, remote_patient_id, patient_href)
        except Exception as e:
            self._capture_failure(e, patient, facility_id, session, CREATE_CONTEXT)
            raise

    async def sync_update(self, patient: Patient, facility_id: str) -> None:
        identity = patient.get_network_identity(self.source)
        if identity is None:
            capture_warning(
                "Network identity missing on update, registering the patient",
                {"patient_id": patient.id, "facility_id": facility_id, "context": UPDATE_CONTEXT},
            )
            await self.sync_create(patient, facility_id)
            return

        session: Optional[SyncSession] = None
        try:
            session = await self.open_session(patient, facility_id)
            remote_patient_id = identity.remote_patient_id
            person_id = identity.remote_person_id
            patient_href = await self.update_patient(session, remote_patient_id)

            if not person_id:
                await self.find_or_create_person_and_link(patient, session, remote_patient_id, patient_href)
                return

            person = make_person_for_patient(session.network_patient)
            result = await session.client.update_person(session.meta, person, person_id)
            if result.not_found:
                capture_warning(
                    "Person not found on update, finding or creating it",
                    {
                        "patient_id": patient.id,
                        "remote_patient_id": remote_patient_id,
                        "remote_person_id": person_id,
                        "network_reference": session.reference,
                        "context": UPDATE_CONTEXT,
                    },
                )
                await self.find_or_create_person_and_link(patient, session, remote_patient_id, patient_href)
                return
            updated_person = result.unwrap() or {}
            if not updated_person.get("enrolled", True):
                (await session.client.reenroll_person(session.meta, person_id)).unwrap()
                logger.info("person_reenrolled", patient_id=patient.id, remote_person_id=person_id)

            link_info = await self.get_link_info(session, person, person_id, remote_patient_id)
            if link_info.needs_upgrade:
                strong_id = link_info.strong_ids[0] if link_info.strong_ids else None
                (
                    await session.client.add_or_upgrade_patient_link(session.meta, person_id, patient_href, strong_id)
                ).unwrap()
                logger.info(
                    "patient_link_upgraded",
                    patient_id=patient.id,
                    remote_person_id=person_id,
                    had_link=link_info.has_link,
                    with_strong_id=strong_id is not None,
                )

            await self._auto_upgrade_network_links(session, remote_patient_id, person_id, UPDATE_CONTEXT)
        except Exception as e:
            self._capture_failure(e, patient, facility_id, session, UPDATE_CONTEXT)
            raise

    async def sync_delete(self, patient: Patient, facility_id: str) -> None:
        identity = patient.get_network_identity(self.source)
        if identity is None:
            logger.info("network_identity_missing_on_delete", patient_id=patient.id)
            return

        session: Optional[SyncSession] = None
        try:
            session = await self.open_session(patient, facility_id)
            (await session.client.delete_patient(session.meta, identity.remote_patient_id)).unwrap()
            logger.info("network_patient_deleted", patient_id=patient.id, remote_patient_id=identity.remote_patient_id)
        except Exception as e:
            self._capture_failure(e, patient, facility_id, session, DELETE_CONTEXT)
            raise

    # =========================================================================
    # Steps
    # =========================================================================

    async def register_patient(self, patient: Patient, session: SyncSession) -> Tuple[str, str]:
        """
        Register the patient and store its remote id.

        Returns the remote patient id and the patient's self link; raises
        RegistrationError when the network omits either.
        """
        body = (await session.client.register_patient(session.meta, session.network_patient)).unwrap()
        remote_patient_id = get_patient_id(body)
        if not remote_patient_id:
            raise RegistrationError(
                "Could not determine the patient ID from the network",
                {"patient_id": patient.id, "network_reference": session.reference},
            )
        await self.patients.set_network_identity(patient, remote_patient_id, source=self.source)

        patient_href = get_self_link(body)
        if not patient_href:
            raise RegistrationError(
                "Could not determine the patient ref link",
                {"patient_id": patient.id, "remote_patient_id": remote_patient_id},
            )
        logger.info("network_patient_registered", patient_id=patient.id, remote_patient_id=remote_patient_id)
        return remote_patient_id, patient_href

    async def update_patient(self, session: SyncSession, remote_patient_id: str) -> str:
        body = (
            await session.client.update_patient(session.meta, session.network_patient, remote_patient_id)
        ).unwrap()
        patient_href = get_self_link(body)
        if not patient_href:
            raise RegistrationError(
                "Could not determine the patient ref link", {"remote_patient_id": remote_patient_id}
            )
        return patient_href

    async def find_or_create_person_and_link(
        self,
        patient: Patient,
        session: SyncSession,
        remote_patient_id: str,
        patient_href: str,
    ) -> Optional[str]:
        """Match the patient to a Person (enrolling one if needed) and link them."""
        person, person_id = await self._find_or_create_person(session, remote_patient_id)
        if not person_id:
            capture_warning(
                "Could not determine the person ID from the network",
                {"patient_id": patient.id, "network_reference": session.reference, "context": CREATE_CONTEXT},
            )
            return None

        await self.patients.set_network_identity(patient, remote_patient_id, person_id, source=self.source)

        strong_ids = get_matching_strong_ids(person, session.network_patient)
        strong_id = strong_ids[0] if strong_ids else None
        (await session.client.add_or_upgrade_patient_link(session.meta, person_id, patient_href, strong_id)).unwrap()
        logger.info(
            "patient_linked",
            patient_id=patient.id,
            remote_person_id=person_id,
            with_strong_id=strong_id is not None,
        )

        await self._auto_upgrade_network_links(session, remote_patient_id, person_id, CREATE_CONTEXT)
        return person_id

    async def get_link_info(
        self,
        session: SyncSession,
        person: Dict[str, Any],
        person_id: str,
        remote_patient_id: str,
    ) -> LinkInfo:
        links: List[PatientLink] = (await session.client.get_patient_links(session.meta, person_id)).unwrap()
        link = next((candidate for candidate in links if candidate.is_for_patient(remote_patient_id)), None)
        return LinkInfo(link=link, strong_ids=get_matching_strong_ids(person, session.network_patient))

    async def _find_or_create_person(
        self, session: SyncSession, remote_patient_id: str
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        persons = (await session.client.find_person(session.meta, remote_patient_id)).unwrap()
        if persons:
            if len(persons) > 1:
                logger.info("multiple_persons_found", remote_patient_id=remote_patient_id, count=len(persons))
            person = persons[0]
            return person, get_id(person)

        person = (
            await session.client.enroll_person(session.meta, make_person_for_patient(session.network_patient))
        ).unwrap() or {}
        person_id = get_id(person)
        logger.info("person_enrolled", remote_patient_id=remote_patient_id, remote_person_id=person_id)
        return person, person_id

    async def _auto_upgrade_network_links(
        self, session: SyncSession, remote_patient_id: str, person_id: str, context: str
    ) -> int:
        """Upgrade LOLA 1 network links; failures are reported, never raised."""
        extra = {
            "remote_patient_id": remote_patient_id,
            "remote_person_id": person_id,
            "context": f"{context}.network_links",
        }
        try:
            outcomes = await session.client.auto_upgrade_network_links(session.meta, remote_patient_id)
        except Exception as e:
            capture_error(e, {**extra, "network_reference": session.reference})
            return 0

        upgraded = 0
        for link, result in outcomes:
            if result.ok:
                upgraded += 1
                continue
            capture_warning(
                "Failed to upgrade network link",
                {**extra, "link": link.patient_href, "error": result.error, "network_reference": result.reference},
            )
        if outcomes:
            logger.info("network_links_upgraded", upgraded=upgraded, attempted=len(outcomes), **extra)
        return upgraded

    def _capture_failure(
        self,
        error: Exception,
        patient: Patient,
        facility_id: str,
        session: Optional[SyncSession],
        context: str,
    ) -> None:
        capture_error(
            error,
            {
                "patient_id": patient.id,
                "facility_id": facility_id,
                "payload": session.network_patient if session else None,
                "network_reference": session.reference if session else None,
                "context": context,
            },
        )
