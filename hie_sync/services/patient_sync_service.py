"""
Patient synchronization service

Entry point used by the command layer and the background worker. Wires
the identity engine, the document pipeline and the status tracker.
"""

from enum import Enum
from typing import Any, List, Optional

from hie_sync.core.config import Settings, settings
from hie_sync.core.logging import get_logger
from hie_sync.integrations.content_store import build_content_store
from hie_sync.integrations.converter import ConverterClient, ConverterConfig
from hie_sync.integrations.fhir_client import FHIRClientConfig, FHIRServerClient
from hie_sync.integrations.network import NetworkClientFactory
from hie_sync.integrations.usage import UsageReporter
from hie_sync.integrations.webhook import WebhookStatusSink
from hie_sync.models import Patient
from hie_sync.schemas.documents import QueryStatusResponse
from hie_sync.services.document_sync import DocumentSyncPipeline
from hie_sync.services.identity_sync import IdentitySyncEngine
from hie_sync.services.link_service import LinkService
from hie_sync.services.patient_store import PatientRepository
from hie_sync.services.query_status import QueryStatusTracker, SqlQueryStatusRepository

logger = get_logger(__name__)


class IdentityOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PatientSyncService:
    def __init__(
        self,
        patients: PatientRepository,
        identity: IdentitySyncEngine,
        documents: DocumentSyncPipeline,
        tracker: QueryStatusTracker,
        links: Optional[LinkService] = None,
        queue: Optional[Any] = None,
    ):
        self.patients = patients
        self.identity = identity
        self.documents = documents
        self.tracker = tracker
        self.links = links or LinkService(identity)
        self.queue = queue

    async def sync_patient_identity(self, patient: Patient, facility_id: str, op: IdentityOperation) -> None:
        op = IdentityOperation(op)
        if op == IdentityOperation.CREATE:
            await self.identity.sync_create(patient, facility_id)
        elif op == IdentityOperation.UPDATE:
            await self.identity.sync_update(patient, facility_id)
        else:
            await self.identity.sync_delete(patient, facility_id)

    async def synchronize_documents(self, patient: Patient, facility_id: str, override: bool = False) -> int:
        """Run the document pipeline; returns how many canonical documents it produced."""
        result = await self.documents.run(patient, facility_id, override=override)
        return result.count

    async def get_query_status(self, patient_id: str, tenant_id: Optional[str] = None) -> QueryStatusResponse:
        return await self.tracker.get_status(patient_id, tenant_id)

    async def are_documents_processing(self, tenant_id: str, patient_id: str) -> bool:
        return await self.tracker.are_documents_processing(tenant_id, patient_id)

    async def requery_tenant_documents(self, tenant_id: str, override: bool = False) -> int:
        """
        Queue a document query for every patient of a tenant.

        Patients without a facility are skipped; each one is queried at its
        first facility. Returns how many queries were queued.
        """
        if self.queue is None:
            raise RuntimeError("Document query queue is not configured")

        patients: List[Patient] = await self.patients.list_patients(tenant_id)
        queued = 0
        for patient in patients:
            facility_id = patient.first_facility_id
            if facility_id is None:
                continue
            try:
                await self.queue.enqueue(patient, facility_id, override=override)
                queued += 1
            except Exception as e:
                logger.error(
                    "document_query_enqueue_failed",
                    tenant_id=tenant_id,
                    patient_id=patient.id,
                    error=str(e),
                )
        logger.info("tenant_documents_requeried", tenant_id=tenant_id, patients=len(patients), queued=queued)
        return queued

    async def close(self) -> None:
        await self.identity.client_factory.close()
        await self.documents.fhir_client.close()
        if self.documents.converter is not None:
            await self.documents.converter.close()
        await self.documents.status_sink.drain()


def build_patient_sync_service(app_settings: Optional[Settings] = None, queue: Optional[Any] = None) -> PatientSyncService:
    """Service wired to the configured database, network and stores."""
    app_settings = app_settings or settings

    patients = PatientRepository()
    tracker = QueryStatusTracker(SqlQueryStatusRepository())
    client_factory = NetworkClientFactory(app_settings)
    identity = IdentitySyncEngine(client_factory, patients)

    converter = None
    if app_settings.FHIR_CONVERTER_URL:
        converter = ConverterClient(
            ConverterConfig(
                base_url=app_settings.FHIR_CONVERTER_URL,
                template=app_settings.FHIR_CONVERTER_TEMPLATE,
                timeout_seconds=app_settings.FHIR_CONVERTER_TIMEOUT_SEC,
            )
        )

    documents = DocumentSyncPipeline(
        client_factory=client_factory,
        patients=patients,
        store=build_content_store(app_settings),
        fhir_client=FHIRServerClient(
            FHIRClientConfig(base_url=app_settings.FHIR_SERVER_URL, timeout_seconds=app_settings.FHIR_SERVER_TIMEOUT_SEC)
        ),
        tracker=tracker,
        status_sink=WebhookStatusSink(app_settings.WEBHOOK_URL, app_settings.WEBHOOK_TIMEOUT_SEC),
        usage_reporter=UsageReporter(app_settings.USAGE_URL),
        converter=converter,
        chunk_size=app_settings.DOC_QUERY_CHUNK_SIZE,
        download_jitter_max_sec=app_settings.DOC_DOWNLOAD_JITTER_MAX_SEC,
        chunk_delay_max_sec=app_settings.DOC_CHUNK_DELAY_MAX_SEC,
        jitter_min_fraction=app_settings.JITTER_MIN_FRACTION,
        sandbox=app_settings.SANDBOX_MODE,
    )
    return PatientSyncService(patients, identity, documents, tracker, queue=queue)
