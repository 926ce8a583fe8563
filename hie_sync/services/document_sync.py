"""
Document synchronization pipeline

Retrieves every document the network exposes for a patient:
1. Query the network (error outcomes become warnings)
2. Validate and de-duplicate references by master identifier
3. Process fixed-size chunks in sequence, documents of a chunk concurrently
4. Per document: skip already stored artifacts, otherwise download with a
   jittered delay while streaming into the content store and buffering XML
   for conversion, then upsert the canonical DocumentReference
5. Finalize the query status once and notify the tenant

A failing document is reported and excluded from the results; only a
failure of the query itself fails the run, and the status is finalized
to completed either way.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from hie_sync.core.config import settings
from hie_sync.core.logging import bound_context, get_logger
from hie_sync.core.sentry import capture_error
from hie_sync.core.timing import chunked, sleep_random
from hie_sync.integrations.content_store import ContentStore, StoredObject, make_content_key
from hie_sync.integrations.converter import ConverterClient, is_convertible
from hie_sync.integrations.fhir_client import FHIRServerClient
from hie_sync.integrations.network import NetworkClient, NetworkClientFactory, NetworkError, RequestMetadata
from hie_sync.integrations.usage import UsageReporter
from hie_sync.integrations.webhook import WebhookStatusSink
from hie_sync.models import Facility, Organization, Patient
from hie_sync.schemas.patient import NetworkIdentity, NetworkSource
from hie_sync.services.document_mapping import (
    RemoteDocumentRef,
    normalize_entries,
    to_canonical_document_reference,
    to_dto,
)
from hie_sync.services.patient_store import PatientRepository
from hie_sync.services.query_status import QueryRun, QueryStatusTracker
from hie_sync.services.sandbox_documents import get_sandbox_document_references

logger = get_logger(__name__)

QUERY_CONTEXT = "document_query"


@dataclass
class DocumentSyncResult:
    """Outcome of one pipeline run"""

    documents: List[Dict[str, Any]] = field(default_factory=list)
    stored: int = 0  # newly downloaded artifacts
    skipped: int = 0  # already present in the content store
    failed: int = 0

    @property
    def count(self) -> int:
        return len(self.documents)


@dataclass
class _RunContext:
    patient: Patient
    organization: Organization
    facility: Facility
    client: NetworkClient
    meta: RequestMetadata
    run: QueryRun
    override: bool = False

    @property
    def tenant_id(self) -> str:
        return self.patient.cx_id


@dataclass
class _DocumentOutcome:
    document_reference: Dict[str, Any]
    stored: bool


class DocumentSyncPipeline:
    def __init__(
        self,
        client_factory: NetworkClientFactory,
        patients: PatientRepository,
        store: ContentStore,
        fhir_client: FHIRServerClient,
        tracker: QueryStatusTracker,
        status_sink: WebhookStatusSink,
        usage_reporter: UsageReporter,
        converter: Optional[ConverterClient] = None,
        chunk_size: Optional[int] = None,
        download_jitter_max_sec: Optional[float] = None,
        chunk_delay_max_sec: Optional[float] = None,
        jitter_min_fraction: Optional[float] = None,
        sandbox: Optional[bool] = None,
        source: NetworkSource = NetworkSource.COMMONWELL,
    ):
        self.client_factory = client_factory
        self.patients = patients
        self.store = store
        self.fhir_client = fhir_client
        self.tracker = tracker
        self.status_sink = status_sink
        self.usage_reporter = usage_reporter
        self.converter = converter
        self.source = source

        self.chunk_size = chunk_size if chunk_size is not None else settings.DOC_QUERY_CHUNK_SIZE
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.download_jitter_max_sec = (
            download_jitter_max_sec if download_jitter_max_sec is not None else settings.DOC_DOWNLOAD_JITTER_MAX_SEC
        )
        self.chunk_delay_max_sec = (
            chunk_delay_max_sec if chunk_delay_max_sec is not None else settings.DOC_CHUNK_DELAY_MAX_SEC
        )
        self.jitter_min_fraction = (
            jitter_min_fraction if jitter_min_fraction is not None else settings.JITTER_MIN_FRACTION
        )
        self.sandbox = sandbox if sandbox is not None else settings.SANDBOX_MODE

    async def run(self, patient: Patient, facility_id: str, override: bool = False) -> DocumentSyncResult:
        """
        Synchronize the documents of `patient` as seen from `facility_id`.

        Raises whatever made the document query fail; the query status is
        completed before this returns or raises.
        """
        run = await self.tracker.start_run(patient.cx_id, patient.id)
        with bound_context(tenant_id=patient.cx_id, patient_id=patient.id, run_id=run.run_id):
            try:
                result = await self._synchronize(patient, facility_id, run, override)
            except Exception as e:
                extra = {"context": QUERY_CONTEXT, "patient_id": patient.id, "facility_id": facility_id}
                if isinstance(e, NetworkError):
                    extra.update(e.additional_info)
                capture_error(e, extra)
                raise
            finally:
                await self._finalize(run)

            self.status_sink.notify(patient.cx_id, patient.id, to_dto(result.documents))
            logger.info(
                "document_query_finished",
                documents=result.count,
                stored=result.stored,
                skipped=result.skipped,
                failed=result.failed,
            )
            return result

    async def _synchronize(
        self, patient: Patient, facility_id: str, run: QueryRun, override: bool
    ) -> DocumentSyncResult:
        context = await self.patients.get_patient_context(patient, facility_id)

        if self.sandbox:
            logger.info("document_query_sandbox")
            return DocumentSyncResult(documents=get_sandbox_document_references(patient.id))

        identity = patient.get_network_identity(self.source)
        if identity is None:
            logger.info("document_query_skipped", reason="no network identity")
            return DocumentSyncResult()

        ctx = _RunContext(
            patient=patient,
            organization=context.organization,
            facility=context.facility,
            client=self.client_factory.for_organization(context.organization),
            meta=self.client_factory.request_metadata(context.organization, context.facility),
            run=run,
            override=override,
        )
        documents = await self._query_documents(ctx, identity)
        await self.tracker.set_total(run, len(documents))

        result = await self._process_documents(ctx, documents)
        await self.usage_reporter.report(patient.cx_id, patient.id)
        return result

    async def _finalize(self, run: QueryRun) -> None:
        try:
            await self.tracker.complete(run)
        except Exception as e:
            capture_error(e, {"context": f"{QUERY_CONTEXT}.finalize", "patient_id": run.patient_id})

    # =========================================================================
    # Query
    # =========================================================================

    async def _query_documents(self, ctx: _RunContext, identity: NetworkIdentity) -> List[RemoteDocumentRef]:
        entries = (await ctx.client.query_documents(ctx.meta, identity.remote_patient_id)).unwrap() or []
        normalized = normalize_entries(entries, ctx.patient.id, ctx.client.last_reference_header)

        documents: List[RemoteDocumentRef] = []
        seen = set()
        for document in normalized.documents:
            if document.primary_id in seen:
                logger.warning("document_reference_duplicate", primary_id=document.primary_id)
                continue
            seen.add(document.primary_id)
            documents.append(document)

        logger.info(
            "document_query_received",
            entries=len(entries),
            documents=len(documents),
            error_outcomes=len(normalized.error_outcomes),
            dropped=normalized.dropped,
        )
        return documents

    # =========================================================================
    # Download
    # =========================================================================

    async def _process_documents(self, ctx: _RunContext, documents: List[RemoteDocumentRef]) -> DocumentSyncResult:
        result = DocumentSyncResult()
        for index, chunk in enumerate(chunked(documents, self.chunk_size)):
            if index > 0:
                await self._wait_between_chunks()
            outcomes = await asyncio.gather(
                *(self._process_document(ctx, document) for document in chunk),
                return_exceptions=True,
            )
            for document, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    capture_error(outcome, self._document_extra(ctx, document, "document"))
                    outcome = None
                if outcome is None:
                    result.failed += 1
                    continue
                result.documents.append(outcome.document_reference)
                if outcome.stored:
                    result.stored += 1
                else:
                    result.skipped += 1
        return result

    async def _process_document(self, ctx: _RunContext, document: RemoteDocumentRef) -> Optional[_DocumentOutcome]:
        key = make_content_key(ctx.tenant_id, document.primary_id)
        try:
            if not ctx.override and await self.store.exists(key):
                location, stored = self.store.location_for(key), False
            else:
                await self._wait_before_download()
                stored_object, markup = await self._download(ctx, document, key)
                location, key, stored = stored_object.location, stored_object.key, True
                if markup is not None:
                    await self._convert(ctx, document, markup)

            document_reference = to_canonical_document_reference(
                document, location, key, ctx.organization, ctx.patient
            )
            await self.fhir_client.upsert(ctx.tenant_id, document_reference)
            return _DocumentOutcome(document_reference=document_reference, stored=stored)
        except Exception as e:
            capture_error(e, self._document_extra(ctx, document, "document"))
            return None
        finally:
            await self.tracker.increment_progress(ctx.run)

    async def _download(
        self, ctx: _RunContext, document: RemoteDocumentRef, key: str
    ) -> Tuple[StoredObject, Optional[str]]:
        """Stream the document into the store; XML content is also kept for conversion."""
        buffer = bytearray() if is_convertible(document.mime_type) else None

        async def tee() -> AsyncIterator[bytes]:
            async for chunk in ctx.client.stream_document_content(ctx.meta, document.location):
                if buffer is not None:
                    buffer.extend(chunk)
                yield chunk

        stored_object = await self.store.put(key, tee(), document.mime_type)
        logger.debug("document_stored", primary_id=document.primary_id, key=stored_object.key, size=stored_object.size)
        markup = buffer.decode("utf-8", errors="replace") if buffer is not None else None
        return stored_object, markup

    async def _convert(self, ctx: _RunContext, document: RemoteDocumentRef, markup: str) -> None:
        if self.converter is None:
            logger.debug("document_conversion_skipped", reason="converter not configured")
            return
        try:
            bundle = await self.converter.convert(ctx.patient.id, markup)
            await self.fhir_client.upsert_bundle(ctx.tenant_id, bundle)
            logger.info("document_converted", primary_id=document.primary_id)
        except Exception as e:
            capture_error(e, self._document_extra(ctx, document, "conversion"))

    async def _wait_before_download(self) -> float:
        return await sleep_random(self.download_jitter_max_sec, self.jitter_min_fraction)

    async def _wait_between_chunks(self) -> float:
        return await sleep_random(self.chunk_delay_max_sec, self.jitter_min_fraction)

    @staticmethod
    def _document_extra(ctx: _RunContext, document: RemoteDocumentRef, step: str) -> Dict[str, Any]:
        return {
            "context": f"{QUERY_CONTEXT}.{step}",
            "patient_id": ctx.patient.id,
            "primary_id": document.primary_id,
            "location": document.location,
            "mime_type": document.mime_type,
            "network_reference": ctx.client.last_reference_header,
        }
