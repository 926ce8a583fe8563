"""
Tests for PatientSyncService and the document query queue
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from hie_sync.core.errors import PatientNotFoundError
from hie_sync.schemas.documents import QueryState
from hie_sync.services.document_queue import QUERY_TASK, DocumentQueryQueue, query_patient_documents
from hie_sync.services.document_sync import DocumentSyncResult
from hie_sync.services.patient_sync_service import IdentityOperation, PatientSyncService
from hie_sync.services.query_status import QueryStatusTracker

from tests.unit.factories import TENANT_ID, make_patient


@pytest.fixture
def tracker(status_repository):
    return QueryStatusTracker(status_repository)


@pytest.fixture
def identity():
    engine = MagicMock()
    engine.sync_create = AsyncMock()
    engine.sync_update = AsyncMock()
    engine.sync_delete = AsyncMock()
    return engine


@pytest.fixture
def documents():
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=DocumentSyncResult(documents=[{"id": "a"}, {"id": "b"}]))
    return pipeline


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.enqueue = AsyncMock(return_value="job-1")
    return queue


@pytest.fixture
def service(patient_repository, identity, documents, tracker, queue):
    return PatientSyncService(patient_repository, identity, documents, tracker, links=MagicMock(), queue=queue)


class TestPatientSyncService:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "op,method",
        [("create", "sync_create"), (IdentityOperation.UPDATE, "sync_update"), ("delete", "sync_delete")],
    )
    async def test_identity_operation_dispatch(self, service, identity, op, method):
        patient = make_patient()

        await service.sync_patient_identity(patient, "facility-1", op)

        getattr(identity, method).assert_awaited_once_with(patient, "facility-1")

    @pytest.mark.asyncio
    async def test_unknown_operation(self, service):
        with pytest.raises(ValueError):
            await service.sync_patient_identity(make_patient(), "facility-1", "merge")

    @pytest.mark.asyncio
    async def test_synchronize_documents_returns_count(self, service, documents):
        patient = make_patient()

        assert await service.synchronize_documents(patient, "facility-1", override=True) == 2
        documents.run.assert_awaited_once_with(patient, "facility-1", override=True)

    @pytest.mark.asyncio
    async def test_status_queries(self, service, tracker):
        await tracker.start_run(TENANT_ID, "patient-1")

        assert (await service.get_query_status("patient-1")).state == QueryState.PROCESSING
        assert await service.are_documents_processing(TENANT_ID, "patient-1") is True
        assert await service.are_documents_processing(TENANT_ID, "patient-2") is False

    @pytest.mark.asyncio
    async def test_requery_tenant(self, service, patient_repository, queue):
        patient_repository.add(make_patient("patient-1"))
        patient_repository.add(make_patient("patient-2", facility_ids=["facility-2", "facility-1"]))
        patient_repository.add(make_patient("patient-3", tenant_id="cx-other"))
        orphan = make_patient("patient-4")
        orphan.facility_ids = []
        patient_repository.add(orphan)

        assert await service.requery_tenant_documents(TENANT_ID, override=True) == 2

        calls = [(c.args[0].id, c.args[1], c.kwargs["override"]) for c in queue.enqueue.call_args_list]
        assert calls == [("patient-1", "facility-1", True), ("patient-2", "facility-2", True)]

    @pytest.mark.asyncio
    async def test_requery_continues_after_enqueue_failure(self, service, patient_repository, queue):
        patient_repository.add(make_patient("patient-1"))
        patient_repository.add(make_patient("patient-2"))
        queue.enqueue.side_effect = [ConnectionError("redis down"), "job-2"]

        assert await service.requery_tenant_documents(TENANT_ID) == 1

    @pytest.mark.asyncio
    async def test_requery_requires_queue(self, patient_repository, identity, documents, tracker):
        service = PatientSyncService(patient_repository, identity, documents, tracker, links=MagicMock())

        with pytest.raises(RuntimeError):
            await service.requery_tenant_documents(TENANT_ID)


class TestDocumentQueryQueue:
    @pytest.fixture
    def redis(self):
        redis = MagicMock()
        redis.enqueue_job = AsyncMock(return_value=MagicMock(job_id="job-1"))
        return redis

    @pytest.mark.asyncio
    async def test_enqueue_marks_processing(self, tracker, redis):
        queue = DocumentQueryQueue(tracker)
        queue.get_redis_pool = AsyncMock(return_value=redis)

        assert await queue.enqueue(make_patient(), "facility-1", override=True) == "job-1"

        args = redis.enqueue_job.call_args.args
        assert args[:5] == (QUERY_TASK, TENANT_ID, "patient-1", "facility-1", True)
        assert await tracker.are_documents_processing(TENANT_ID, "patient-1") is True

    @pytest.mark.asyncio
    async def test_enqueue_failure_completes_status(self, tracker, redis):
        queue = DocumentQueryQueue(tracker)
        queue.get_redis_pool = AsyncMock(return_value=redis)
        redis.enqueue_job.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await queue.enqueue(make_patient(), "facility-1")

        assert (await tracker.get_status("patient-1")).state == QueryState.COMPLETED


class TestQueryPatientDocumentsTask:
    @pytest.mark.asyncio
    async def test_runs_pipeline(self, service, patient_repository):
        patient_repository.add(make_patient())

        result = await query_patient_documents({"sync_service": service}, TENANT_ID, "patient-1", "facility-1")

        assert result == {"patient_id": "patient-1", "documents": 2}

    @pytest.mark.asyncio
    async def test_failure_before_pipeline_completes_enqueued_run(self, service, tracker):
        run = await tracker.start_run(TENANT_ID, "missing")

        result = await query_patient_documents(
            {"sync_service": service}, TENANT_ID, "missing", "facility-1", False, run.run_id
        )

        assert "error" in result
        assert (await tracker.get_status("missing")).state == QueryState.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_leaves_newer_run_alone(self, service, tracker, patient_repository, documents):
        patient_repository.add(make_patient())
        enqueued = await tracker.start_run(TENANT_ID, "patient-1")
        await tracker.start_run(TENANT_ID, "patient-1")
        documents.run.side_effect = PatientNotFoundError("gone")

        await query_patient_documents(
            {"sync_service": service}, TENANT_ID, "patient-1", "facility-1", False, enqueued.run_id
        )

        assert (await tracker.get_status("patient-1")).state == QueryState.PROCESSING
