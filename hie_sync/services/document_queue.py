"""Background document queries using ARQ.

Document queries can run for minutes, so callers enqueue them:
- `DocumentQueryQueue.enqueue` marks the patient's status as processing and
  queues the job
- the worker runs `query_patient_documents`, which drives the pipeline
- collaborators are built once per worker on startup and closed on shutdown
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from hie_sync.core.config import settings
from hie_sync.core.logging import configure_logging, get_logger
from hie_sync.core.sentry import init_sentry
from hie_sync.models import Patient
from hie_sync.services.patient_sync_service import PatientSyncService, build_patient_sync_service
from hie_sync.services.query_status import QueryRun, QueryStatusTracker

logger = get_logger(__name__)


ARQ_REDIS_SETTINGS = RedisSettings(
    host=settings.REDIS_HOST,
    port=settings.REDIS_PORT,
    password=settings.REDIS_PASSWORD,
    database=settings.REDIS_QUEUE_DB,
)

QUERY_TASK = "query_patient_documents"


class DocumentQueryQueue:
    """Queues document queries for the background worker."""

    def __init__(self, tracker: QueryStatusTracker, redis_settings: RedisSettings = ARQ_REDIS_SETTINGS):
        self.tracker = tracker
        self.redis_settings = redis_settings
        self._redis_pool: Optional[ArqRedis] = None

    async def get_redis_pool(self) -> ArqRedis:
        """Get or create ARQ Redis connection pool."""
        if self._redis_pool is None:
            self._redis_pool = await create_pool(self.redis_settings)
        return self._redis_pool

    async def enqueue(self, patient: Patient, facility_id: str, override: bool = False) -> str:
        """
        Queue a document query for a patient.

        The status reads processing as soon as this returns. If the job
        cannot be queued the status is completed again and the error raised.

        Returns:
            ARQ job id
        """
        run = await self.tracker.start_run(patient.cx_id, patient.id)
        try:
            redis = await self.get_redis_pool()
            job = await redis.enqueue_job(QUERY_TASK, patient.cx_id, patient.id, facility_id, override, run.run_id)
        except Exception:
            await self.tracker.complete(run)
            raise

        logger.info(
            "document_query_enqueued",
            job_id=job.job_id,
            tenant_id=patient.cx_id,
            patient_id=patient.id,
            facility_id=facility_id,
            override=override,
        )
        return job.job_id

    async def close(self):
        """Close Redis connection pool."""
        if self._redis_pool:
            await self._redis_pool.close()
            self._redis_pool = None


async def query_patient_documents(
    ctx: Dict[str, Any],
    tenant_id: str,
    patient_id: str,
    facility_id: str,
    override: bool = False,
    run_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    ARQ task running the document pipeline for one patient.

    `run_id` is the run opened at enqueue time; it is completed here when
    the job fails before the pipeline took over the status.
    """
    service: PatientSyncService = ctx["sync_service"]
    try:
        patient = await service.patients.get_patient(tenant_id, patient_id)
        count = await service.synchronize_documents(patient, facility_id, override=override)
    except Exception as e:
        logger.error(
            "document_query_job_failed",
            tenant_id=tenant_id,
            patient_id=patient_id,
            error=str(e),
            exc_info=True,
        )
        if run_id:
            await service.tracker.complete(QueryRun(tenant_id=tenant_id, patient_id=patient_id, run_id=run_id))
        return {"patient_id": patient_id, "error": str(e)}
    return {"patient_id": patient_id, "documents": count}


async def startup(ctx: Dict[str, Any]) -> None:
    configure_logging()
    init_sentry()
    ctx["sync_service"] = build_patient_sync_service()
    logger.info("document_worker_started")


async def shutdown(ctx: Dict[str, Any]) -> None:
    service: Optional[PatientSyncService] = ctx.get("sync_service")
    if service is not None:
        await service.close()
    logger.info("document_worker_stopped")


class WorkerSettings:
    """ARQ worker settings."""

    redis_settings = ARQ_REDIS_SETTINGS
    functions = [query_patient_documents]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = timedelta(hours=2)  # large patients hold hundreds of documents
    max_jobs = 5
    keep_result = timedelta(hours=24)
