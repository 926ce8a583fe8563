"""
Document query status tracking

One status row per patient records the latest document query run:
- state: processing while a run is in flight, completed once it finalized
- progress: documents settled so far out of the validated total

Every run gets its own run id. Progress updates and the terminal transition
only apply to the row while it still belongs to that run, so a stale run
can never overwrite a newer one.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from hie_sync.core.database import AsyncSessionLocal, transaction
from hie_sync.core.logging import get_logger
from hie_sync.core.sentry import capture_error
from hie_sync.models import DocumentQueryStatus
from hie_sync.schemas.documents import QueryProgress, QueryState, QueryStatusResponse
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

logger = get_logger(__name__)


class QueryStatusRepository(Protocol):
    async def start(self, tenant_id: str, patient_id: str, run_id: str) -> None: ...

    async def set_total(self, patient_id: str, run_id: str, total: int) -> None: ...

    async def increment(self, patient_id: str, run_id: str) -> Optional[QueryProgress]: ...

    async def complete(self, patient_id: str, run_id: str) -> bool: ...

    async def get(self, patient_id: str, tenant_id: Optional[str] = None) -> Optional[QueryStatusResponse]: ...


class SqlQueryStatusRepository:
    """Query status rows in the `document_query_status` table"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def start(self, tenant_id: str, patient_id: str, run_id: str) -> None:
        async with transaction(self.session_factory) as session:
            row = await session.get(DocumentQueryStatus, patient_id, with_for_update=True)
            if row is None:
                row = DocumentQueryStatus(patient_id=patient_id, cx_id=tenant_id)
                session.add(row)
            row.cx_id = tenant_id
            row.state = QueryState.PROCESSING.value
            row.completed = 0
            row.total = 0
            row.run_id = run_id
            row.updated_at = datetime.utcnow()

    async def set_total(self, patient_id: str, run_id: str, total: int) -> None:
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(DocumentQueryStatus)
                .where(DocumentQueryStatus.patient_id == patient_id, DocumentQueryStatus.run_id == run_id)
                .values(completed=0, total=total, updated_at=datetime.utcnow())
            )

    async def increment(self, patient_id: str, run_id: str) -> Optional[QueryProgress]:
        """Atomically add one settled document, capped at the total."""
        stmt = (
            update(DocumentQueryStatus)
            .where(DocumentQueryStatus.patient_id == patient_id, DocumentQueryStatus.run_id == run_id)
            .values(
                completed=case(
                    (DocumentQueryStatus.completed < DocumentQueryStatus.total, DocumentQueryStatus.completed + 1),
                    else_=DocumentQueryStatus.completed,
                ),
                updated_at=datetime.utcnow(),
            )
            .returning(DocumentQueryStatus.completed, DocumentQueryStatus.total)
        )
        async with transaction(self.session_factory) as session:
            result = await session.execute(stmt)
            row = result.first()
        if row is None:
            return None
        return QueryProgress(completed=row.completed, total=row.total)

    async def complete(self, patient_id: str, run_id: str) -> bool:
        async with transaction(self.session_factory) as session:
            result = await session.execute(
                update(DocumentQueryStatus)
                .where(DocumentQueryStatus.patient_id == patient_id, DocumentQueryStatus.run_id == run_id)
                .values(state=QueryState.COMPLETED.value, updated_at=datetime.utcnow())
            )
            return result.rowcount > 0

    async def get(self, patient_id: str, tenant_id: Optional[str] = None) -> Optional[QueryStatusResponse]:
        query = select(DocumentQueryStatus).where(DocumentQueryStatus.patient_id == patient_id)
        if tenant_id is not None:
            query = query.where(DocumentQueryStatus.cx_id == tenant_id)
        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
        if row is None:
            return None
        return QueryStatusResponse(
            patient_id=row.patient_id,
            state=QueryState(row.state),
            progress=QueryProgress(completed=row.completed, total=row.total),
            updated_at=row.updated_at,
        )


@dataclass
class QueryRun:
    """Handle of one document query run"""

    tenant_id: str
    patient_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    finalized: bool = False


class QueryStatusTracker:
    """
    Mutates the per-patient query status on behalf of a pipeline run.

    Progress failures are reported and swallowed: losing a counter update
    must not fail a document. `complete()` applies the terminal transition
    at most once per run.
    """

    def __init__(self, repository: QueryStatusRepository):
        self.repository = repository

    async def start_run(self, tenant_id: str, patient_id: str) -> QueryRun:
        run = QueryRun(tenant_id=tenant_id, patient_id=patient_id)
        await self.repository.start(tenant_id, patient_id, run.run_id)
        logger.info("document_query_started", tenant_id=tenant_id, patient_id=patient_id, run_id=run.run_id)
        return run

    async def set_total(self, run: QueryRun, total: int) -> None:
        await self.repository.set_total(run.patient_id, run.run_id, total)

    async def increment_progress(self, run: QueryRun) -> Optional[QueryProgress]:
        try:
            progress = await self.repository.increment(run.patient_id, run.run_id)
        except Exception as e:
            capture_error(
                e,
                {
                    "context": "document_query.progress",
                    "patient_id": run.patient_id,
                    "tenant_id": run.tenant_id,
                    "run_id": run.run_id,
                },
            )
            return None
        if progress is not None:
            logger.debug(
                "document_query_progress",
                patient_id=run.patient_id,
                completed=progress.completed,
                total=progress.total,
            )
        return progress

    async def complete(self, run: QueryRun) -> bool:
        """Finalize the run's status to completed; later calls are no-ops."""
        if run.finalized:
            return False
        run.finalized = True
        applied = await self.repository.complete(run.patient_id, run.run_id)
        logger.info(
            "document_query_completed",
            tenant_id=run.tenant_id,
            patient_id=run.patient_id,
            run_id=run.run_id,
            applied=applied,
        )
        return applied

    async def get_status(self, patient_id: str, tenant_id: Optional[str] = None) -> QueryStatusResponse:
        status = await self.repository.get(patient_id, tenant_id)
        if status is None:
            return QueryStatusResponse(patient_id=patient_id)
        return status

    async def are_documents_processing(self, tenant_id: str, patient_id: str) -> bool:
        status = await self.repository.get(patient_id, tenant_id)
        return status is not None and status.state == QueryState.PROCESSING
