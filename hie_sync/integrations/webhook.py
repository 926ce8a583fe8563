"""
Status sink: notifies the tenant that a patient's documents are ready.

`notify()` never blocks the caller and never raises: delivery runs as a
detached task whose failures are captured to the observability sink.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import aiohttp
from hie_sync.core.logging import get_logger
from hie_sync.core.resilience import ensure_available, record_failure, webhook_breaker
from hie_sync.core.sentry import capture_error, capture_warning
from hie_sync.schemas.documents import DocumentReferenceDTO

logger = get_logger(__name__)

DOCUMENT_DOWNLOAD_EVENT = "medical.document-download"


class WebhookStatusSink:
    """Posts document-ready events to the webhook dispatcher"""

    def __init__(self, url: Optional[str], timeout_seconds: int = 20):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, tenant_id: str, patient_id: str, documents: List[DocumentReferenceDTO]) -> asyncio.Task:
        """Schedule delivery and return the detached task."""
        task = asyncio.create_task(self._deliver_safely(tenant_id, patient_id, documents))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    def build_payload(tenant_id: str, patient_id: str, documents: List[DocumentReferenceDTO]) -> Dict[str, Any]:
        return {
            "meta": {
                "messageId": str(uuid.uuid4()),
                "when": datetime.utcnow().isoformat(),
                "type": DOCUMENT_DOWNLOAD_EVENT,
            },
            "cxId": tenant_id,
            "patients": [
                {
                    "patientId": patient_id,
                    "documents": [d.model_dump(by_alias=True, exclude_none=True) for d in documents],
                }
            ],
        }

    async def _deliver_safely(self, tenant_id: str, patient_id: str, documents: List[DocumentReferenceDTO]) -> bool:
        try:
            await self.deliver(tenant_id, patient_id, documents)
            return True
        except Exception as e:
            capture_error(
                e,
                extra={
                    "context": "webhook.document_download",
                    "tenant_id": tenant_id,
                    "patient_id": patient_id,
                    "document_count": len(documents),
                },
            )
            return False

    async def deliver(self, tenant_id: str, patient_id: str, documents: List[DocumentReferenceDTO]) -> None:
        if not self.url:
            capture_warning(
                "Webhook URL not configured, skipping document notification",
                extra={"tenant_id": tenant_id, "patient_id": patient_id},
            )
            return

        ensure_available(webhook_breaker)
        payload = self.build_payload(tenant_id, patient_id, documents)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)) as session:
            async with session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    text = await response.text()
                    error = RuntimeError(f"Webhook delivery failed {response.status}: {text[:200]}")
                    if response.status >= 500:
                        record_failure(webhook_breaker, error)
                    raise error

        logger.info(
            "webhook_delivered",
            tenant_id=tenant_id,
            patient_id=patient_id,
            document_count=len(documents),
        )
