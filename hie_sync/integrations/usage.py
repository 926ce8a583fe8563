"""
Usage reporter: one event per completed document query.

Reporting is best effort; failures are captured and never reach the
caller.
"""

from datetime import datetime
from typing import Optional

import aiohttp
from hie_sync.core.logging import get_logger
from hie_sync.core.sentry import capture_error

logger = get_logger(__name__)

MEDICAL_API_TYPE = "medical"


class UsageReporter:
    def __init__(self, url: Optional[str], timeout_seconds: int = 10):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def report(self, tenant_id: str, patient_id: str) -> bool:
        if not self.url:
            logger.debug("usage_report_skipped", reason="USAGE_URL not configured", tenant_id=tenant_id)
            return False

        payload = {
            "cxId": tenant_id,
            "entityId": patient_id,
            "apiType": MEDICAL_API_TYPE,
            "timestamp": datetime.utcnow().isoformat(),
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)) as session:
                async with session.post(self.url, json=payload) as response:
                    if response.status >= 400:
                        text = await response.text()
                        raise RuntimeError(f"Usage report failed {response.status}: {text[:200]}")
        except Exception as e:
            capture_error(e, extra={"context": "usage.report", "tenant_id": tenant_id, "patient_id": patient_id})
            return False

        logger.info("usage_reported", tenant_id=tenant_id, patient_id=patient_id, api_type=MEDICAL_API_TYPE)
        return True
