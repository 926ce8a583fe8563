"""
Clinical document converter client

Posts CDA markup to the FHIR converter service and returns the resulting
FHIR bundle.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from hie_sync.core.logging import get_logger
from hie_sync.core.resilience import (
    TransientHTTPError,
    converter_breaker,
    ensure_available,
    record_failure,
    retry_transient_http,
)

logger = get_logger(__name__)

XML_MIME_TYPES = ("application/xml", "text/xml")


class ConverterError(Exception):
    """Conversion failed or the converter returned no bundle"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_convertible(mime_type: Optional[str]) -> bool:
    """True for XML-family media types (CDA documents)."""
    if not mime_type:
        return False
    base = mime_type.split(";")[0].strip().lower()
    return base in XML_MIME_TYPES or base.endswith("+xml")


@dataclass
class ConverterConfig:
    base_url: str
    template: str = "ccd.hbs"
    timeout_seconds: int = 60


class ConverterClient:
    """Client for the CDA -> FHIR converter service"""

    def __init__(self, config: ConverterConfig):
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def convert(self, patient_id: str, markup: str) -> Dict[str, Any]:
        """
        Convert a CDA document to a FHIR bundle for `patient_id`.

        Raises:
            ConverterError: the service rejected the document or returned no bundle
        """
        if self._session is None:
            await self.initialize()
        ensure_available(converter_breaker)

        url = f"{self.config.base_url.rstrip('/')}/api/convert/cda/{self.config.template}"
        try:
            status, body = await self._send(url, {"patientId": patient_id}, markup)
        except TransientHTTPError as e:
            record_failure(converter_breaker, e)
            raise ConverterError(f"Converter unavailable: {e}", e.status_code) from e

        if status != 200:
            raise ConverterError(f"Conversion failed {status}: {str(body)[:200]}", status)

        bundle = body.get("fhirResource", body) if isinstance(body, dict) else None
        if not bundle or bundle.get("resourceType") != "Bundle":
            raise ConverterError("Converter response did not contain a bundle", status)
        return bundle

    @retry_transient_http(max_attempts=2)
    async def _send(self, url: str, params: Dict[str, str], markup: str):
        async with self._session.post(
            url,
            params=params,
            data=markup.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        ) as response:
            if response.status == 429 or response.status >= 500:
                text = await response.text()
                raise TransientHTTPError(f"Server error {response.status}: {text[:200]}", response.status)
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = await response.text()
            return response.status, body
