"""
Remote network (HIE) client

Async REST client for the identity and document exchange capabilities of
the network:
- Patient registration, update and removal
- Person search, enrollment, update and re-enrollment
- Patient<>Person links and network link upgrades
- Document query and streamed document retrieval

Failures come back as a NetworkResult carrying an explicit ResultKind, so
callers branch on `kind` instead of on transport status codes. `unwrap()`
turns anything but OK into a NetworkError.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from hie_sync.core.config import settings
from hie_sync.core.logging import get_logger
from hie_sync.core.resilience import (
    RETRYABLE_HTTP_ERRORS,
    TransientHTTPError,
    ensure_available,
    network_breaker,
    record_failure,
    retry_transient_http,
)
from pybreaker import CircuitBreakerError

from .models import NetworkLink, PatientLink, RequestMetadata, StrongId, get_embedded

logger = get_logger(__name__)

REFERENCE_HEADER = "CW-Reference"
DOCUMENT_CHUNK_BYTES = 64 * 1024


# ==============================================================================
# Results and errors
# ==============================================================================


class ResultKind(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FATAL = "fatal"


class NetworkError(Exception):
    """Network call did not succeed"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reference: Optional[str] = None,
        kind: ResultKind = ResultKind.FATAL,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.reference = reference
        self.kind = kind

    @property
    def additional_info(self) -> Dict[str, Any]:
        return {"status_code": self.status_code, "network_reference": self.reference}


@dataclass
class NetworkResult:
    """Outcome of a single network call"""

    kind: ResultKind
    data: Any = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    reference: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.OK

    @property
    def not_found(self) -> bool:
        return self.kind == ResultKind.NOT_FOUND

    def unwrap(self) -> Any:
        if self.ok:
            return self.data
        raise NetworkError(
            self.error or f"Network call failed ({self.kind.value})",
            status_code=self.status_code,
            reference=self.reference,
            kind=self.kind,
        )


# ==============================================================================
# Configuration
# ==============================================================================


@dataclass
class NetworkClientConfig:
    """Configuration for a network client scoped to one organization"""

    base_url: str
    org_name: str
    org_oid: str
    api_token: Optional[str] = None
    timeout_seconds: int = 120

    default_headers: Dict[str, str] = field(
        default_factory=lambda: {
            "Accept": "application/hal+json, application/json",
            "Content-Type": "application/json",
        }
    )


# ==============================================================================
# Client
# ==============================================================================


class NetworkClient:
    """
    Network client for one organization.

    Usage:
        config = NetworkClientConfig(base_url=..., org_name="Clinic", org_oid="2.16...")
        async with NetworkClient(config) as client:
            result = await client.register_patient(meta, payload)
            patient = result.unwrap()
    """

    def __init__(self, config: NetworkClientConfig):
        self.config = config
        self.last_reference_header: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session"""
        if self._session is not None:
            return
        headers = dict(self.config.default_headers)
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            headers=headers,
        )
        logger.info("network_client_initialized", org_oid=self.config.org_oid)

    async def close(self) -> None:
        """Close HTTP session"""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # URL helpers
    # =========================================================================

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _org_path(self, suffix: str = "") -> str:
        return f"/v1/org/{self.config.org_oid}{suffix}"

    def patient_url(self, patient_id: str) -> str:
        """Absolute self link of a registered patient."""
        return self._url(self._org_path(f"/patient/{patient_id}/"))

    # =========================================================================
    # Patient
    # =========================================================================

    async def search_patient(
        self,
        meta: RequestMetadata,
        first_name: str,
        last_name: str,
        dob: str,
        gender: str,
        zip_code: str,
    ) -> NetworkResult:
        """Search the organization's registered patients by demographics."""
        params = {"fname": first_name, "lname": last_name, "dob": dob, "gender": gender, "zip": zip_code}
        result = await self._request("GET", self._org_path("/patient"), meta, params=params, operation="search_patient")
        if result.ok:
            result.data = get_embedded(result.data, "patient")
        return result

    async def register_patient(self, meta: RequestMetadata, patient: Dict[str, Any]) -> NetworkResult:
        return await self._request("POST", self._org_path("/patient/"), meta, json=patient, operation="register_patient")

    async def update_patient(self, meta: RequestMetadata, patient: Dict[str, Any], patient_id: str) -> NetworkResult:
        return await self._request(
            "PUT", self._org_path(f"/patient/{patient_id}/"), meta, json=patient, operation="update_patient"
        )

    async def delete_patient(self, meta: RequestMetadata, patient_id: str) -> NetworkResult:
        return await self._request("DELETE", self._org_path(f"/patient/{patient_id}/"), meta, operation="delete_patient")

    # =========================================================================
    # Person
    # =========================================================================

    async def find_person(self, meta: RequestMetadata, patient_id: str) -> NetworkResult:
        """Persons matching a registered patient's demographics."""
        result = await self._request(
            "GET", self._org_path(f"/patient/{patient_id}/person"), meta, operation="find_person"
        )
        if result.ok:
            result.data = get_embedded(result.data, "person")
        return result

    async def get_person(self, meta: RequestMetadata, person_id: str) -> NetworkResult:
        return await self._request("GET", f"/v1/person/{person_id}", meta, operation="get_person")

    async def enroll_person(self, meta: RequestMetadata, person: Dict[str, Any]) -> NetworkResult:
        return await self._request("POST", "/v1/person", meta, json=person, operation="enroll_person")

    async def update_person(self, meta: RequestMetadata, person: Dict[str, Any], person_id: str) -> NetworkResult:
        return await self._request("PATCH", f"/v1/person/{person_id}", meta, json=person, operation="update_person")

    async def reenroll_person(self, meta: RequestMetadata, person_id: str) -> NetworkResult:
        return await self._request("PUT", f"/v1/person/{person_id}/enroll", meta, operation="reenroll_person")

    # =========================================================================
    # Links
    # =========================================================================

    async def get_patient_links(self, meta: RequestMetadata, person_id: str) -> NetworkResult:
        result = await self._request("GET", f"/v1/person/{person_id}/patientLink", meta, operation="get_patient_links")
        if result.ok:
            result.data = [PatientLink.from_dict(link) for link in get_embedded(result.data, "patientLink")]
        return result

    async def add_or_upgrade_patient_link(
        self,
        meta: RequestMetadata,
        person_id: str,
        patient_href: str,
        strong_id: Optional[StrongId] = None,
    ) -> NetworkResult:
        """Link a patient to a person; a matching strong id raises the link's trust level."""
        body: Dict[str, Any] = {"patient": patient_href}
        if strong_id is not None:
            body["identifier"] = strong_id.to_dict()
        return await self._request(
            "POST", f"/v1/person/{person_id}/patientLink", meta, json=body, operation="add_patient_link"
        )

    async def reset_patient_link(self, meta: RequestMetadata, person_id: str, patient_id: str) -> NetworkResult:
        return await self._request(
            "DELETE",
            f"/v1/person/{person_id}/patientLink/{patient_id}/",
            meta,
            operation="reset_patient_link",
        )

    async def get_network_links(self, meta: RequestMetadata, patient_id: str) -> NetworkResult:
        result = await self._request(
            "GET", self._org_path(f"/patient/{patient_id}/networkLink"), meta, operation="get_network_links"
        )
        if result.ok:
            result.data = [NetworkLink.from_dict(link) for link in get_embedded(result.data, "networkLink")]
        return result

    async def upgrade_network_link(self, meta: RequestMetadata, upgrade_href: str) -> NetworkResult:
        return await self._request("POST", upgrade_href, meta, operation="upgrade_network_link")

    async def auto_upgrade_network_links(
        self, meta: RequestMetadata, patient_id: str
    ) -> List[Tuple[NetworkLink, NetworkResult]]:
        """
        Upgrade every LOLA 1 network link of a patient.

        Raises NetworkError if the links cannot be listed; per-link outcomes
        are returned for the caller to inspect.
        """
        links: List[NetworkLink] = (await self.get_network_links(meta, patient_id)).unwrap()
        outcomes = []
        for link in links:
            if not link.needs_upgrade:
                continue
            outcomes.append((link, await self.upgrade_network_link(meta, link.upgrade_href)))
        return outcomes

    # =========================================================================
    # Documents
    # =========================================================================

    async def query_documents(self, meta: RequestMetadata, patient_id: str) -> NetworkResult:
        """
        All document query entries for a patient, following `next` links.

        Each entry wraps a DocumentReference or an OperationOutcome under
        `content`.
        """
        entries: List[Dict[str, Any]] = []
        url: Optional[str] = "/v2/documentReference"
        params: Optional[Dict[str, Any]] = {"subject.id": patient_id}
        while url:
            result = await self._request("GET", url, meta, params=params, operation="query_documents")
            if not result.ok:
                return result
            page = result.data or {}
            entries.extend(page.get("entry") or [])
            url = _next_link(page)
            params = None
        return NetworkResult(kind=ResultKind.OK, data=entries, reference=self.last_reference_header)

    async def stream_document_content(
        self,
        meta: RequestMetadata,
        location: str,
        chunk_size: int = DOCUMENT_CHUNK_BYTES,
    ) -> AsyncIterator[bytes]:
        """
        Stream a document's bytes from its network location.

        Raises NetworkError when the gateway does not return the document.
        """
        if self._session is None:
            await self.initialize()
        ensure_available(network_breaker)

        async with self._session.get(self._url(location), headers=meta.to_headers()) as response:
            self.last_reference_header = response.headers.get(REFERENCE_HEADER, self.last_reference_header)
            if response.status != 200:
                text = await response.text()
                error = NetworkError(
                    f"Document retrieval failed {response.status}: {text[:200]}",
                    status_code=response.status,
                    reference=self.last_reference_header,
                    kind=ResultKind.NOT_FOUND if response.status == 404 else ResultKind.FATAL,
                )
                if response.status >= 500:
                    record_failure(network_breaker, error)
                raise error
            async for chunk in response.content.iter_chunked(chunk_size):
                yield chunk

    # =========================================================================
    # HTTP Layer
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        meta: RequestMetadata,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        operation: str = "",
    ) -> NetworkResult:
        """Make a request and classify its outcome."""
        if self._session is None:
            await self.initialize()

        try:
            ensure_available(network_breaker)
        except CircuitBreakerError:
            logger.error("network_circuit_open", operation=operation)
            return NetworkResult(kind=ResultKind.FATAL, error="Network temporarily unavailable (circuit breaker open)")

        try:
            status, body, headers = await self._send(method, self._url(path), meta, params, json)
        except TransientHTTPError as e:
            record_failure(network_breaker, e)
            return self._fatal(operation, str(e), e.status_code)
        except RETRYABLE_HTTP_ERRORS as e:
            record_failure(network_breaker, e)
            return self._fatal(operation, f"Network error: {e}")
        except aiohttp.ClientError as e:
            return self._fatal(operation, f"Network error: {e}")

        self.last_reference_header = headers.get(REFERENCE_HEADER, self.last_reference_header)

        if 200 <= status < 300:
            return NetworkResult(kind=ResultKind.OK, data=body, status_code=status, reference=self.last_reference_header)
        if status == 404:
            return NetworkResult(
                kind=ResultKind.NOT_FOUND,
                status_code=status,
                error=f"{operation}: not found",
                reference=self.last_reference_header,
            )
        return self._fatal(operation, f"Unexpected response {status}: {str(body)[:200]}", status)

    def _fatal(self, operation: str, message: str, status_code: Optional[int] = None) -> NetworkResult:
        logger.warning(
            "network_request_failed",
            operation=operation,
            status_code=status_code,
            network_reference=self.last_reference_header,
            error=message,
        )
        return NetworkResult(
            kind=ResultKind.FATAL,
            status_code=status_code,
            error=f"{operation}: {message}" if operation else message,
            reference=self.last_reference_header,
        )

    @retry_transient_http(max_attempts=settings.NETWORK_MAX_RETRIES + 1)
    async def _send(
        self,
        method: str,
        url: str,
        meta: RequestMetadata,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
    ) -> Tuple[int, Any, Dict[str, str]]:
        async with self._session.request(
            method,
            url,
            params=params,
            json=json,
            headers=meta.to_headers(),
        ) as response:
            if response.status == 429 or response.status >= 500:
                text = await response.text()
                raise TransientHTTPError(f"Server error {response.status}: {text[:200]}", response.status)
            if response.status == 204 or response.content_length == 0:
                body = None
            elif "json" in (response.content_type or ""):
                body = await response.json(content_type=None)
            else:
                body = await response.text()
            return response.status, body, dict(response.headers)


def _next_link(bundle: Dict[str, Any]) -> Optional[str]:
    """Get next page URL from a bundle"""
    for link in bundle.get("link") or []:
        if link.get("relation") == "next":
            return link.get("url")
    return None
