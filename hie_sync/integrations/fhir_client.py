"""
FHIR R4 canonical store client

Writes canonical records to a multi-tenant FHIR server, one partition per
tenant (`{base}/fhir/{tenant_id}`):
- Upsert of single resources (PUT by id)
- Transaction bundles for converted documents
- Retry with exponential backoff on transient failures
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from hie_sync.core.logging import get_logger
from hie_sync.core.resilience import (
    TransientHTTPError,
    ensure_available,
    fhir_server_breaker,
    record_failure,
    retry_transient_http,
)

logger = get_logger(__name__)


# ==============================================================================
# Exceptions
# ==============================================================================


class FHIRError(Exception):
    """Base FHIR error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FHIRAuthorizationError(FHIRError):
    """Authorization denied"""


class FHIRNotFoundError(FHIRError):
    """Tenant partition or resource not found"""


class FHIRConflictError(FHIRError):
    """Resource conflict (version mismatch or duplicate)"""


class FHIRValidationError(FHIRError):
    """Resource validation failed"""

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, 400)
        self.issues = issues or []


# ==============================================================================
# Write Operation Models
# ==============================================================================


@dataclass
class FHIRWriteResult:
    """Result of a FHIR write operation"""

    success: bool
    resource_id: Optional[str] = None
    version_id: Optional[str] = None
    location: Optional[str] = None
    operation: str = ""  # upsert, transaction
    resource_type: str = ""
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "resource_id": self.resource_id,
            "version_id": self.version_id,
            "location": self.location,
            "operation": self.operation,
            "resource_type": self.resource_type,
            "issues": self.issues,
        }


# ==============================================================================
# Configuration
# ==============================================================================


@dataclass
class FHIRClientConfig:
    """Configuration for FHIR client"""

    base_url: str
    timeout_seconds: int = 30

    default_headers: Dict[str, str] = field(
        default_factory=lambda: {
            "Accept": "application/fhir+json",
            "Content-Type": "application/fhir+json",
        }
    )


# ==============================================================================
# FHIR Client
# ==============================================================================


class FHIRServerClient:
    """
    Canonical store client.

    Usage:
        client = FHIRServerClient(FHIRClientConfig(base_url="http://fhir-server:8080"))
        await client.upsert(tenant_id, document_reference)
    """

    def __init__(self, config: FHIRClientConfig):
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session"""
        if self._session is not None:
            return
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            headers=self.config.default_headers,
        )
        logger.info("fhir_client_initialized", base_url=self.config.base_url)

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

    def tenant_base_url(self, tenant_id: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/fhir/{tenant_id}"

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def upsert(self, tenant_id: str, resource: Dict[str, Any]) -> FHIRWriteResult:
        """
        Create or replace a resource by its id.

        Raises:
            FHIRValidationError: resource rejected by the server
            FHIRConflictError: concurrent modification
        """
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        if not resource_type or not resource_id:
            raise FHIRValidationError("Resource requires resourceType and id to be upserted")

        url = f"{self.tenant_base_url(tenant_id)}/{resource_type}/{resource_id}"
        data, headers = await self._write_request("PUT", url, resource_type, "upsert", data=resource)

        result = FHIRWriteResult(success=True, operation="upsert", resource_type=resource_type)
        if data:
            result.resource_id = data.get("id", resource_id)
            result.version_id = (data.get("meta") or {}).get("versionId")
        else:
            result.resource_id = resource_id
        result.location = headers.get("Content-Location") or headers.get("Location")
        return result

    async def upsert_bundle(self, tenant_id: str, bundle: Dict[str, Any]) -> FHIRWriteResult:
        """
        Store every resource of a bundle in one transaction.

        Entries without a request are turned into PUTs by id, or POSTs for
        resources without one.
        """
        transaction = to_transaction_bundle(bundle)
        data, _ = await self._write_request(
            "POST", self.tenant_base_url(tenant_id), "Bundle", "transaction", data=transaction
        )
        issues = []
        for entry in (data or {}).get("entry") or []:
            outcome = (entry.get("response") or {}).get("outcome")
            if outcome:
                issues.extend(outcome.get("issue") or [])
        return FHIRWriteResult(
            success=True,
            resource_id=(data or {}).get("id"),
            operation="transaction",
            resource_type="Bundle",
            issues=issues,
        )

    # =========================================================================
    # HTTP Layer
    # =========================================================================

    async def _write_request(
        self,
        method: str,
        url: str,
        resource_type: str,
        operation: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Dict[str, str]]:
        """
        Make a write HTTP request with proper error handling.

        Returns:
            Tuple of (response_data, response_headers)
        """
        if self._session is None:
            await self.initialize()
        ensure_available(fhir_server_breaker)

        try:
            status, body, headers = await self._send(method, url, data)
        except TransientHTTPError as e:
            record_failure(fhir_server_breaker, e)
            raise FHIRError(f"{operation} {resource_type} failed: {e}", e.status_code) from e

        if status in (200, 201):
            return (body if isinstance(body, dict) else None), headers
        if status == 204:
            return None, headers
        if status in (400, 422):
            issues = body.get("issue", []) if isinstance(body, dict) else [{"diagnostics": str(body)}]
            raise FHIRValidationError(f"Validation failed: {str(body)[:200]}", issues=issues)
        if status in (401, 403):
            raise FHIRAuthorizationError("Authorization denied", status)
        if status == 404:
            raise FHIRNotFoundError(f"Not found: {url}", status)
        if status in (409, 412):
            raise FHIRConflictError(f"Conflict: {str(body)[:200]}", status)
        raise FHIRError(f"Unexpected response {status}: {str(body)[:200]}", status)

    @retry_transient_http(max_attempts=3)
    async def _send(
        self, method: str, url: str, data: Optional[Dict[str, Any]]
    ) -> Tuple[int, Any, Dict[str, str]]:
        async with self._session.request(method, url, json=data) as response:
            if response.status == 429 or response.status >= 500:
                text = await response.text()
                raise TransientHTTPError(f"Server error {response.status}: {text[:200]}", response.status)
            if response.status == 204:
                body = None
            else:
                text = await response.text()
                try:
                    body = await response.json(content_type=None) if text else None
                except ValueError:
                    body = text
            return response.status, body, dict(response.headers)


def to_transaction_bundle(bundle: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of `bundle` as a transaction with a request on every entry."""
    entries = []
    for entry in bundle.get("entry") or []:
        resource = entry.get("resource")
        if not resource:
            continue
        request = entry.get("request")
        if not request:
            resource_type = resource.get("resourceType")
            if resource.get("id"):
                request = {"method": "PUT", "url": f"{resource_type}/{resource['id']}"}
            else:
                request = {"method": "POST", "url": resource_type}
        new_entry = {"resource": resource, "request": request}
        if entry.get("fullUrl"):
            new_entry["fullUrl"] = entry["fullUrl"]
        entries.append(new_entry)
    return {"resourceType": "Bundle", "type": "transaction", "entry": entries}


__all__ = [
    "FHIRServerClient",
    "FHIRClientConfig",
    "FHIRWriteResult",
    "FHIRError",
    "FHIRAuthorizationError",
    "FHIRNotFoundError",
    "FHIRConflictError",
    "FHIRValidationError",
    "to_transaction_bundle",
]
