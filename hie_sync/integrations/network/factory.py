"""
Network client factory

Clients are scoped to an organization (its OID appears in request paths
and its name in request metadata). The factory keeps one client per
organization OID and name for the lifetime of the factory. `invalidate()`
drops the clients of an OID and `close()` releases all HTTP sessions.
"""

import asyncio
from typing import Dict, Optional, Tuple

from hie_sync.core.config import Settings, settings
from hie_sync.core.logging import get_logger
from hie_sync.models import Facility, Organization

from .client import NetworkClient, NetworkClientConfig
from .models import RequestMetadata

logger = get_logger(__name__)


class NetworkClientFactory:
    """Explicit, keyed registry of per-organization network clients"""

    def __init__(self, app_settings: Optional[Settings] = None):
        self._settings = app_settings or settings
        self._clients: Dict[Tuple[str, str], NetworkClient] = {}
        self._lock = asyncio.Lock()

    def for_organization(self, organization: Organization) -> NetworkClient:
        """Client acting on behalf of `organization`."""
        key = (organization.oid, organization.name)
        client = self._clients.get(key)
        if client is not None:
            return client
        client = NetworkClient(
            NetworkClientConfig(
                base_url=self._settings.NETWORK_API_URL,
                org_name=organization.name,
                org_oid=organization.oid,
                api_token=self._settings.NETWORK_API_TOKEN,
                timeout_seconds=self._settings.NETWORK_TIMEOUT_SEC,
            )
        )
        self._clients[key] = client
        return client

    def request_metadata(self, organization: Organization, facility: Optional[Facility] = None) -> RequestMetadata:
        """Metadata for requests made by `organization` at `facility`."""
        return RequestMetadata(
            role=self._settings.NETWORK_USER_ROLE,
            subject_id=organization.name,
            purpose_of_use=self._settings.NETWORK_PURPOSE_OF_USE,
            npi=facility.npi if facility is not None else None,
        )

    async def invalidate(self, org_oid: str) -> None:
        async with self._lock:
            keys = [key for key in self._clients if key[0] == org_oid]
            clients = [self._clients.pop(key) for key in keys]
        for client in clients:
            await client.close()
        if clients:
            logger.info("network_client_invalidated", org_oid=org_oid)

    async def close(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.close()
