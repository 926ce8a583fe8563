"""
Fixtures for unit tests: in-memory stand-ins for the database-backed
repositories and the content store, and a NetworkClient double.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from hie_sync.integrations.network import RequestMetadata
from hie_sync.models import Facility, Organization

from tests.unit.factories import (
    FakePatientRepository,
    InMemoryContentStore,
    InMemoryQueryStatusRepository,
    make_facility,
    make_organization,
    ok,
)


@pytest.fixture
def organization() -> Organization:
    return make_organization()


@pytest.fixture
def facility(organization) -> Facility:
    return make_facility(organization)


@pytest.fixture
def patient_repository(organization, facility) -> FakePatientRepository:
    return FakePatientRepository(organization, facility)


@pytest.fixture
def status_repository() -> InMemoryQueryStatusRepository:
    return InMemoryQueryStatusRepository()


@pytest.fixture
def content_store() -> InMemoryContentStore:
    return InMemoryContentStore()


@pytest.fixture
def network_client():
    """NetworkClient double: every call succeeds with an empty body unless a test says otherwise."""
    client = MagicMock()
    client.last_reference_header = "ref-1"
    for name in (
        "search_patient",
        "register_patient",
        "update_patient",
        "delete_patient",
        "find_person",
        "get_person",
        "enroll_person",
        "update_person",
        "reenroll_person",
        "get_patient_links",
        "add_or_upgrade_patient_link",
        "reset_patient_link",
        "get_network_links",
        "upgrade_network_link",
        "query_documents",
    ):
        setattr(client, name, AsyncMock(return_value=ok({})))
    client.auto_upgrade_network_links = AsyncMock(return_value=[])
    client.patient_url = MagicMock(side_effect=lambda pid: f"https://network.test/v1/org/1.2/patient/{pid}/")
    return client


@pytest.fixture
def client_factory(network_client):
    factory = MagicMock()
    factory.for_organization.return_value = network_client
    factory.request_metadata.return_value = RequestMetadata(
        role="222405004", subject_id="Springfield Clinic", purpose_of_use="TREATMENT", npi="1234567893"
    )
    factory.close = AsyncMock()
    return factory
