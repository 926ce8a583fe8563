"""
Tests for LinkService
"""

from unittest.mock import patch

import pytest
from hie_sync.core.errors import NetworkIdentityMissingError
from hie_sync.integrations.network import NetworkError
from hie_sync.schemas.patient import NetworkIdentity
from hie_sync.services.identity_sync import IdentitySyncEngine
from hie_sync.services.link_service import LinkService, person_to_dto

from tests.unit.factories import fatal, make_patient, not_found, ok

CA_LICENSE_SYSTEM = "urn:oid:2.16.840.1.113883.4.3.6"


def person(person_id, given="Jane", identifiers=None):
    details = {
        "name": [{"given": [given], "family": ["Doe"]}],
        "birthDate": "1980-04-20",
        "gender": {"code": "F"},
    }
    if identifiers:
        details["identifier"] = identifiers
    return {"_links": {"self": {"href": f"https://network.test/v1/person/{person_id}"}}, "details": details}


@pytest.fixture
def service(client_factory, patient_repository):
    return LinkService(IdentitySyncEngine(client_factory, patient_repository))


@pytest.fixture
def linked_patient(patient_repository):
    identity = NetworkIdentity(remote_patient_id="CW123", remote_person_id="P1")
    return patient_repository.add(make_patient(identity=identity))


class TestPersonToDto:
    def test_maps_details(self):
        dto = person_to_dto(person("P1"))

        assert dto.id == "P1"
        assert dto.first_name == "Jane"
        assert dto.last_name == "Doe"
        assert dto.birth_date == "1980-04-20"
        assert dto.gender == "F"

    def test_person_without_self_link(self):
        assert person_to_dto({"details": {}}) is None


class TestGetLinks:
    @pytest.mark.asyncio
    async def test_current_and_potential(self, service, network_client, linked_patient):
        network_client.get_person.return_value = ok(person("P1"))
        network_client.find_person.return_value = ok([person("P1"), person("P2", given="Janet")])

        links = await service.get_links(linked_patient, "facility-1")

        assert [p.id for p in links.current_links] == ["P1"]
        assert [p.id for p in links.potential_links] == ["P2"]
        network_client.find_person.assert_awaited_once()
        assert network_client.find_person.call_args.args[1] == "CW123"

    @pytest.mark.asyncio
    async def test_stale_person_is_not_current(self, service, network_client, linked_patient):
        network_client.get_person.return_value = not_found()
        network_client.find_person.return_value = ok([person("P2")])

        links = await service.get_links(linked_patient, "facility-1")

        assert links.current_links == []
        assert [p.id for p in links.potential_links] == ["P2"]

    @pytest.mark.asyncio
    async def test_unregistered_patient(self, service, patient_repository):
        patient = patient_repository.add(make_patient())

        with pytest.raises(NetworkIdentityMissingError):
            await service.get_links(patient, "facility-1")


class TestCreateLink:
    @pytest.mark.asyncio
    async def test_replaces_existing_link(self, service, network_client, linked_patient):
        network_client.get_person.return_value = ok(
            person("P2", identifiers=[{"system": CA_LICENSE_SYSTEM, "key": "D1234567"}])
        )

        await service.create_link(linked_patient, "facility-1", "P2")

        reset = network_client.reset_patient_link.call_args.args
        assert reset[1:] == ("P1", "CW123")
        _, person_id, patient_href, strong_id = network_client.add_or_upgrade_patient_link.call_args.args
        assert person_id == "P2"
        assert patient_href == "https://network.test/v1/org/1.2/patient/CW123/"
        assert strong_id.key == "D1234567"
        assert linked_patient.get_network_identity() == NetworkIdentity(remote_patient_id="CW123", remote_person_id="P2")

    @pytest.mark.asyncio
    async def test_same_person_is_not_reset(self, service, network_client, linked_patient):
        network_client.get_person.return_value = ok(person("P1"))

        await service.create_link(linked_patient, "facility-1", "P1")

        network_client.reset_patient_link.assert_not_called()
        assert network_client.add_or_upgrade_patient_link.call_args.args[3] is None

    @pytest.mark.asyncio
    async def test_failure_is_captured_and_raised(self, service, network_client, linked_patient):
        network_client.get_person.return_value = ok(person("P2"))
        network_client.add_or_upgrade_patient_link.return_value = fatal("link rejected", 400)

        with patch("hie_sync.services.link_service.capture_error") as capture:
            with pytest.raises(NetworkError):
                await service.create_link(linked_patient, "facility-1", "P2")

        assert capture.call_args.args[1]["context"] == "network.patient.link.create"
        assert linked_patient.get_network_identity().remote_person_id is None


class TestResetLink:
    @pytest.mark.asyncio
    async def test_forgets_person(self, service, network_client, linked_patient):
        await service.reset_link(linked_patient, "facility-1")

        assert linked_patient.get_network_identity() == NetworkIdentity(remote_patient_id="CW123")

    @pytest.mark.asyncio
    async def test_missing_remote_link_is_tolerated(self, service, network_client, linked_patient):
        network_client.reset_patient_link.return_value = not_found()

        await service.reset_link(linked_patient, "facility-1")

        assert linked_patient.get_network_identity().remote_person_id is None

    @pytest.mark.asyncio
    async def test_nothing_to_reset(self, service, network_client, patient_repository):
        patient = patient_repository.add(make_patient(identity=NetworkIdentity(remote_patient_id="CW123")))

        await service.reset_link(patient, "facility-1")

        network_client.reset_patient_link.assert_not_called()
