"""
Tests for IdentitySyncEngine

Covers registration, person matching/enrollment, link trust upgrades and
the failure semantics of create/update/delete.
"""

from unittest.mock import AsyncMock, patch

import pytest
from hie_sync.core.errors import RegistrationError
from hie_sync.integrations.network import NetworkError, NetworkLink, PatientLink, TrustLevel
from hie_sync.schemas.patient import LinkStatus, NetworkIdentity
from hie_sync.services.identity_sync import CREATE_CONTEXT, UPDATE_CONTEXT, IdentitySyncEngine

from tests.unit.factories import fatal, make_patient, not_found, ok

PATIENT_HREF = "https://network.test/v1/org/1.2/patient/CW123/"
CA_LICENSE_SYSTEM = "urn:oid:2.16.840.1.113883.4.3.6"


def person_resource(person_id="P9", license_key="D1234567"):
    identifiers = [{"system": CA_LICENSE_SYSTEM, "key": license_key}] if license_key else []
    return {
        "_links": {"self": {"href": f"https://network.test/v1/person/{person_id}"}},
        "details": {"identifier": identifiers},
        "enrolled": True,
    }


def patient_resource(href=PATIENT_HREF):
    return {"_links": {"self": {"href": href}}}


class TestSyncCreate:
    @pytest.fixture
    def engine(self, client_factory, patient_repository):
        return IdentitySyncEngine(client_factory, patient_repository)

    @pytest.mark.asyncio
    async def test_registers_enrolls_and_links(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([])
        network_client.enroll_person.return_value = ok(person_resource())

        await engine.sync_create(patient, "facility-1")

        identity = patient.get_network_identity()
        assert identity == NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9")
        assert identity.link_status == LinkStatus.LINKED

        args = network_client.add_or_upgrade_patient_link.call_args.args
        assert args[1] == "P9"
        assert args[2] == PATIENT_HREF
        assert args[3].system == CA_LICENSE_SYSTEM
        assert args[3].key == "D1234567"
        network_client.auto_upgrade_network_links.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_registration_payload_carries_organization_context(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource()])

        await engine.sync_create(patient, "facility-1")

        payload = network_client.register_patient.call_args.args[1]
        identifier = payload["identifier"][0]
        assert identifier["key"] == patient.id
        assert identifier["label"] == "Springfield Clinic"
        assert identifier["system"].endswith(".2.42")

    @pytest.mark.asyncio
    async def test_existing_person_is_reused(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource("P1"), person_resource("P2")])

        await engine.sync_create(patient, "facility-1")

        network_client.enroll_person.assert_not_awaited()
        assert patient.get_network_identity().remote_person_id == "P1"

    @pytest.mark.asyncio
    async def test_link_without_shared_strong_id(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource(license_key="OTHER")])

        await engine.sync_create(patient, "facility-1")

        assert network_client.add_or_upgrade_patient_link.call_args.args[3] is None

    @pytest.mark.asyncio
    async def test_missing_self_link_keeps_registered_id(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok({"id": "CW123"})

        with patch("hie_sync.services.identity_sync.capture_error") as capture:
            with pytest.raises(RegistrationError):
                await engine.sync_create(patient, "facility-1")

        identity = patient.get_network_identity()
        assert identity.remote_patient_id == "CW123"
        assert identity.remote_person_id is None
        assert identity.link_status == LinkStatus.NEEDS_REVIEW
        network_client.find_person.assert_not_awaited()
        assert capture.call_args.args[1]["context"] == CREATE_CONTEXT

    @pytest.mark.asyncio
    async def test_missing_id_fails_without_storing(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok({})

        with patch("hie_sync.services.identity_sync.capture_error"):
            with pytest.raises(RegistrationError):
                await engine.sync_create(patient, "facility-1")

        assert patient.get_network_identity() is None

    @pytest.mark.asyncio
    async def test_network_failure_is_captured_and_raised(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = fatal("register failed")

        with patch("hie_sync.services.identity_sync.capture_error") as capture:
            with pytest.raises(NetworkError):
                await engine.sync_create(patient, "facility-1")

        extra = capture.call_args.args[1]
        assert extra["patient_id"] == patient.id
        assert extra["facility_id"] == "facility-1"
        assert extra["network_reference"] == "ref-1"
        assert extra["payload"]["identifier"][0]["key"] == patient.id

    @pytest.mark.asyncio
    async def test_person_id_survives_link_failure(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([])
        network_client.enroll_person.return_value = ok(person_resource())
        network_client.add_or_upgrade_patient_link.return_value = fatal("link failed")

        with patch("hie_sync.services.identity_sync.capture_error"):
            with pytest.raises(NetworkError):
                await engine.sync_create(patient, "facility-1")

        assert patient.get_network_identity() == NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9")

    @pytest.mark.asyncio
    async def test_network_link_upgrade_failures_are_tolerated(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource()])
        network_client.auto_upgrade_network_links.side_effect = NetworkError("links unavailable")

        with patch("hie_sync.services.identity_sync.capture_error") as capture:
            await engine.sync_create(patient, "facility-1")

        assert capture.call_args.args[1]["context"] == f"{CREATE_CONTEXT}.network_links"
        assert patient.get_network_identity().remote_person_id == "P9"

    @pytest.mark.asyncio
    async def test_failed_link_upgrades_are_reported_as_warnings(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource()])
        link = NetworkLink(patient_href="https://other/patient/1", assurance_level=TrustLevel.LOLA_1, upgrade_href="u")
        network_client.auto_upgrade_network_links.return_value = [(link, fatal("nope")), (link, ok({}))]

        with patch("hie_sync.services.identity_sync.capture_warning") as warning:
            await engine.sync_create(patient, "facility-1")

        warning.assert_called_once()
        assert warning.call_args.args[0] == "Failed to upgrade network link"


class TestSyncUpdate:
    @pytest.fixture
    def engine(self, client_factory, patient_repository):
        return IdentitySyncEngine(client_factory, patient_repository)

    @pytest.fixture
    def linked_patient(self, patient_repository):
        return patient_repository.add(
            make_patient(identity=NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9"))
        )

    @pytest.mark.asyncio
    async def test_without_identity_behaves_like_create(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())
        network_client.register_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([])
        network_client.enroll_person.return_value = ok(person_resource())

        with patch("hie_sync.services.identity_sync.capture_warning"):
            await engine.sync_update(patient, "facility-1")

        network_client.register_patient.assert_awaited_once()
        network_client.update_patient.assert_not_awaited()
        assert patient.get_network_identity() == NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9")

    @pytest.mark.asyncio
    async def test_without_person_finds_or_creates_one(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient(identity=NetworkIdentity(remote_patient_id="CW123")))
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.find_person.return_value = ok([person_resource()])

        await engine.sync_update(patient, "facility-1")

        network_client.update_person.assert_not_awaited()
        assert patient.get_network_identity().remote_person_id == "P9"
        assert network_client.add_or_upgrade_patient_link.call_args.args[2] == PATIENT_HREF

    @pytest.mark.asyncio
    async def test_trusted_link_is_never_upgraded(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok(person_resource())
        network_client.get_patient_links.return_value = ok(
            [PatientLink(patient_href=PATIENT_HREF, assurance_level=TrustLevel.LOLA_4)]
        )

        await engine.sync_update(linked_patient, "facility-1")
        await engine.sync_update(linked_patient, "facility-1")

        network_client.add_or_upgrade_patient_link.assert_not_awaited()
        assert network_client.auto_upgrade_network_links.await_count == 2

    @pytest.mark.asyncio
    async def test_low_trust_link_is_upgraded_with_shared_id(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok(person_resource())
        network_client.get_patient_links.return_value = ok(
            [PatientLink(patient_href=PATIENT_HREF, assurance_level=TrustLevel.LOLA_2)]
        )

        await engine.sync_update(linked_patient, "facility-1")

        args = network_client.add_or_upgrade_patient_link.call_args.args
        assert args[1] == "P9"
        assert args[3].key == "D1234567"

    @pytest.mark.asyncio
    async def test_low_trust_link_without_shared_id_is_left_alone(self, engine, network_client, patient_repository):
        patient = patient_repository.add(
            make_patient(
                identity=NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9"),
                drivers_license=None,
            )
        )
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok(person_resource())
        network_client.get_patient_links.return_value = ok(
            [PatientLink(patient_href=PATIENT_HREF, assurance_level=TrustLevel.LOLA_2)]
        )

        await engine.sync_update(patient, "facility-1")

        network_client.add_or_upgrade_patient_link.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_link_is_created(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok(person_resource())
        network_client.get_patient_links.return_value = ok(
            [PatientLink(patient_href="https://network.test/v1/org/1.2/patient/OTHER/", assurance_level=TrustLevel.LOLA_4)]
        )

        await engine.sync_update(linked_patient, "facility-1")

        network_client.add_or_upgrade_patient_link.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_link_to_patient_sharing_id_prefix_is_not_ours(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok(person_resource())
        network_client.get_patient_links.return_value = ok(
            [PatientLink(patient_href="https://network.test/v1/org/1.2/patient/CW1234/", assurance_level=TrustLevel.LOLA_4)]
        )

        await engine.sync_update(linked_patient, "facility-1")

        network_client.add_or_upgrade_patient_link.assert_awaited_once()
        assert network_client.add_or_upgrade_patient_link.call_args.args[2] == PATIENT_HREF

    @pytest.mark.asyncio
    async def test_unenrolled_person_is_reenrolled(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = ok({**person_resource(), "enrolled": False})
        network_client.get_patient_links.return_value = ok([])

        await engine.sync_update(linked_patient, "facility-1")

        network_client.reenroll_person.assert_awaited_once()
        assert network_client.reenroll_person.call_args.args[1] == "P9"

    @pytest.mark.asyncio
    async def test_person_not_found_falls_back_to_find_or_create(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = not_found()
        network_client.find_person.return_value = ok([])
        network_client.enroll_person.return_value = ok(person_resource("P10"))

        with patch("hie_sync.services.identity_sync.capture_warning"):
            await engine.sync_update(linked_patient, "facility-1")

        network_client.get_patient_links.assert_not_awaited()
        assert linked_patient.get_network_identity() == NetworkIdentity(
            remote_patient_id="CW123", remote_person_id="P10"
        )

    @pytest.mark.asyncio
    async def test_person_update_failure_is_fatal(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok(patient_resource())
        network_client.update_person.return_value = fatal("person update failed")

        with patch("hie_sync.services.identity_sync.capture_error") as capture:
            with pytest.raises(NetworkError):
                await engine.sync_update(linked_patient, "facility-1")

        assert capture.call_args.args[1]["context"] == UPDATE_CONTEXT
        network_client.find_person.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_without_self_link_raises(self, engine, network_client, linked_patient):
        network_client.update_patient.return_value = ok({})

        with patch("hie_sync.services.identity_sync.capture_error"):
            with pytest.raises(RegistrationError):
                await engine.sync_update(linked_patient, "facility-1")


class TestSyncDelete:
    @pytest.fixture
    def engine(self, client_factory, patient_repository):
        return IdentitySyncEngine(client_factory, patient_repository)

    @pytest.mark.asyncio
    async def test_without_identity_is_a_no_op(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient())

        await engine.sync_delete(patient, "facility-1")

        network_client.delete_patient.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deletes_remotely_and_keeps_identity(self, engine, network_client, patient_repository):
        identity = NetworkIdentity(remote_patient_id="CW123", remote_person_id="P9")
        patient = patient_repository.add(make_patient(identity=identity))

        await engine.sync_delete(patient, "facility-1")

        assert network_client.delete_patient.call_args.args[1] == "CW123"
        assert patient.get_network_identity() == identity

    @pytest.mark.asyncio
    async def test_failure_is_raised(self, engine, network_client, patient_repository):
        patient = patient_repository.add(make_patient(identity=NetworkIdentity(remote_patient_id="CW123")))
        network_client.delete_patient = AsyncMock(return_value=fatal())

        with patch("hie_sync.services.identity_sync.capture_error"):
            with pytest.raises(NetworkError):
                await engine.sync_delete(patient, "facility-1")
