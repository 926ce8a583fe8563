"""
Tests for patient to network payload conversion
"""

from hie_sync.integrations.network.models import StrongId
from hie_sync.services.patient_conversion import (
    drivers_license_system,
    get_matching_strong_ids,
    make_person_for_patient,
    patient_to_network,
)

from tests.unit.factories import make_organization, make_patient

CA_LICENSE_SYSTEM = "urn:oid:2.16.840.1.113883.4.3.6"


class TestDriversLicenseSystem:
    def test_known_state(self):
        assert drivers_license_system("CA") == CA_LICENSE_SYSTEM
        assert drivers_license_system("ny") == "urn:oid:2.16.840.1.113883.4.3.36"

    def test_unknown_state(self):
        assert drivers_license_system("ZZ") is None
        assert drivers_license_system(None) is None


class TestPatientToNetwork:
    def test_identifier_uses_organization_oid(self):
        organization = make_organization()
        payload = patient_to_network(make_patient(), organization)

        identifier = payload["identifier"][0]
        assert identifier["key"] == "patient-1"
        assert identifier["system"] == f"urn:oid:{organization.oid}"
        assert identifier["label"] == "Springfield Clinic"
        assert organization.oid.endswith(".2.42")

    def test_details(self):
        details = patient_to_network(make_patient(), make_organization())["details"]

        assert details["name"] == [{"use": "usual", "given": ["Jane"], "family": ["Doe"]}]
        assert details["birthDate"] == "1980-04-20"
        assert details["gender"] == {"code": "F"}
        assert details["address"][0]["line"] == ["1 Main St"]
        assert details["telecom"] == [{"system": "phone", "value": "5555550100"}]
        assert details["identifier"] == [{"use": "usual", "key": "D1234567", "system": CA_LICENSE_SYSTEM}]

    def test_no_strong_ids(self):
        details = patient_to_network(make_patient(drivers_license=None), make_organization())["details"]

        assert "identifier" not in details

    def test_person_carries_patient_details(self):
        payload = patient_to_network(make_patient(), make_organization())
        person = make_person_for_patient(payload)

        assert person == {"details": payload["details"]}


class TestMatchingStrongIds:
    def test_shared_ids_only(self):
        network_patient = patient_to_network(make_patient(), make_organization())
        person = {
            "details": {
                "identifier": [
                    {"system": CA_LICENSE_SYSTEM, "key": "D1234567"},
                    {"system": CA_LICENSE_SYSTEM, "key": "OTHER"},
                ]
            }
        }

        assert get_matching_strong_ids(person, network_patient) == [StrongId(CA_LICENSE_SYSTEM, "D1234567")]

    def test_person_without_identifiers(self):
        network_patient = patient_to_network(make_patient(), make_organization())

        assert get_matching_strong_ids({"details": {}}, network_patient) == []
