"""
Conversion of local patients into network Patient and Person payloads.

Driver's license numbers are the strong identifiers sent to the network;
their identifier system is the issuing state's OID.
"""

from typing import Any, Dict, List, Optional

from hie_sync.integrations.network.models import StrongId, get_person_identifiers
from hie_sync.models import Organization, Patient
from hie_sync.schemas.patient import Demographics, PersonalIdentifier

# Driver's license OIDs are 2.16.840.1.113883.4.3.<state FIPS code>
DRIVERS_LICENSE_OID_PREFIX = "2.16.840.1.113883.4.3"

STATE_FIPS_CODES = {
    "AL": "1", "AK": "2", "AZ": "4", "AR": "5", "CA": "6", "CO": "8", "CT": "9", "DE": "10",
    "DC": "11", "FL": "12", "GA": "13", "HI": "15", "ID": "16", "IL": "17", "IN": "18", "IA": "19",
    "KS": "20", "KY": "21", "LA": "22", "ME": "23", "MD": "24", "MA": "25", "MI": "26", "MN": "27",
    "MS": "28", "MO": "29", "MT": "30", "NE": "31", "NV": "32", "NH": "33", "NJ": "34", "NM": "35",
    "NY": "36", "NC": "37", "ND": "38", "OH": "39", "OK": "40", "OR": "41", "PA": "42", "RI": "44",
    "SC": "45", "SD": "46", "TN": "47", "TX": "48", "UT": "49", "VT": "50", "VA": "51", "WA": "53",
    "WV": "54", "WI": "55", "WY": "56",
}  # fmt: skip


def drivers_license_system(state: Optional[str]) -> Optional[str]:
    code = STATE_FIPS_CODES.get((state or "").upper())
    if code is None:
        return None
    return f"urn:oid:{DRIVERS_LICENSE_OID_PREFIX}.{code}"


def _strong_identifier(identifier: PersonalIdentifier) -> Optional[Dict[str, Any]]:
    if identifier.type != "driversLicense":
        return None
    system = drivers_license_system(identifier.state)
    if system is None:
        return None
    entry: Dict[str, Any] = {"use": "usual", "key": identifier.value, "system": system}
    period = {}
    if identifier.period_start:
        period["start"] = identifier.period_start.isoformat()
    if identifier.period_end:
        period["end"] = identifier.period_end.isoformat()
    if period:
        entry["period"] = period
    return entry


def _details(demographics: Demographics) -> Dict[str, Any]:
    address = demographics.address
    lines = [line for line in (address.address_line1, address.address_line2) if line]
    details: Dict[str, Any] = {
        "address": [
            {
                "use": "home",
                "zip": address.zip,
                "state": address.state,
                "line": lines,
                "city": address.city,
                "country": address.country,
            }
        ],
        "name": [{"use": "usual", "given": [demographics.first_name], "family": [demographics.last_name]}],
        "gender": {"code": demographics.gender_at_birth},
        "birthDate": demographics.dob.isoformat(),
    }

    strong_ids = [s for s in (_strong_identifier(i) for i in demographics.personal_identifiers) if s]
    if strong_ids:
        details["identifier"] = strong_ids

    contact = demographics.contact
    if contact:
        telecom = []
        if contact.phone:
            telecom.append({"system": "phone", "value": contact.phone})
        if contact.email:
            telecom.append({"system": "email", "value": contact.email})
        if telecom:
            details["telecom"] = telecom
    return details


def patient_to_network(patient: Patient, organization: Organization) -> Dict[str, Any]:
    """Network Patient payload for a local patient registered by `organization`."""
    return {
        "identifier": [
            {
                "use": "unspecified",
                "label": organization.name,
                "system": f"urn:oid:{organization.oid}",
                "key": patient.id,
                "assigner": organization.name,
            }
        ],
        "details": _details(patient.demographics),
    }


def make_person_for_patient(network_patient: Dict[str, Any]) -> Dict[str, Any]:
    """Person payload carrying the same demographics as a network Patient."""
    return {"details": dict(network_patient.get("details") or {})}


def get_matching_strong_ids(person: Dict[str, Any], network_patient: Dict[str, Any]) -> List[StrongId]:
    """
    Strong ids present on both the person and the patient payload.

    Used only as proof when linking or upgrading a link, never to pick
    between candidate persons.
    """
    patient_ids = set(get_person_identifiers(network_patient))
    return [strong_id for strong_id in get_person_identifiers(person) if strong_id in patient_ids]
