"""
Network resource helpers

The network speaks HAL-flavoured JSON: resources carry their own URL in
`_links.self.href` and embed collections under `_embedded`. Payloads are
kept as dicts; only the pieces the sync engines branch on are modelled.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional


class TrustLevel(IntEnum):
    """Level of assurance (LOLA) of a Patient<>Person link"""

    LOLA_1 = 1
    LOLA_2 = 2
    LOLA_3 = 3
    LOLA_4 = 4

    @classmethod
    def parse(cls, value: Any) -> Optional["TrustLevel"]:
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return None


# Links at or above this level are considered verified
TRUSTED_LEVEL = TrustLevel.LOLA_3

DOCUMENT_REFERENCE_RESOURCE_TYPE = "DocumentReference"
OPERATION_OUTCOME_RESOURCE_TYPE = "OperationOutcome"


@dataclass
class RequestMetadata:
    """Per-request attributes the network requires to authorize a call"""

    role: str
    subject_id: str  # organization name acting on the request
    purpose_of_use: str
    npi: Optional[str] = None

    def to_headers(self) -> Dict[str, str]:
        headers = {
            "X-Role": self.role,
            "X-Subject-Id": self.subject_id,
            "X-Purpose-Of-Use": self.purpose_of_use,
        }
        if self.npi:
            headers["X-NPI"] = self.npi
        return headers


@dataclass(frozen=True)
class StrongId:
    """Identifier usable as proof when linking a patient to a person"""

    system: str
    key: str

    def to_dict(self) -> Dict[str, str]:
        return {"system": self.system, "key": self.key}


@dataclass
class PatientLink:
    """Link between a Person and one of its registered Patients"""

    patient_href: str
    assurance_level: Optional[TrustLevel] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientLink":
        return cls(
            patient_href=data.get("patient") or "",
            assurance_level=TrustLevel.parse(data.get("assuranceLevel")),
        )

    def is_for_patient(self, remote_patient_id: str) -> bool:
        if not self.patient_href:
            return False
        return get_id_trailing_slash({"_links": {"self": {"href": self.patient_href}}}) == remote_patient_id

    @property
    def is_trusted(self) -> bool:
        return self.assurance_level is not None and self.assurance_level >= TRUSTED_LEVEL


@dataclass
class NetworkLink:
    """Link from a local Patient to a Patient held by another organization"""

    patient_href: Optional[str]
    assurance_level: Optional[TrustLevel]
    upgrade_href: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkLink":
        links = data.get("_links") or {}
        return cls(
            patient_href=(data.get("patient") or {}).get("href") if isinstance(data.get("patient"), dict) else None,
            assurance_level=TrustLevel.parse(data.get("assuranceLevel")),
            upgrade_href=(links.get("upgrade") or {}).get("href"),
            raw=data,
        )

    @property
    def needs_upgrade(self) -> bool:
        return self.assurance_level == TrustLevel.LOLA_1 and bool(self.upgrade_href)


def get_self_link(resource: Optional[Dict[str, Any]]) -> Optional[str]:
    """The resource's own URL (`_links.self.href`)."""
    if not resource:
        return None
    return ((resource.get("_links") or {}).get("self") or {}).get("href")


def get_id(resource: Optional[Dict[str, Any]]) -> Optional[str]:
    """Last path segment of the self link."""
    href = get_self_link(resource)
    if not href:
        return None
    return href.rstrip("/").split("/")[-1] or None


def get_id_trailing_slash(resource: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Id of a Patient resource.

    Patient self links end with a trailing slash, so the id is the
    second-to-last segment when the href ends with '/'.
    """
    href = get_self_link(resource)
    if not href:
        return None
    parts = href.split("/")
    if href.endswith("/"):
        parts = parts[:-1]
    return parts[-1] or None


def get_embedded(resource: Optional[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    if not resource:
        return []
    return (resource.get("_embedded") or {}).get(key) or []


def get_person_identifiers(person: Dict[str, Any]) -> List[StrongId]:
    identifiers = (person.get("details") or {}).get("identifier") or []
    return [StrongId(system=i["system"], key=i["key"]) for i in identifiers if i.get("system") and i.get("key")]


def get_patient_id(resource: Optional[Dict[str, Any]]) -> Optional[str]:
    """Network-assigned id of a Patient: from its self link, else its `id` field."""
    if not resource:
        return None
    return get_id_trailing_slash(resource) or resource.get("id") or None
