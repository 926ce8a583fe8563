"""
Patient demographics and network identity schemas
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NetworkSource(str, Enum):
    """Remote networks a patient can be registered with"""

    COMMONWELL = "COMMONWELL"


class LinkStatus(str, Enum):
    """Patient<>Person link state, derived from the stored identity"""

    LINKED = "linked"
    NEEDS_REVIEW = "needs-review"


class PersonalIdentifier(BaseModel):
    """Government- or system-issued identifier (e.g. driver's license)"""

    type: str = "driversLicense"
    value: str
    state: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class Address(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    zip: str
    country: str = "USA"


class Contact(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None


class Demographics(BaseModel):
    """Locally owned demographics for a patient"""

    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    dob: date
    gender_at_birth: str = Field(..., pattern="^(M|F|U)$")
    personal_identifiers: List[PersonalIdentifier] = Field(default_factory=list)
    address: Address
    contact: Optional[Contact] = None


class NetworkIdentity(BaseModel):
    """
    A patient's identity on one remote network.

    remote_patient_id is assigned by the network on registration; the
    person id is present once the patient was matched to (or enrolled as)
    a network Person.
    """

    remote_patient_id: str
    remote_person_id: Optional[str] = None

    @property
    def link_status(self) -> LinkStatus:
        return LinkStatus.LINKED if self.remote_person_id else LinkStatus.NEEDS_REVIEW


def get_link_status(identity: Optional[NetworkIdentity]) -> LinkStatus:
    """Link status for a patient that may not be registered at all."""
    if identity is None:
        return LinkStatus.NEEDS_REVIEW
    return identity.link_status


class PersonLinkDTO(BaseModel):
    """Network Person a patient is (or could be) linked to"""

    id: str
    source: NetworkSource = NetworkSource.COMMONWELL
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birth_date: Optional[str] = None
    gender: Optional[str] = None


class PatientLinks(BaseModel):
    current_links: List[PersonLinkDTO] = Field(default_factory=list)
    potential_links: List[PersonLinkDTO] = Field(default_factory=list)
