"""
Patient model

The `data` column holds the locally owned demographics together with
`external_data`, the per-network identity written by identity sync:

    {
      "first_name": "...", "last_name": "...", "dob": "1980-04-20", ...,
      "external_data": {"COMMONWELL": {"patient_id": "...", "person_id": "..."}}
    }
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from hie_sync.core.database import Base, JSONType
from hie_sync.schemas.patient import Demographics, NetworkIdentity, NetworkSource
from sqlalchemy import Column, DateTime, String


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True)
    cx_id = Column(String(36), nullable=False, index=True)
    facility_ids = Column(JSONType, nullable=False, default=list)
    data = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def demographics(self) -> Demographics:
        fields = {k: v for k, v in (self.data or {}).items() if k != "external_data"}
        return Demographics.model_validate(fields)

    @property
    def external_data(self) -> Dict[str, Any]:
        return (self.data or {}).get("external_data") or {}

    def get_network_identity(self, source: NetworkSource = NetworkSource.COMMONWELL) -> Optional[NetworkIdentity]:
        """The stored identity for a network, None when never registered."""
        raw = self.external_data.get(source.value)
        if not raw or not raw.get("patient_id"):
            return None
        return NetworkIdentity(remote_patient_id=raw["patient_id"], remote_person_id=raw.get("person_id"))

    def with_network_identity(self, identity: Optional[NetworkIdentity], source: NetworkSource) -> Dict[str, Any]:
        """Copy of `data` with the identity for `source` replaced (or removed)."""
        data = dict(self.data or {})
        external = dict(data.get("external_data") or {})
        if identity is None:
            external.pop(source.value, None)
        else:
            entry = {"patient_id": identity.remote_patient_id}
            if identity.remote_person_id:
                entry["person_id"] = identity.remote_person_id
            external[source.value] = entry
        data["external_data"] = external
        return data

    @property
    def first_facility_id(self) -> Optional[str]:
        ids: List[str] = self.facility_ids or []
        return ids[0] if ids else None

    def __repr__(self):
        return f"<Patient(id={self.id}, cx_id={self.cx_id})>"
