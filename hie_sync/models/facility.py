"""
Facility model: a care location belonging to a tenant's organization.
"""

from datetime import datetime
from typing import Optional

from hie_sync.core.database import Base, JSONType
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship


class Facility(Base):
    __tablename__ = "facilities"

    id = Column(String(255), primary_key=True)
    cx_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(255), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    facility_number = Column(Integer, nullable=False)

    # name, npi, tin, active, address
    data = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization", lazy="joined")

    @property
    def name(self) -> str:
        return (self.data or {}).get("name", "")

    @property
    def npi(self) -> Optional[str]:
        return (self.data or {}).get("npi")

    def __repr__(self):
        return f"<Facility(id={self.id}, cx_id={self.cx_id})>"
