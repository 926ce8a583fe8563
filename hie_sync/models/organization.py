"""
Organization model: the tenant's organization as registered on the network.
"""

from datetime import datetime
from typing import Any, Dict

from hie_sync.core.config import settings
from hie_sync.core.database import Base, JSONType
from sqlalchemy import Column, DateTime, Integer, String


class Organization(Base):
    """
    A tenant's organization.

    Every tenant (cx_id) owns exactly one organization; its numeric
    organization number is the last node of the organization OID used as
    the network-scoped identity of the tenant.
    """

    __tablename__ = "organizations"

    id = Column(String(255), primary_key=True)
    cx_id = Column(String(36), unique=True, nullable=False, index=True)
    organization_number = Column(Integer, nullable=False, unique=True)

    # name, type, location
    data = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def name(self) -> str:
        return (self.data or {}).get("name", "")

    @property
    def oid(self) -> str:
        return f"{settings.SYSTEM_ROOT_OID}.2.{self.organization_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cx_id": self.cx_id,
            "organization_number": self.organization_number,
            "oid": self.oid,
            "name": self.name,
        }

    def __repr__(self):
        return f"<Organization(id={self.id}, cx_id={self.cx_id})>"
