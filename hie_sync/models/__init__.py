"""
Database models
"""

from hie_sync.models.document_query_status import DocumentQueryStatus
from hie_sync.models.facility import Facility
from hie_sync.models.organization import Organization
from hie_sync.models.patient import Patient

__all__ = [
    "DocumentQueryStatus",
    "Facility",
    "Organization",
    "Patient",
]
