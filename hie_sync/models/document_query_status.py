"""
Document query status: one row per patient, rewritten by every run.
"""

from datetime import datetime
from typing import Any, Dict

from hie_sync.core.database import Base
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String


class DocumentQueryStatus(Base):
    __tablename__ = "document_query_status"
    __table_args__ = (
        CheckConstraint("completed >= 0", name="ck_doc_query_completed_non_negative"),
        CheckConstraint("completed <= total", name="ck_doc_query_completed_le_total"),
    )

    patient_id = Column(String(36), primary_key=True)
    cx_id = Column(String(36), nullable=False, index=True)
    state = Column(String(20), nullable=False, default="processing")  # processing, completed
    completed = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    run_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "state": self.state,
            "progress": {"completed": self.completed, "total": self.total},
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DocumentQueryStatus(patient_id={self.patient_id}, state={self.state}, {self.completed}/{self.total})>"
