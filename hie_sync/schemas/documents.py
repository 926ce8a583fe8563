"""
Document query status and tenant-facing document schemas
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class QueryState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


class QueryProgress(BaseModel):
    completed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class QueryStatusResponse(BaseModel):
    """Document query status for one patient"""

    patient_id: str
    state: Optional[QueryState] = None
    progress: QueryProgress = Field(default_factory=QueryProgress)
    updated_at: Optional[datetime] = None


class CodingDTO(BaseModel):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConceptDTO(BaseModel):
    coding: Optional[List[CodingDTO]] = None
    text: Optional[str] = None


class DocumentReferenceDTO(BaseModel):
    """Document as delivered to the tenant"""

    id: str
    file_name: str = Field(..., serialization_alias="fileName")
    location: str
    description: Optional[str] = None
    status: Optional[str] = None
    indexed: Optional[str] = None  # ISO-8601
    mime_type: Optional[str] = Field(None, serialization_alias="mimeType")
    size: Optional[int] = None  # bytes
    type: Optional[CodeableConceptDTO] = None
