"""
Mapping between network document query entries, canonical FHIR
DocumentReferences and the tenant-facing document DTO.
"""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from hie_sync.core.logging import get_logger
from hie_sync.core.sentry import capture_warning
from hie_sync.integrations.network import DOCUMENT_REFERENCE_RESOURCE_TYPE, OPERATION_OUTCOME_RESOURCE_TYPE
from hie_sync.models import Organization, Patient
from hie_sync.schemas.documents import CodeableConceptDTO, DocumentReferenceDTO

logger = get_logger(__name__)


@dataclass
class RemoteDocumentRef:
    """A document reference returned by the network, valid for one run"""

    primary_id: str
    location: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    master_identifier: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    type: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    indexed: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedQueryResult:
    documents: List[RemoteDocumentRef]
    error_outcomes: List[Dict[str, Any]]
    dropped: int = 0


def encode_resource_id(primary_id: str) -> str:
    """URL-safe base64 of the primary id, without padding."""
    return base64.urlsafe_b64encode(primary_id.encode("utf-8")).decode("ascii").rstrip("=")


def decode_resource_id(resource_id: str) -> str:
    padding = "=" * (-len(resource_id) % 4)
    return base64.urlsafe_b64decode(resource_id + padding).decode("utf-8")


def split_entries(entries: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Separate document references from error outcomes; anything else is ignored."""
    references, outcomes = [], []
    for entry in entries:
        resource_type = (entry.get("content") or {}).get("resourceType")
        if resource_type == DOCUMENT_REFERENCE_RESOURCE_TYPE:
            references.append(entry)
        elif resource_type == OPERATION_OUTCOME_RESOURCE_TYPE:
            outcomes.append(entry)
    return references, outcomes


def to_remote_document(entry: Dict[str, Any]) -> Optional[RemoteDocumentRef]:
    content = entry.get("content") or {}
    master_identifier = content.get("masterIdentifier") or {}
    primary_id = master_identifier.get("value")
    location = content.get("location")
    if not primary_id or not location:
        return None
    return RemoteDocumentRef(
        primary_id=primary_id,
        location=location,
        mime_type=content.get("mimeType"),
        size=content.get("size"),
        master_identifier=master_identifier,
        description=content.get("description"),
        type=content.get("type"),
        status=content.get("status"),
        indexed=content.get("indexed"),
        raw=entry,
    )


def normalize_entries(
    entries: List[Dict[str, Any]], patient_id: str, network_reference: Optional[str] = None
) -> NormalizedQueryResult:
    """
    Validated document references of a query response.

    Error outcomes are reported as one warning. Zero-byte references and
    references without a location or master identifier are dropped.
    """
    references, outcomes = split_entries(entries)
    if outcomes:
        capture_warning(
            "Document query contained errors",
            {
                "patient_id": patient_id,
                "network_reference": network_reference,
                "error_outcomes": outcomes,
                "context": "document_query.outcomes",
            },
        )

    documents: List[RemoteDocumentRef] = []
    dropped = 0
    for entry in references:
        content = entry.get("content") or {}
        if content.get("size") == 0:
            capture_warning(
                "Document is of size 0",
                {
                    "patient_id": patient_id,
                    "location": content.get("location"),
                    "master_identifier": content.get("masterIdentifier"),
                    "context": "document_query.empty_document",
                },
            )
            dropped += 1
            continue
        document = to_remote_document(entry)
        if document is None:
            logger.warning(
                "document_reference_incomplete",
                patient_id=patient_id,
                has_location=bool(content.get("location")),
                has_master_identifier=bool((content.get("masterIdentifier") or {}).get("value")),
            )
            dropped += 1
            continue
        documents.append(document)
    return NormalizedQueryResult(documents=documents, error_outcomes=outcomes, dropped=dropped)


def to_canonical_document_reference(
    document: RemoteDocumentRef,
    location: str,
    file_name: str,
    organization: Organization,
    patient: Patient,
) -> Dict[str, Any]:
    """FHIR DocumentReference pointing at the durable copy of `document`."""
    attachment = {
        "title": file_name,
        "url": location,
        "contentType": document.mime_type,
        "size": document.size,
        "creation": document.indexed,
    }
    resource: Dict[str, Any] = {
        "resourceType": "DocumentReference",
        "id": encode_resource_id(document.primary_id),
        "contained": [
            {
                "resourceType": "Organization",
                "id": organization.id,
                "name": organization.name,
                "identifier": [{"system": "urn:ietf:rfc:3986", "value": f"urn:oid:{organization.oid}"}],
            }
        ],
        "masterIdentifier": {
            "system": document.master_identifier.get("system"),
            "value": document.primary_id,
        },
        "subject": {"reference": f"Patient/{patient.id}"},
        "custodian": {"reference": f"#{organization.id}"},
        "status": document.status or "current",
        "description": document.description,
        "type": document.type,
        "content": [{"attachment": {k: v for k, v in attachment.items() if v is not None}}],
    }
    return {k: v for k, v in resource.items() if v is not None}


def to_dto(resources: List[Dict[str, Any]]) -> List[DocumentReferenceDTO]:
    """Tenant-facing view of canonical DocumentReferences; incomplete ones are skipped."""
    dtos: List[DocumentReferenceDTO] = []
    for resource in resources:
        if not resource or not resource.get("id") or not resource.get("content"):
            continue
        content = resource["content"]
        if len(content) > 1:
            capture_warning(
                "Document contains more than one content item",
                {"document_id": resource["id"], "content_length": len(content)},
            )
        attachment = content[0].get("attachment") or {}
        if not attachment.get("title") or not attachment.get("url"):
            continue
        dtos.append(
            DocumentReferenceDTO(
                id=decode_resource_id(resource["id"]),
                file_name=attachment["title"],
                location=attachment["url"],
                description=resource.get("description"),
                status=resource.get("status"),
                indexed=attachment.get("creation"),
                mime_type=attachment.get("contentType"),
                size=attachment.get("size"),
                type=CodeableConceptDTO.model_validate(resource["type"]) if resource.get("type") else None,
            )
        )
    return dtos
