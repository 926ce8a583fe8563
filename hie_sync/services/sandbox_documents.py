"""
Canned documents delivered to tenants running in sandbox mode.
"""

from typing import Any, Dict, List

from hie_sync.services.document_mapping import encode_resource_id

SANDBOX_BASE_URL = "https://sandbox.documents.example.com"

_SANDBOX_DOCUMENTS = [
    {
        "primary_id": "1.2.543.1.34.1.34.134",
        "file_name": "continuity-of-care.xml",
        "mime_type": "application/xml",
        "size": 31_337,
        "description": "Continuity of Care Document",
        "type": {
            "coding": [{"system": "http://loinc.org", "code": "34133-9", "display": "Summary of episode note"}],
            "text": "Summary of episode note",
        },
        "indexed": "2019-09-07T15:50:00.000Z",
    },
    {
        "primary_id": "1.2.543.1.34.1.34.135",
        "file_name": "discharge-summary.pdf",
        "mime_type": "application/pdf",
        "size": 102_400,
        "description": "Discharge summary",
        "type": {
            "coding": [{"system": "http://loinc.org", "code": "18842-5", "display": "Discharge summary"}],
            "text": "Discharge summary",
        },
        "indexed": "2020-02-11T09:12:00.000Z",
    },
    {
        "primary_id": "1.2.543.1.34.1.34.136",
        "file_name": "lab-results.xml",
        "mime_type": "text/xml",
        "size": 12_288,
        "description": "Laboratory results",
        "type": {
            "coding": [{"system": "http://loinc.org", "code": "11502-2", "display": "Laboratory report"}],
            "text": "Laboratory report",
        },
        "indexed": "2021-06-30T17:45:00.000Z",
    },
]


def get_sandbox_document_references(patient_id: str) -> List[Dict[str, Any]]:
    """Canonical DocumentReferences for the sandbox document set of a patient."""
    return [
        {
            "resourceType": "DocumentReference",
            "id": encode_resource_id(doc["primary_id"]),
            "subject": {"reference": f"Patient/{patient_id}"},
            "status": "current",
            "description": doc["description"],
            "type": doc["type"],
            "content": [
                {
                    "attachment": {
                        "title": doc["file_name"],
                        "url": f"{SANDBOX_BASE_URL}/{doc['file_name']}",
                        "contentType": doc["mime_type"],
                        "size": doc["size"],
                        "creation": doc["indexed"],
                    }
                }
            ],
        }
        for doc in _SANDBOX_DOCUMENTS
    ]
