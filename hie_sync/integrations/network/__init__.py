"""
Remote network (HIE) integration
"""

from .client import NetworkClient, NetworkClientConfig, NetworkError, NetworkResult, ResultKind
from .factory import NetworkClientFactory
from .models import (
    DOCUMENT_REFERENCE_RESOURCE_TYPE,
    OPERATION_OUTCOME_RESOURCE_TYPE,
    TRUSTED_LEVEL,
    NetworkLink,
    PatientLink,
    RequestMetadata,
    StrongId,
    TrustLevel,
)

__all__ = [
    "DOCUMENT_REFERENCE_RESOURCE_TYPE",
    "OPERATION_OUTCOME_RESOURCE_TYPE",
    "TRUSTED_LEVEL",
    "NetworkClient",
    "NetworkClientConfig",
    "NetworkClientFactory",
    "NetworkError",
    "NetworkLink",
    "NetworkResult",
    "PatientLink",
    "RequestMetadata",
    "ResultKind",
    "StrongId",
    "TrustLevel",
]
