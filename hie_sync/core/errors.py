"""
Domain errors raised by the synchronization services.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base error for identity and document synchronization"""

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.extra = extra or {}


class PatientNotFoundError(SyncError):
    """Local patient does not exist for the tenant"""


class FacilityNotFoundError(SyncError):
    """Facility (or its organization) does not exist for the tenant"""


class RegistrationError(SyncError):
    """The network accepted a patient registration but omitted required data"""


class IdentityConflictError(SyncError):
    """Attempt to replace an already assigned remote patient id"""


class NetworkIdentityMissingError(SyncError):
    """Operation requires a patient registered with the network"""
