"""
nrinstall - installs, verifies and rolls back monitoring-agent integrations
inside pooled, disposable container environments.
"""

__version__ = "1.0.0"

from nrinstall.schemas.installation import (
    InstallationRequest,
    InstallationResponse,
    InstallationStatus,
    RequestStatus,
)

__all__ = [
    "__version__",
    "InstallationRequest",
    "InstallationResponse",
    "InstallationStatus",
    "RequestStatus",
]
