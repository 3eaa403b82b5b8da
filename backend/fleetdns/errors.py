"""
Error taxonomy shared by the DNS and rotation layers.

Every error carries the HTTP status the API reports it with, so routers can
let them propagate and the application-level handler turns them into JSON.
"""

from fastapi import status


class FleetDNSError(Exception):
    """Base class for all control plane errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CredentialError(FleetDNSError):
    """The DNS provider rejected the configured credentials."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ProviderAPIError(FleetDNSError):
    """A provider call failed or returned a non-success response."""

    status_code = status.HTTP_502_BAD_GATEWAY


class NotFoundError(FleetDNSError):
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(FleetDNSError):
    status_code = status.HTTP_400_BAD_REQUEST


class NoEligibleMembersError(FleetDNSError):
    """Membership resolved to nothing, even after the health fallback."""

    status_code = status.HTTP_409_CONFLICT


class RaceConditionError(FleetDNSError):
    """The pool row changed underneath a rotation decision."""

    status_code = status.HTTP_409_CONFLICT
