"""
HMRC integration error taxonomy.

Every failure a handler can surface to the caller is one of these. The
exception handler in ``calceum.main`` renders them as ``{"error": message}``
with the status code carried by the exception: 401 for authentication,
500 for storage failures, 400 otherwise.
"""

from typing import Any, Dict, List, Optional


class HMRCIntegrationError(Exception):
    """Base class for errors returned to the caller."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(HMRCIntegrationError):
    """Missing or invalid bearer token."""

    status_code = 401


class AuthorizationError(HMRCIntegrationError):
    """Caller has no access to the requested entity or connection."""


class ValidationError(HMRCIntegrationError):
    """Missing field, or an invalid, expired or reused OAuth state."""


class ConfigurationError(HMRCIntegrationError):
    """Server-side configuration required for the operation is missing."""


class PersistenceError(HMRCIntegrationError):
    """A database write failed."""

    status_code = 500


class ExternalAPIError(HMRCIntegrationError):
    """
    The HMRC API (token endpoint or REST API) returned an error.

    Attributes:
        upstream_status: HTTP status returned by HMRC (None for transport errors)
        code: HMRC error code, when the body carried one
        errors: Nested HMRC error list, when the body carried one
    """

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        code: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.code = code
        self.errors = errors

    def to_audit_details(self) -> Dict[str, Any]:
        return {
            'upstream_status': self.upstream_status,
            'code': self.code,
            'errors': self.errors,
        }
