"""Error taxonomy for the research export pipeline.

Every failure the pipeline can surface to a caller is one of the classes
below. Each carries the HTTP status it maps to and a message that is safe to
show to the caller; internal exception text never goes into ``message``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ResearchExportError(Exception):
    """Base class for pipeline failures with a caller-facing message."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthorized(ResearchExportError):
    """No credential, or the credential could not be resolved to an identity."""

    status_code = 401
    code = "unauthorized"


class Forbidden(ResearchExportError):
    """The caller is authenticated but holds no qualifying role."""

    status_code = 403
    code = "forbidden"


class InvalidArgument(ResearchExportError):
    """A request field is missing or outside its allowed values."""

    status_code = 400
    code = "invalid_argument"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message, details={"field": field})
        self.field = field


class NotFound(ResearchExportError):
    """The requested dataset and range matched zero rows."""

    status_code = 404
    code = "not_found"


class ConfigurationError(ResearchExportError):
    """A required secret or setting is missing."""

    status_code = 500
    code = "configuration_error"


class UpstreamFailure(ResearchExportError):
    """The role store, research view or manifest store could not be used."""

    status_code = 500
    code = "upstream_failure"


__all__ = [
    "ResearchExportError",
    "Unauthorized",
    "Forbidden",
    "InvalidArgument",
    "NotFound",
    "ConfigurationError",
    "UpstreamFailure",
]
