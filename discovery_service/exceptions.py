"""
Error taxonomy for Discovery Service

Only ValidationError and TotalFailureError ever reach the caller. The other
errors are raised inside a single pipeline branch and recovered there.
"""
from typing import Optional


class DiscoveryError(Exception):
    """Base error carrying an HTTP status and a machine readable code"""

    status: int = 500
    code: str = "discovery_error"

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status

    def to_payload(self) -> dict:
        return {"error": {"message": self.message, "code": self.code}}


class ValidationError(DiscoveryError):
    """Query too short or malformed filters"""

    status = 400
    code = "validation_error"


class FetchError(DiscoveryError):
    """A data-store fetch for one entity type or feed stream failed"""

    status = 502
    code = "fetch_error"

    def __init__(self, message: str, branch: str = ""):
        super().__init__(message)
        self.branch = branch


class CacheError(DiscoveryError):
    """Result cache read or write failed"""

    code = "cache_error"


class AnalyticsError(DiscoveryError):
    """Analytics write failed"""

    code = "analytics_error"


class TotalFailureError(DiscoveryError):
    """Every fan-out branch of a request failed"""

    status = 503
    code = "service_unavailable"

    def __init__(self, message: str = "Search is temporarily unavailable", failed_branches=None):
        super().__init__(message)
        self.failed_branches = list(failed_branches or [])
