# worker/errors.py
from __future__ import annotations
from typing import Optional

class JobError(Exception):
    """Base class for everything that can go wrong with a generation job."""
    code = "error"

class ValidationError(JobError):
    """Request rejected, either locally before any network call or by the service."""
    code = "validation"

class TransportError(JobError):
    """The service could not be reached."""
    code = "transport"

class ServiceError(JobError):
    """The service answered, but with an error or an unusable payload."""
    code = "service"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class NotFoundError(ServiceError):
    code = "not_found"

class JobTimeoutError(JobError, TimeoutError):
    """The job exceeded its overall time budget."""
    code = "timeout"
