"""Sync error taxonomy.

Job-level errors (configuration, authentication, upstream) abort the whole
job. ValidationError is document-level: the document is skipped and the
batch continues.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for the sync engine."""
    pass


class NotFoundError(SyncError):
    """Referenced job does not exist."""
    pass


class InvalidStateError(SyncError):
    """Job is not in the state required for the requested transition."""
    pass


class ConfigurationError(SyncError):
    """Missing or unusable configuration or company credentials."""
    pass


class AuthenticationError(SyncError):
    """Credentials rejected by DevPos or QuickBooks (including any 401)."""
    def __init__(self, message: str, system: Optional[str] = None):
        super().__init__(message)
        self.system = system


class UpstreamError(SyncError):
    """Non-2xx or malformed response from an external API."""
    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        system: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.system = system


class TargetValidationError(UpstreamError):
    """QuickBooks rejected the request payload (400)."""
    pass


class TargetNotFoundError(UpstreamError):
    """QuickBooks record not found (404)."""
    pass


class ValidationError(SyncError):
    """A single source document failed business-rule checks."""
    def __init__(self, message: str, document_id: Optional[str] = None):
        super().__init__(message)
        self.document_id = document_id
