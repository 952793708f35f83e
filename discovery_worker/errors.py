"""
Error taxonomy for the extraction engine.

Node-level errors are recorded on the failing node and never abort siblings. Only a failure of the
root node, a job-scope resource limit or a storage failure that survives retries fails a whole job.
"""

from __future__ import annotations

from typing import Any


class ProcessingError(Exception):
    """Base exception for all engine errors."""

    kind = "ProcessingError"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ProcessingError):
    """A configuration value is missing or invalid."""

    kind = "ConfigurationError"


class DetectionFailure(ProcessingError):
    """Type detection failed; callers fall back to the generic binary type."""

    kind = "DetectionFailure"


class UnsupportedFormat(ProcessingError):
    """The resolved processor does not declare the requested capability."""

    kind = "UnsupportedFormat"

    def __init__(self, mimetype: str, capability: str, message: str | None = None) -> None:
        super().__init__(
            message or f"No '{capability}' capability for '{mimetype}'.",
            {"mimetype": mimetype, "capability": capability},
        )
        self.mimetype = mimetype
        self.capability = capability


class ResourceLimitExceeded(ProcessingError):
    """Depth limit (subtree scope) or node-count limit (job scope) exceeded."""

    kind = "ResourceLimitExceeded"

    def __init__(self, message: str, *, scope: str, limit: int) -> None:
        super().__init__(message, {"scope": scope, "limit": limit})
        self.scope = scope
        self.limit = limit


class ExternalServiceError(ProcessingError):
    """Transient failure of the external detection/extraction service."""

    kind = "ExternalServiceError"


class ExternalServiceUnavailable(ProcessingError):
    """The external service kept failing after the configured retries."""

    kind = "ExternalServiceUnavailable"


class CorruptInput(ProcessingError):
    """A processor could not parse the node's content."""

    kind = "CorruptInput"


class StorageError(ProcessingError):
    """Reading or writing the artifact store failed."""

    kind = "StorageError"


class JobCancelled(ProcessingError):
    """The job was cancelled while work was in flight."""

    kind = "JobCancelled"
