"""Custom exceptions for the render agent."""

from typing import Optional, Any, Dict


class RenderAgentError(Exception):
    """Base exception for all render agent errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SpawnError(RenderAgentError):
    """Raised when the engine process cannot be started."""

    def __init__(self, message: str, command: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.command = command


class PersistenceError(RenderAgentError):
    """Raised when the durable store cannot be read or written."""

    def __init__(self, message: str, key: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.key = key


class JobNotFoundError(RenderAgentError):
    """Raised when a job id is not in the queue."""

    def __init__(self, job_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Job '{job_id}' not found", details)
        self.job_id = job_id


class JobStateError(RenderAgentError):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Cannot {operation} job '{job_id}' while it is {status}", details)
        self.job_id = job_id
        self.status = status
        self.operation = operation


class DependencyError(RenderAgentError):
    """Raised when a dependency edge would be invalid (unknown, self or cyclic)."""

    def __init__(
        self,
        job_id: Optional[str],
        dependency_id: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        source = job_id or "new job"
        super().__init__(f"Invalid dependency {source} -> {dependency_id}: {reason}", details)
        self.job_id = job_id
        self.dependency_id = dependency_id
