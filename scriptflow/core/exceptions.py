"""
Scriptflow Custom Exceptions

Exception hierarchy for error handling throughout the pipeline.
"""


class ScriptflowError(Exception):
    """Base exception for all Scriptflow errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(ScriptflowError):
    """Raised when there's an issue with configuration."""
    pass


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration is missing."""
    pass


class InvalidConfigError(ConfigurationError):
    """Raised when a configuration value is invalid."""
    pass


# =============================================================================
# TEXT COMPLETION ERRORS
# =============================================================================

class CompletionError(ScriptflowError):
    """Base exception for text-completion failures."""

    def __init__(self, message: str, status_code: int = None, details: dict = None):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.status_code = status_code


class TransientCompletionError(CompletionError):
    """Network error, rate limit or server error. Safe to retry."""
    pass


class CompletionTimeoutError(TransientCompletionError):
    """Raised when a completion call exceeds its wall-clock timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"Completion call timed out after {timeout:.1f}s", details={"timeout": timeout})
        self.timeout = timeout


class CompletionRejectedError(CompletionError):
    """Structured failure that retrying will not fix (bad request, auth)."""
    pass


# =============================================================================
# EXTRACTION ERRORS
# =============================================================================

class ExtractionError(ScriptflowError):
    """Raised when a model response cannot be turned into a record."""

    def __init__(self, entity: str, reason: str, attempts: list = None):
        message = f"Extraction failed for '{entity}': {reason}"
        details = {"entity": entity}
        if attempts:
            details["attempts"] = attempts
        super().__init__(message, details)
        self.entity = entity
        self.reason = reason


# =============================================================================
# PARSE STATE ERRORS
# =============================================================================

class ParseStateError(ScriptflowError):
    """Base exception for parse state errors."""
    pass


class SubTaskNotFoundError(ParseStateError):
    """Raised when a sub-task id is unknown."""

    def __init__(self, task_id: str):
        super().__init__(f"Sub-task not found: '{task_id}'", {"task_id": task_id})
        self.task_id = task_id


class InvalidTransitionError(ParseStateError):
    """Raised when a sub-task cannot move to the requested status."""

    def __init__(self, task_id: str, current: str, target: str):
        message = f"Sub-task '{task_id}' cannot move from {current} to {target}"
        super().__init__(message, {"task_id": task_id, "current": current, "target": target})


class StoryBibleLockedError(ParseStateError):
    """Raised when locked characters or scenes would be changed."""
    pass


class StateNotInitializedError(ParseStateError):
    """Raised when the state manager has no active session."""

    def __init__(self):
        super().__init__("Parse state has not been initialized or loaded")


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(ScriptflowError):
    """Base exception for pipeline errors."""
    pass


class StagePreconditionError(PipelineError):
    """Raised when a stage is requested before its inputs exist."""

    def __init__(self, stage: str, reason: str):
        message = f"Stage '{stage}' cannot run: {reason}"
        super().__init__(message, {"stage": stage})
        self.stage = stage
        self.reason = reason


class PipelineCancelledError(PipelineError):
    """Raised when a cancellation token aborts the pipeline."""

    def __init__(self, reason: str = None):
        super().__init__(reason or "Pipeline cancelled")


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StoreError(ScriptflowError):
    """Raised when a persistent store cannot be read or written."""
    pass
