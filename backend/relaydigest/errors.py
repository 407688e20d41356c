from __future__ import annotations
from typing import Optional


class RelayDigestError(Exception):
    """Base class for workflow and storage errors."""

    code = "error"


class UnknownTask(RelayDigestError):
    code = "unknown_task"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"No workflow is waiting on task {task_id!r}")


class UnknownItem(RelayDigestError):
    code = "not_found"

    def __init__(self, document_id: str, item_id: Optional[str] = None):
        self.document_id = document_id
        self.item_id = item_id
        what = f"item {item_id!r} of document {document_id!r}" if item_id else f"document {document_id!r}"
        super().__init__(f"Unknown {what}")


class InvalidTransition(RelayDigestError):
    code = "invalid_transition"

    def __init__(self, step: str, event: str):
        self.step = step
        self.event = event
        super().__init__(f"Cannot apply {event!r} in step {step!r}")


class DispatchFailure(RelayDigestError):
    code = "dispatch_failure"

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 1):
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class StorageQuotaExceeded(RelayDigestError):
    code = "storage_quota_exceeded"

    def __init__(self, key: str, required: int, budget: int):
        self.key = key
        self.required = required
        self.budget = budget
        super().__init__(f"Writing {key!r} needs {required} bytes, budget is {budget}")


class ReconstructionError(RelayDigestError):
    code = "reconstruction_error"

    def __init__(self, key: str, detail: str):
        self.key = key
        super().__init__(f"Stored entry {key!r} is damaged: {detail}")


class VersionConflict(RelayDigestError):
    code = "version_conflict"

    def __init__(self, key: str, expected: int, actual: int):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(f"{key!r} is at version {actual}, expected {expected}")
