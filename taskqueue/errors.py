"""Exception types for the task queue."""


class TaskQueueError(Exception):
    """Base exception for all task queue errors."""

    pass


class NotFoundError(TaskQueueError):
    """Raised when a job or dead letter does not exist (or is no longer actionable)."""

    def __init__(self, resource: str, resource_id: object, message: str | None = None):
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource} {resource_id} not found"
        super().__init__(message)


class InvalidStateError(TaskQueueError):
    """Raised when an operation is not allowed in the record's current state."""

    def __init__(self, resource: str, resource_id: object, state: str, message: str | None = None):
        self.resource = resource
        self.resource_id = resource_id
        self.state = state
        if message is None:
            message = f"{resource} {resource_id} is {state}"
        super().__init__(message)


class ProcessorError(TaskQueueError):
    """Raised by processors for failures that should count against max_attempts."""

    pass
