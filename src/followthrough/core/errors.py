from __future__ import annotations


class FollowthroughError(Exception):
    """Base class for engine errors."""


class TaskNotFoundError(FollowthroughError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTransitionError(FollowthroughError):
    """Raised when a request would move a task out of a state it cannot leave."""


class IntegrationError(FollowthroughError):
    """Transient failure talking to a messaging backend."""

    def __init__(self, integration_id: str, message: str) -> None:
        super().__init__(f"{integration_id}: {message}")
        self.integration_id = integration_id


class ConfirmationTimeoutError(FollowthroughError):
    pass


class PendingMessageNotFoundError(FollowthroughError):
    def __init__(self, task_id: str, message_id: str) -> None:
        super().__init__(f"Message {message_id} is not pending on task {task_id}")
        self.task_id = task_id
        self.message_id = message_id
