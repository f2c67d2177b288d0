class TaskEngineError(Exception):
    """Base exception for the task lifecycle engine."""


class ValidationError(TaskEngineError):
    """An invalid value was supplied (unknown status/phase, blank identifier, ...)."""


class InvalidTransitionError(TaskEngineError):
    def __init__(self, entity: str, current: str, action: str):
        self.entity = entity
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} in state '{current}'")


class NotFoundError(TaskEngineError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConflictError(TaskEngineError):
    pass


class ConcurrencyError(TaskEngineError):
    def __init__(self, task_id: str, expected: int, actual: int):
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Task {task_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


class HandlerNotFoundError(TaskEngineError):
    def __init__(self, handler_name: str):
        self.handler_name = handler_name
        super().__init__(f"Step handler not found: {handler_name}")
