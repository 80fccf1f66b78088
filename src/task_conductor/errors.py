"""Exception hierarchy shared by the engine, the HTTP API and the CLI."""


class ConductorError(Exception):
    """Base class for every error raised by the orchestration engine."""

    code = "ERROR"


class ValidationError(ConductorError):
    """Bad input: unknown mode, unsafe id, missing repository, bad attachment."""

    code = "VALIDATION_ERROR"


class TaskNotFoundError(ValidationError):
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(ConductorError):
    code = "INVALID_TRANSITION"

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class TaskNotSettledError(ConductorError):
    """Raised when an operation needs the task's processes to have finished."""

    code = "TASK_NOT_SETTLED"


class TaskLimitError(ConductorError):
    code = "TASK_LIMIT"


class ProcessError(ConductorError):
    code = "PROCESS_ERROR"


class ProcessSpawnError(ProcessError):
    code = "PROCESS_SPAWN_FAILED"


class ProcessTimeoutError(ProcessError):
    code = "PROCESS_TIMEOUT"


class ConflictResolutionError(ConductorError):
    code = "CONFLICT_RESOLUTION_FAILED"


class LockTimeoutError(ConductorError):
    code = "LOCK_TIMEOUT"


class LockClearedError(ConductorError):
    """Raised in every waiter when a lock queue is force-cleared."""

    code = "LOCK_CLEARED"


class MergeInProgressError(ConductorError):
    code = "MERGE_IN_PROGRESS"


class PersistenceError(ConductorError):
    code = "PERSISTENCE_ERROR"
