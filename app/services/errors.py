"""Run engine exception hierarchy."""


class RunEngineError(Exception):
    """Base class for run engine errors."""


class LedgerError(RunEngineError):
    """Reading or writing Run/Item records failed; fatal for the invocation."""


class LeaseLostError(RunEngineError):
    """Another invocation owns the Run; this one must stop without writing."""


class RunNotFoundError(RunEngineError):
    pass


class RunConflictError(RunEngineError):
    """An active Run of the same kind already exists for the project."""

    def __init__(self, message: str, run_id=None):
        super().__init__(message)
        self.run_id = run_id


class NoWorkItemsError(RunEngineError):
    pass


class InvalidRunStateError(RunEngineError):
    pass


class GenerationError(RunEngineError):
    """The external generator returned an error or unusable data."""
