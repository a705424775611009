class TaskRejectedError(Exception):
    """Raised when the transfer executor cannot accept a task. Safe to retry later."""
