"""Exceptions raised by the model fitting routines."""


class ConvergenceError(RuntimeError):
    """No restart of an iterative fit stabilised within its iteration cap."""

    def __init__(self, message: str, n_restarts: int = 0):
        super().__init__(message)
        self.n_restarts = n_restarts
