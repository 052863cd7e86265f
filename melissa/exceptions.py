"""Exceptions and warnings raised by the Melissa package."""


class MelissaError(Exception):
    """Base class for all Melissa errors."""


class InvalidConfigError(MelissaError, ValueError):
    """Raised when options, a region window or a basis configuration are malformed."""


class InsufficientDataError(MelissaError, ValueError):
    """Raised when evaluation data lacks the class diversity a metric needs."""


class NumericDivergence(MelissaError, ArithmeticError):
    """Raised inside the GLM fitter when an iterate becomes non-finite.

    The fitter catches it, retries with a smaller step and finally falls back
    to a constant-rate coefficient, so it never reaches callers of ``fit``.
    """


class EMFailedError(MelissaError, RuntimeError):
    """
    Raised when every EM restart ended in the failed state.

    Parameters:
    -----------
    message : str
        Error message
    result : RestartResult
        Best failed restart, holding the last stable parameters
    """

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result


class DidNotConverge(UserWarning):
    """Issued when a GLM fit stops at its iteration limit before converging."""
