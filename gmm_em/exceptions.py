# gmm_em/exceptions.py
"""Error types raised by the mixture estimator.

Non-convergence is reported through ``EMResult.converged`` and
scikit-learn's ``ConvergenceWarning``, not through an exception.
"""

from __future__ import annotations

from typing import Optional

from sklearn.exceptions import ConvergenceWarning, NotFittedError

__all__ = [
    "MixtureError",
    "InvalidConfigurationError",
    "DegenerateComponentError",
    "ConvergenceWarning",
    "NotFittedError",
]


class MixtureError(Exception):
    """Base class for errors raised by gmm_em."""


class InvalidConfigurationError(MixtureError, ValueError):
    """Bad shapes, counts or settings, detected before iterating."""


class DegenerateComponentError(MixtureError, ArithmeticError):
    """A component collapsed during iteration.

    Raised when a covariance stops being positive definite or a component's
    effective count drops to zero. The current fit is aborted; restarting from
    other initial parameters is up to the caller.
    """

    def __init__(self, message: str, component: Optional[int] = None, n_iter: Optional[int] = None) -> None:
        super().__init__(message)
        self.component = component
        self.n_iter = n_iter
