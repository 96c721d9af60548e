"""EM estimation of full-covariance Gaussian mixtures in PyTorch."""

from ._em import (
    EMConfig,
    EMResult,
    EMState,
    MixtureParams,
    check_inputs,
    em_step,
    expectation_step,
    fit_em,
    hard_assignment,
    initial_state,
    maximization_step,
)
from ._init import init_from_kmeans, init_from_random_data, init_from_random_resp
from ._numeric import (
    compute_precisions,
    compute_precisions_cholesky,
    estimate_log_gaussian_prob,
    log_multivariate_normal_density,
)
from ._restarts import fit_restarts
from .exceptions import (
    ConvergenceWarning,
    DegenerateComponentError,
    InvalidConfigurationError,
    MixtureError,
    NotFittedError,
)
from .mixture import GaussianMixtureEM

__all__ = [
    "EMConfig",
    "EMResult",
    "EMState",
    "MixtureParams",
    "check_inputs",
    "em_step",
    "expectation_step",
    "fit_em",
    "hard_assignment",
    "initial_state",
    "maximization_step",
    "init_from_kmeans",
    "init_from_random_data",
    "init_from_random_resp",
    "compute_precisions",
    "compute_precisions_cholesky",
    "estimate_log_gaussian_prob",
    "log_multivariate_normal_density",
    "fit_restarts",
    "ConvergenceWarning",
    "DegenerateComponentError",
    "InvalidConfigurationError",
    "MixtureError",
    "NotFittedError",
    "GaussianMixtureEM",
]
