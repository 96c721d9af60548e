# gmm_em/_em.py
"""EM for a full-covariance Gaussian mixture, started from a given guess.

The loop is written as a pure step function over an explicit state record:

    state_0 = initial_state(X, init)           # E-step on the initial guess
    state_t = em_step(state_{t-1}, X, config)  # M-step, then E-step

so every EMState holds parameters together with the responsibilities and the
observed-data log-likelihood *of those parameters*. Only the current and the
previous tracked vector ``[log_likelihood, *weights]`` are kept; the loop stops
when their largest absolute difference is <= tol, or after max_iter steps.

Numerical choices:
- Responsibilities are normalized in log space (logsumexp per row), so a row
  whose K densities all underflow still yields a valid distribution.
- Covariances use the raw second-moment form
  sum_i r_ik x_i x_i^T / nk - mu_k mu_k^T, are symmetrized, and get reg_covar
  ADDED to the diagonal. Center/scale data far from the origin beforehand.
- nk smoothing uses nk = resp.sum(0) + 10 * eps(dtype); a component whose raw
  effective count is below that raises DegenerateComponentError.

Known sensitivity: components started with identical means and covariances
receive identical responsibilities forever. This is a fixed point of EM and
is left as is.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
import torch

from ._numeric import (
    _nk_eps,
    _safe_log,
    _add_reg_diag,
    _symmetrize,
    compute_precisions_cholesky,
    estimate_log_gaussian_prob,
)
from .exceptions import ConvergenceWarning, DegenerateComponentError, InvalidConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------
# Data containers
# ---------------------------

@dataclass
class MixtureParams:
    weights: torch.Tensor                               # (K,)
    means: torch.Tensor                                 # (K, D)
    covariances: torch.Tensor                           # (K, D, D)
    precisions_cholesky: Optional[torch.Tensor] = None  # (K, D, D), derived

    @property
    def n_components(self) -> int:
        return int(self.means.shape[0])

    @classmethod
    def from_arrays(cls, weights, means, covariances, dtype=None, device=None) -> "MixtureParams":
        """Build parameters from numpy arrays, tensors or nested lists."""
        return cls(
            weights=_as_float_tensor(weights, dtype, device),
            means=_as_float_tensor(means, dtype, device),
            covariances=_as_float_tensor(covariances, dtype, device),
        )


@dataclass
class EMConfig:
    tol: float = 1e-6
    max_iter: int = 100
    reg_covar: float = 1e-6
    n_components: Optional[int] = None
    verbose: int = 0
    verbose_interval: int = 10
    keep_history: bool = False

    def validate(self) -> None:
        if self.tol < 0:
            raise InvalidConfigurationError("tol must be non-negative")
        if self.max_iter < 1:
            raise InvalidConfigurationError("max_iter must be >= 1")
        if self.reg_covar < 0:
            raise InvalidConfigurationError("reg_covar must be non-negative")
        if self.n_components is not None and self.n_components < 1:
            raise InvalidConfigurationError("n_components must be >= 1")
        if self.verbose_interval < 1:
            raise InvalidConfigurationError("verbose_interval must be >= 1")


@dataclass(frozen=True)
class EMState:
    params: MixtureParams
    log_resp: torch.Tensor                  # (N, K)
    log_likelihood: float                   # sum_i log sum_k pi_k N(x_i | k)
    component_log_likelihood: torch.Tensor  # (K,) sum_i r_ik (log pi_k + log N(x_i | k))
    tracked: torch.Tensor                   # (1 + K,) [log_likelihood, *weights]
    previous_tracked: Optional[torch.Tensor]
    n_iter: int
    converged: bool

    @property
    def resp(self) -> torch.Tensor:
        return self.log_resp.exp()

    @property
    def change(self) -> float:
        """Largest absolute change of the tracked vector in the last step."""
        if self.previous_tracked is None:
            return float("inf")
        return float((self.tracked - self.previous_tracked).abs().max().item())


@dataclass
class EMResult:
    weights: torch.Tensor
    means: torch.Tensor
    covariances: torch.Tensor
    precisions_cholesky: torch.Tensor
    resp: torch.Tensor
    labels: torch.Tensor
    log_likelihood: float
    converged: bool
    n_iter: int
    history: Optional[List[float]] = None

    def to_params(self) -> MixtureParams:
        return MixtureParams(
            weights=self.weights.clone(),
            means=self.means.clone(),
            covariances=self.covariances.clone(),
            precisions_cholesky=self.precisions_cholesky.clone(),
        )


# ---------------------------
# Input handling
# ---------------------------

def _as_float_tensor(a, dtype=None, device=None) -> torch.Tensor:
    t = a if isinstance(a, torch.Tensor) else torch.as_tensor(np.asarray(a))
    if dtype is None and not t.is_floating_point():
        dtype = torch.float64
    return t.to(device=device if device is not None else t.device, dtype=dtype if dtype is not None else t.dtype)


def check_inputs(X, init: MixtureParams, config: EMConfig) -> Tuple[torch.Tensor, MixtureParams]:
    """Validate data and initial guess; return them as tensors on X's dtype/device.

    Weights are renormalized to sum to 1. Raises InvalidConfigurationError.
    """
    X = _as_float_tensor(X)
    if X.dim() != 2:
        raise InvalidConfigurationError(f"X must be 2D (N, D), got shape {tuple(X.shape)}")
    N, D = X.shape
    if D < 1:
        raise InvalidConfigurationError("X must have at least one feature")
    if not bool(torch.isfinite(X).all()):
        raise InvalidConfigurationError("X contains NaN or Inf")

    weights = _as_float_tensor(init.weights, X.dtype, X.device)
    means = _as_float_tensor(init.means, X.dtype, X.device)
    cov = _as_float_tensor(init.covariances, X.dtype, X.device)

    if means.dim() != 2 or means.shape[1] != D:
        raise InvalidConfigurationError(f"means must have shape (K, {D}), got {tuple(means.shape)}")
    K = means.shape[0]
    if K < 1:
        raise InvalidConfigurationError("n_components must be >= 1")
    if config.n_components is not None and config.n_components != K:
        raise InvalidConfigurationError(
            f"n_components={config.n_components} but the initial guess has {K} components"
        )
    if N < K:
        raise InvalidConfigurationError(f"Need at least {K} samples, got {N}")
    if weights.shape != (K,):
        raise InvalidConfigurationError(f"weights must have shape ({K},), got {tuple(weights.shape)}")
    if cov.shape != (K, D, D):
        raise InvalidConfigurationError(f"covariances must have shape ({K}, {D}, {D}), got {tuple(cov.shape)}")

    for name, t in (("weights", weights), ("means", means), ("covariances", cov)):
        if not bool(torch.isfinite(t).all()):
            raise InvalidConfigurationError(f"{name} contain NaN or Inf")
    if bool((weights < 0).any()) or float(weights.sum()) <= 0.0:
        raise InvalidConfigurationError("weights must be non-negative with a positive sum")
    if not torch.allclose(cov, cov.transpose(-1, -2), rtol=1e-5, atol=1e-8):
        raise InvalidConfigurationError("initial covariances must be symmetric")

    try:
        prec_chol = compute_precisions_cholesky(cov)
    except DegenerateComponentError as exc:
        raise InvalidConfigurationError(
            f"initial covariance of component {exc.component} is not positive definite"
        ) from exc

    params = MixtureParams(weights=weights / weights.sum(), means=means, covariances=cov, precisions_cholesky=prec_chol)
    return X, params


# ---------------------------
# EM steps
# ---------------------------

@torch.no_grad()
def _evaluate(X: torch.Tensor, params: MixtureParams) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Log-likelihood, log-responsibilities and per-component contributions."""
    prec_chol = params.precisions_cholesky
    if prec_chol is None:
        prec_chol = compute_precisions_cholesky(params.covariances)

    log_prob = estimate_log_gaussian_prob(X, params.means, prec_chol)  # (N,K)
    weighted_log_prob = log_prob + _safe_log(params.weights).unsqueeze(0)  # (N,K)

    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    if not bool(torch.isfinite(log_prob_norm).all()):
        raise DegenerateComponentError("log-density is not finite for some observations")
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    component_ll = (log_resp.exp() * weighted_log_prob).sum(dim=0)  # (K,)
    return log_prob_norm.sum(), log_resp, component_ll


@torch.no_grad()
def expectation_step(X: torch.Tensor, params: MixtureParams) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step. Returns (total log-likelihood, log_resp (N,K))."""
    log_likelihood, log_resp, _ = _evaluate(X, params)
    return log_likelihood, log_resp


@torch.no_grad()
def maximization_step(X: torch.Tensor, log_resp: torch.Tensor, reg_covar: float = 1e-6) -> MixtureParams:
    """M-step producing updated weights/means/covariances (+ precision Cholesky)."""
    N, D = X.shape
    assert log_resp.shape[0] == N
    K = log_resp.shape[1]

    resp = log_resp.exp()  # (N,K)

    nk_raw = resp.sum(dim=0)  # (K,)
    eps = _nk_eps(resp.dtype)
    collapsed = nk_raw < eps
    if bool(collapsed.any()):
        k = int(torch.nonzero(collapsed)[0].item())
        raise DegenerateComponentError(
            f"component {k} has collapsed (effective count {float(nk_raw[k]):.3g})", component=k
        )
    nk = nk_raw + eps

    weights = nk / nk.sum()
    means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    # raw second moment: sum_n resp[n,k] * x_n x_n^T / nk[k]
    second_moment = torch.einsum('nk,nd,ne->kde', resp, X, X) / nk.view(K, 1, 1)  # (K,D,D)
    cov = second_moment - torch.einsum('kd,ke->kde', means, means)
    cov = _add_reg_diag(_symmetrize(cov), reg_covar)

    for name, t in (("weights", weights), ("means", means)):
        bad = ~torch.isfinite(t.reshape(K, -1)).all(dim=1)
        if bool(bad.any()):
            k = int(torch.nonzero(bad)[0].item())
            raise DegenerateComponentError(f"{name} of component {k} are not finite", component=k)

    prec_chol = compute_precisions_cholesky(cov)
    return MixtureParams(weights=weights, means=means, covariances=cov, precisions_cholesky=prec_chol)


def _tracked(log_likelihood: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
    return torch.cat([log_likelihood.reshape(1), weights])


@torch.no_grad()
def initial_state(X: torch.Tensor, params: MixtureParams) -> EMState:
    """E-step on the initial guess; nothing is compared yet."""
    log_likelihood, log_resp, component_ll = _evaluate(X, params)
    return EMState(
        params=params,
        log_resp=log_resp,
        log_likelihood=float(log_likelihood.item()),
        component_log_likelihood=component_ll,
        tracked=_tracked(log_likelihood, params.weights),
        previous_tracked=None,
        n_iter=0,
        converged=False,
    )


@torch.no_grad()
def em_step(state: EMState, X: torch.Tensor, config: EMConfig) -> EMState:
    """One EM iteration: M-step from state's responsibilities, then E-step."""
    try:
        params = maximization_step(X, state.log_resp, reg_covar=config.reg_covar)
        log_likelihood, log_resp, component_ll = _evaluate(X, params)
    except DegenerateComponentError as exc:
        exc.n_iter = state.n_iter + 1
        raise

    tracked = _tracked(log_likelihood, params.weights)
    change = (tracked - state.tracked).abs().max()
    return EMState(
        params=params,
        log_resp=log_resp,
        log_likelihood=float(log_likelihood.item()),
        component_log_likelihood=component_ll,
        tracked=tracked,
        previous_tracked=state.tracked,
        n_iter=state.n_iter + 1,
        converged=bool(change <= config.tol),
    )


def hard_assignment(resp: torch.Tensor) -> torch.Tensor:
    """argmax over components; ties go to the lowest component index."""
    return torch.argmax(resp, dim=1)


# ---------------------------
# Fit loop
# ---------------------------

def _print_progress(config: EMConfig, state: EMState, lapse: float) -> None:
    if state.n_iter % config.verbose_interval != 0:
        return
    if config.verbose == 1:
        print(f"  Iteration {state.n_iter}")
    elif config.verbose >= 2:
        print(f"  Iteration {state.n_iter}\t time lapse {lapse:.5f}s\t change {state.change:.5e}")


def fit_em(
    X,
    init: MixtureParams,
    config: Optional[EMConfig] = None,
    callback: Optional[Callable[[EMState], None]] = None,
) -> EMResult:
    """Run EM from ``init`` until converged or ``config.max_iter`` iterations.

    ``callback(state)`` is called after every iteration. Hitting max_iter is not
    an error: the last estimate is returned with ``converged=False`` and a
    ConvergenceWarning is emitted.
    """
    config = config if config is not None else EMConfig()
    config.validate()
    X, params = check_inputs(X, init, config)

    state = initial_state(X, params)
    history = [state.log_likelihood] if config.keep_history else None

    if config.verbose:
        print(f"Initialization: log-likelihood {state.log_likelihood:.6f}")
    start = time.time()
    lapse_start = start

    for _ in range(config.max_iter):
        state = em_step(state, X, config)
        if history is not None:
            history.append(state.log_likelihood)

        logger.debug(
            "iter %d: log-likelihood %.6f, change %.3e", state.n_iter, state.log_likelihood, state.change
        )
        if config.verbose:
            now = time.time()
            _print_progress(config, state, now - lapse_start)
            lapse_start = now
        if callback is not None:
            callback(state)
        if state.converged:
            break

    if config.verbose:
        status = "converged" if state.converged else "did not converge"
        print(
            f"EM {status} after {state.n_iter} iterations. "
            f"time lapse {time.time() - start:.5f}s\t log-likelihood {state.log_likelihood:.5f}"
        )

    if not state.converged:
        logger.warning(
            "EM did not converge after %d iterations (last change %.3e > tol=%g)",
            config.max_iter, state.change, config.tol,
        )
        warnings.warn(
            f"EM did not converge after {config.max_iter} iterations "
            f"(last change {state.change:.3e} > tol={config.tol}). "
            "Try a larger max_iter, a looser tol, or different initial parameters.",
            ConvergenceWarning,
        )

    resp = state.resp
    p = state.params
    return EMResult(
        weights=p.weights,
        means=p.means,
        covariances=p.covariances,
        precisions_cholesky=p.precisions_cholesky,
        resp=resp,
        labels=hard_assignment(resp),
        log_likelihood=state.log_likelihood,
        converged=state.converged,
        n_iter=state.n_iter,
        history=history,
    )
