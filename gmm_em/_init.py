# gmm_em/_init.py
"""Initial guesses for fit_em.

EM itself is deterministic; all randomness lives here and is driven by an
explicit ``random_state`` (anything sklearn.utils.check_random_state accepts).

- init_from_kmeans:        sklearn KMeans labels -> one M-step
- init_from_random_resp:   uniform random responsibilities -> one M-step
- init_from_random_data:   K distinct samples as means, global covariance,
                           uniform weights
"""

from __future__ import annotations

import numpy as np
import torch
from sklearn.cluster import KMeans
from sklearn.utils import check_random_state

from ._em import MixtureParams, _as_float_tensor, maximization_step
from ._numeric import _add_reg_diag, _safe_log, compute_precisions_cholesky
from .exceptions import InvalidConfigurationError


def _check_data(X, n_components: int) -> torch.Tensor:
    X = _as_float_tensor(X)
    if X.dim() != 2:
        raise InvalidConfigurationError(f"X must be 2D (N, D), got shape {tuple(X.shape)}")
    if n_components < 1:
        raise InvalidConfigurationError("n_components must be >= 1")
    if X.shape[0] < n_components:
        raise InvalidConfigurationError(f"Need at least {n_components} samples, got {X.shape[0]}")
    return X


@torch.no_grad()
def _params_from_resp(X: torch.Tensor, resp: np.ndarray, reg_covar: float) -> MixtureParams:
    resp_t = torch.from_numpy(resp).to(device=X.device, dtype=X.dtype)
    return maximization_step(X, _safe_log(resp_t), reg_covar=reg_covar)


def init_from_kmeans(X, n_components: int, random_state=None, reg_covar: float = 1e-6) -> MixtureParams:
    """Hard k-means labels turned into parameters by one M-step."""
    X = _check_data(X, n_components)
    N = X.shape[0]

    label = KMeans(
        n_clusters=n_components,
        n_init=1,
        random_state=random_state,
    ).fit(X.cpu().numpy()).labels_

    resp = np.zeros((N, n_components), dtype=np.float64)
    resp[np.arange(N), label] = 1
    return _params_from_resp(X, resp, reg_covar)


def init_from_random_resp(X, n_components: int, random_state=None, reg_covar: float = 1e-6) -> MixtureParams:
    """Uniform random soft assignments turned into parameters by one M-step."""
    X = _check_data(X, n_components)
    rng = check_random_state(random_state)

    resp = rng.uniform(size=(X.shape[0], n_components))
    resp /= resp.sum(axis=1)[:, np.newaxis]
    return _params_from_resp(X, resp, reg_covar)


@torch.no_grad()
def init_from_random_data(X, n_components: int, random_state=None, reg_covar: float = 1e-6) -> MixtureParams:
    """K distinct samples as means, the global covariance for every component."""
    X = _check_data(X, n_components)
    N, D = X.shape
    K = n_components
    rng = check_random_state(random_state)

    idx = torch.from_numpy(rng.choice(N, size=K, replace=False)).to(X.device)
    means = X[idx].clone()
    weights = torch.full((K,), 1.0 / K, device=X.device, dtype=X.dtype)

    Xc = X - X.mean(dim=0, keepdim=True)
    cov_global = (Xc.T @ Xc) / max(N - 1, 1)
    cov_global = _add_reg_diag(cov_global, reg_covar)
    cov = cov_global.unsqueeze(0).expand(K, D, D).contiguous()

    return MixtureParams(weights=weights, means=means, covariances=cov, precisions_cholesky=compute_precisions_cholesky(cov))
