# gmm_em/_numeric.py
"""Guarded numeric layer: covariance handling and Gaussian log-densities.

Everything that factorizes a covariance or evaluates a density goes through
here. Densities are evaluated from the Cholesky factor of the precision
matrix (as scikit-learn does) and always in log space. A covariance that is
not positive definite raises ``DegenerateComponentError`` instead of letting
NaN/Inf leak into the responsibilities.

Shapes:
- covariances:          (K, D, D)
- precisions_cholesky:  (K, D, D) lower-triangular, precision = P^T P
"""

from __future__ import annotations

import math

import torch

from .exceptions import DegenerateComponentError


# ---------------------------
# Utilities
# ---------------------------

def _nk_eps(dtype: torch.dtype) -> float:
    """Smoothing added to effective counts: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _add_reg_diag(cov: torch.Tensor, reg_covar: float) -> torch.Tensor:
    """Add reg_covar to the diagonal (works for (D,D) or (K,D,D))."""
    if reg_covar == 0.0:
        return cov
    if cov.dim() == 2:
        D = cov.shape[0]
        return cov + reg_covar * torch.eye(D, device=cov.device, dtype=cov.dtype)
    if cov.dim() == 3:
        _, D, _ = cov.shape
        eye = torch.eye(D, device=cov.device, dtype=cov.dtype)
        return cov + reg_covar * eye.unsqueeze(0)
    raise ValueError("cov must be (D,D) or (K,D,D)")


def _symmetrize(cov: torch.Tensor) -> torch.Tensor:
    return 0.5 * (cov + cov.transpose(-1, -2))


# ---------------------------
# Precision-Cholesky helpers
# ---------------------------

@torch.no_grad()
def compute_precisions_cholesky(covariances: torch.Tensor) -> torch.Tensor:
    """Compute precisions_cholesky (K, D, D) from covariances (K, D, D).

    cov = L L^T (L lower).  precision_chol = inv(L) (lower).
    precision = inv(cov) = inv(L^T) inv(L) = precision_chol^T precision_chol.

    Raises DegenerateComponentError naming the first component whose
    covariance is non-finite or not positive definite.
    """
    K, D, _ = covariances.shape

    finite = torch.isfinite(covariances).flatten(1).all(dim=1)
    if not bool(finite.all()):
        k = int(torch.nonzero(~finite)[0].item())
        raise DegenerateComponentError(f"covariance of component {k} has non-finite entries", component=k)

    L, info = torch.linalg.cholesky_ex(covariances)
    if bool((info != 0).any()):
        k = int(torch.nonzero(info)[0].item())
        raise DegenerateComponentError(
            f"covariance of component {k} is not positive definite; "
            "increase reg_covar or restart from different initial parameters",
            component=k,
        )

    I = torch.eye(D, device=covariances.device, dtype=covariances.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, I, upper=False)


@torch.no_grad()
def compute_precisions(precisions_chol: torch.Tensor) -> torch.Tensor:
    """Precisions (inverse covariances) from precisions_cholesky."""
    return torch.bmm(precisions_chol.transpose(-1, -2), precisions_chol)


# ---------------------------
# Log Gaussian probability via precisions_cholesky
# ---------------------------

@torch.no_grad()
def estimate_log_gaussian_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """log N(x_n | means_k, cov_k) for every pair, shape (N, K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    # 0.5 * logdet(precision) = sum_d log(P_k[d, d])
    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    # y[n,k,:] = P[k] @ diff[n,k,:]
    y = torch.einsum('nkd,ked->nke', diff, precisions_chol)  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


@torch.no_grad()
def log_multivariate_normal_density(
    X: torch.Tensor,
    mean: torch.Tensor,
    covariance: torch.Tensor,
) -> torch.Tensor:
    """Single-component log-density, shape (N,)."""
    prec_chol = compute_precisions_cholesky(covariance.unsqueeze(0))
    return estimate_log_gaussian_prob(X, mean.unsqueeze(0), prec_chol)[:, 0]
