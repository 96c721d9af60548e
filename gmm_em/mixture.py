# gmm_em/mixture.py
"""Sklearn-shaped estimator on top of fit_em / fit_restarts.

Exposed attributes after fit:
- weights_, means_, covariances_
- precisions_, precisions_cholesky_
- converged_, n_iter_, lower_bound_ (final total log-likelihood)
- log_likelihoods_ (history of the kept fit)
- resp_, labels_

User-supplied init (weights_init, means_init, covariances_init) replaces
init_params; since EM is deterministic it is run once regardless of n_init.
"""

from __future__ import annotations

import math
from typing import List, Optional, Tuple

import torch
from sklearn.utils import check_random_state

from ._em import EMConfig, MixtureParams, _as_float_tensor, expectation_step, fit_em
from ._init import init_from_kmeans, init_from_random_data, init_from_random_resp
from ._numeric import _add_reg_diag, _safe_log, compute_precisions, estimate_log_gaussian_prob
from ._restarts import fit_restarts
from .exceptions import InvalidConfigurationError, NotFittedError

_INITIALIZERS = {
    "kmeans": init_from_kmeans,
    "random": init_from_random_resp,
    "random_from_data": init_from_random_data,
}


class GaussianMixtureEM:
    """Full-covariance Gaussian mixture fitted by EM, in PyTorch."""

    def __init__(
        self,
        n_components: int,
        tol: float = 1e-6,
        reg_covar: float = 1e-6,
        max_iter: int = 100,
        n_init: int = 1,
        init_params: str = "kmeans",
        weights_init=None,
        means_init=None,
        covariances_init=None,
        random_state=None,
        n_jobs: Optional[int] = None,
        verbose: int = 0,
        verbose_interval: int = 10,
        device=None,
        dtype=None,
    ) -> None:
        if n_components <= 0:
            raise InvalidConfigurationError("n_components must be positive")
        if n_init <= 0:
            raise InvalidConfigurationError("n_init must be positive")
        if init_params not in _INITIALIZERS:
            raise InvalidConfigurationError(
                f"init_params must be one of {sorted(_INITIALIZERS)}, got {init_params!r}"
            )

        self.n_components = n_components
        self.tol = tol
        self.reg_covar = reg_covar
        self.max_iter = max_iter
        self.n_init = n_init
        self.init_params = init_params
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.verbose_interval = verbose_interval
        self.device = device
        self.dtype = dtype

        # User init
        self.weights_init = weights_init
        self.means_init = means_init
        self.covariances_init = covariances_init

        # sklearn-like fitted attributes
        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.covariances_: Optional[torch.Tensor] = None
        self.precisions_cholesky_: Optional[torch.Tensor] = None
        self.precisions_: Optional[torch.Tensor] = None
        self.resp_: Optional[torch.Tensor] = None
        self.labels_: Optional[torch.Tensor] = None

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.log_likelihoods_: List[float] = []

        self._params: Optional[MixtureParams] = None

    def _to_device_dtype(self, X) -> torch.Tensor:
        return _as_float_tensor(X, self.dtype, self.device)

    def _config(self) -> EMConfig:
        return EMConfig(
            tol=self.tol,
            max_iter=self.max_iter,
            reg_covar=self.reg_covar,
            n_components=self.n_components,
            verbose=self.verbose,
            verbose_interval=self.verbose_interval,
            keep_history=True,
        )

    def _n_parameters(self, D: int) -> int:
        """Free parameter count for AIC/BIC."""
        K = self.n_components
        return int((K - 1) + K * D + K * D * (D + 1) // 2)

    @torch.no_grad()
    def _user_init(self, X: torch.Tensor) -> MixtureParams:
        N, D = X.shape
        K = self.n_components
        means = self._to_device_dtype(self.means_init)

        if self.weights_init is None:
            weights = torch.full((K,), 1.0 / K, device=X.device, dtype=X.dtype)
        else:
            weights = self._to_device_dtype(self.weights_init)

        if self.covariances_init is not None:
            cov = self._to_device_dtype(self.covariances_init)
        else:
            # means given without covariances: start every component from the global covariance
            Xc = X - X.mean(dim=0, keepdim=True)
            cov_global = _add_reg_diag((Xc.T @ Xc) / max(N - 1, 1), self.reg_covar)
            cov = cov_global.unsqueeze(0).expand(K, D, D).contiguous()

        return MixtureParams(weights=weights, means=means, covariances=cov)

    def _initial_guesses(self, X: torch.Tensor) -> List[MixtureParams]:
        if self.means_init is not None:
            return [self._user_init(X)]
        if self.weights_init is not None or self.covariances_init is not None:
            raise InvalidConfigurationError("weights_init/covariances_init require means_init")

        rng = check_random_state(self.random_state)
        init_fn = _INITIALIZERS[self.init_params]
        return [
            init_fn(X, self.n_components, random_state=int(rng.randint(2**31 - 1)), reg_covar=self.reg_covar)
            for _ in range(self.n_init)
        ]

    # -----------------------
    # Public API
    # -----------------------

    def fit(self, X) -> "GaussianMixtureEM":
        X = self._to_device_dtype(X)
        inits = self._initial_guesses(X)
        config = self._config()

        if len(inits) == 1:
            result = fit_em(X, inits[0], config)
        else:
            result = fit_restarts(X, inits, config, n_jobs=self.n_jobs)

        self._params = result.to_params()

        self.weights_ = result.weights
        self.means_ = result.means
        self.covariances_ = result.covariances
        self.precisions_cholesky_ = result.precisions_cholesky
        self.precisions_ = compute_precisions(result.precisions_cholesky)
        self.resp_ = result.resp
        self.labels_ = result.labels

        self.lower_bound_ = result.log_likelihood
        self.log_likelihoods_ = list(result.history or [])
        self.n_iter_ = result.n_iter
        self.converged_ = result.converged

        return self

    def fit_predict(self, X) -> torch.Tensor:
        return self.fit(X).labels_

    def _check_fitted(self) -> MixtureParams:
        if self._params is None:
            raise NotFittedError("This GaussianMixtureEM instance is not fitted yet. Call 'fit' first.")
        return self._params

    @torch.no_grad()
    def score_samples(self, X) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        p = self._check_fitted()
        X = self._to_device_dtype(X)

        log_prob = estimate_log_gaussian_prob(X, p.means, p.precisions_cholesky)  # (N,K)
        weighted = log_prob + _safe_log(p.weights).unsqueeze(0)
        return torch.logsumexp(weighted, dim=1)

    @torch.no_grad()
    def score(self, X) -> torch.Tensor:
        """Mean log-likelihood."""
        return self.score_samples(X).mean()

    @torch.no_grad()
    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        p = self._check_fitted()
        X = self._to_device_dtype(X)
        _, log_resp = expectation_step(X, p)
        return log_resp.exp()

    @torch.no_grad()
    def predict(self, X) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    @torch.no_grad()
    def aic(self, X) -> torch.Tensor:
        """Akaike information criterion."""
        X = self._to_device_dtype(X)
        ll = self.score_samples(X).sum()
        return 2.0 * self._n_parameters(X.shape[1]) - 2.0 * ll

    @torch.no_grad()
    def bic(self, X) -> torch.Tensor:
        """Bayesian information criterion."""
        X = self._to_device_dtype(X)
        N, D = X.shape
        ll = self.score_samples(X).sum()
        return math.log(N) * self._n_parameters(D) - 2.0 * ll

    @torch.no_grad()
    def sample(self, n_samples: int, random_state=None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the fitted mixture.

        The same ``random_state`` gives the same draws; global torch RNG state
        is left untouched.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        p = self._check_fitted()
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")

        rng = check_random_state(random_state)
        gen = torch.Generator(device=p.means.device)
        gen.manual_seed(int(rng.randint(2**31 - 1)))

        K, D = p.means.shape
        labels = torch.multinomial(p.weights, n_samples, replacement=True, generator=gen)

        X_out = torch.empty((n_samples, D), device=p.means.device, dtype=p.means.dtype)
        for k in range(K):
            mask = labels == k
            n_k = int(mask.sum().item())
            if n_k == 0:
                continue
            L = torch.linalg.cholesky(p.covariances[k])
            z = torch.randn((n_k, D), generator=gen, device=p.means.device, dtype=p.means.dtype)
            X_out[mask] = p.means[k] + z @ L.T

        return X_out, labels
