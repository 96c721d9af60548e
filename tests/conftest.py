# tests/conftest.py
import os
import sys

import numpy as np
import pytest
import torch

# Make the local package importable without installing it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gmm_em import MixtureParams  # noqa: E402


class ClusterData:
    """Samples from known, well-separated 2D Gaussians with their generating labels."""

    def __init__(self, means, covs, n_per_cluster=100, seed=0):
        rng = np.random.RandomState(seed)
        self.true_means = np.asarray(means, dtype=np.float64)
        self.true_covs = np.asarray(covs, dtype=np.float64)
        parts = [
            rng.multivariate_normal(m, c, size=n_per_cluster)
            for m, c in zip(self.true_means, self.true_covs)
        ]
        self.X = np.vstack(parts)
        self.y = np.repeat(np.arange(len(parts)), n_per_cluster)

    def empirical(self, k):
        """Per-cluster MLE mean and (biased) covariance of the generated points."""
        Xk = self.X[self.y == k]
        return Xk.mean(axis=0), np.cov(Xk.T, bias=True)


def make_params(weights, means, covs):
    return MixtureParams.from_arrays(weights, means, covs, dtype=torch.float64)


@pytest.fixture
def two_clusters():
    return ClusterData(
        means=[[0.0, 0.0], [5.0, 5.0]],
        covs=[[[1.0, 0.3], [0.3, 0.5]], [[0.6, -0.2], [-0.2, 1.0]]],
        n_per_cluster=100,
        seed=0,
    )


@pytest.fixture
def three_clusters():
    return ClusterData(
        means=[[0.0, 0.0], [6.0, 0.0], [0.0, 6.0]],
        covs=[np.eye(2), [[0.8, 0.2], [0.2, 0.6]], [[0.5, 0.0], [0.0, 1.2]]],
        n_per_cluster=80,
        seed=1,
    )


@pytest.fixture
def two_cluster_init():
    """Initial guess near the true means of the two_clusters fixture."""
    return make_params(
        [0.5, 0.5],
        [[0.5, -0.5], [4.5, 5.5]],
        [np.eye(2), np.eye(2)],
    )
