# tests/test_fit.py
import logging
import warnings

import numpy as np
import pytest
import torch

from gmm_em import (
    ConvergenceWarning,
    DegenerateComponentError,
    EMConfig,
    InvalidConfigurationError,
    MixtureParams,
    fit_em,
    hard_assignment,
)

from conftest import make_params


def _agreement(labels, y, perm=None):
    labels = np.asarray(labels)
    if perm is not None:
        labels = np.asarray(perm)[labels]
    return float(np.mean(labels == y))


def test_two_well_separated_clusters(two_clusters, two_cluster_init):
    result = fit_em(two_clusters.X, two_cluster_init, EMConfig(tol=1e-8, max_iter=500))

    assert result.converged
    assert result.n_iter < 500
    assert _agreement(result.labels.numpy(), two_clusters.y) >= 0.95

    for k in range(2):
        mean_k = result.means[k].numpy()
        cov_k = result.covariances[k].numpy()
        np.testing.assert_allclose(mean_k, two_clusters.true_means[k], atol=0.35)
        np.testing.assert_allclose(cov_k, two_clusters.true_covs[k], atol=0.5)

        emp_mean, emp_cov = two_clusters.empirical(k)
        np.testing.assert_allclose(mean_k, emp_mean, atol=0.05)
        np.testing.assert_allclose(cov_k, emp_cov, atol=0.05)

    np.testing.assert_allclose(result.weights.numpy(), [0.5, 0.5], atol=0.02)
    assert np.isfinite(result.log_likelihood)


def test_result_invariants(two_clusters, two_cluster_init):
    result = fit_em(two_clusters.X, two_cluster_init, EMConfig(tol=1e-8, max_iter=500))

    assert result.weights.sum().item() == pytest.approx(1.0, abs=1e-12)
    assert torch.allclose(result.resp.sum(dim=1), torch.ones(200, dtype=torch.float64), atol=1e-12)
    assert torch.equal(result.covariances, result.covariances.transpose(-1, -2))
    assert result.resp.shape == (200, 2)
    assert result.labels.shape == (200,)
    assert result.history is None


def test_likelihood_history_is_non_decreasing(two_clusters):
    init = make_params([0.5, 0.5], [[1.0, 3.0], [4.0, 2.0]], [np.eye(2) * 3.0, np.eye(2) * 3.0])
    result = fit_em(two_clusters.X, init, EMConfig(tol=1e-10, max_iter=300, reg_covar=0.0, keep_history=True))

    history = result.history
    assert len(history) == result.n_iter + 1
    assert history[-1] == pytest.approx(result.log_likelihood)
    diffs = np.diff(history)
    assert (diffs >= -1e-9 * np.abs(history[:-1])).all()


def test_idempotent_from_converged_output(two_clusters, two_cluster_init):
    config = EMConfig(tol=1e-10, max_iter=1000)
    first = fit_em(two_clusters.X, two_cluster_init, config)
    assert first.converged

    second = fit_em(two_clusters.X, first.to_params(), config)
    assert second.converged
    assert second.n_iter <= 2
    np.testing.assert_allclose(second.means.numpy(), first.means.numpy(), atol=1e-5)
    np.testing.assert_allclose(second.covariances.numpy(), first.covariances.numpy(), atol=1e-5)
    np.testing.assert_allclose(second.weights.numpy(), first.weights.numpy(), atol=1e-8)
    assert second.log_likelihood == pytest.approx(first.log_likelihood, abs=1e-8)
    assert torch.equal(second.labels, first.labels)


def test_label_invariance_under_permuted_start(three_clusters):
    means = np.array([[1.0, 0.5], [5.0, 1.0], [0.5, 5.0]])
    covs = np.stack([np.eye(2), np.eye(2) * 1.5, np.eye(2) * 0.7])
    weights = np.array([0.2, 0.3, 0.5])
    config = EMConfig(tol=1e-9, max_iter=500)

    base = fit_em(three_clusters.X, make_params(weights, means, covs), config)

    perm = np.array([2, 0, 1])
    permuted = fit_em(three_clusters.X, make_params(weights[perm], means[perm], covs[perm]), config)

    # component k of the permuted fit is component perm[k] of the base fit
    np.testing.assert_array_equal(base.labels.numpy(), perm[permuted.labels.numpy()])
    np.testing.assert_allclose(permuted.means.numpy(), base.means.numpy()[perm], atol=1e-8)
    assert permuted.log_likelihood == pytest.approx(base.log_likelihood, abs=1e-8)
    assert _agreement(base.labels.numpy(), three_clusters.y) >= 0.95


@pytest.mark.parametrize("weights", [[0.5, 0.5], [0.3, 0.7]])
def test_identical_start_stays_degenerate(two_clusters, weights):
    """Identical initial components are a fixed point that EM cannot leave."""
    init = make_params(weights, [[2.5, 2.5], [2.5, 2.5]], [np.eye(2), np.eye(2)])
    result = fit_em(two_clusters.X, init, EMConfig(tol=1e-8, max_iter=50))

    assert result.converged
    np.testing.assert_allclose(result.means[0].numpy(), result.means[1].numpy(), atol=1e-10)
    np.testing.assert_allclose(result.covariances[0].numpy(), result.covariances[1].numpy(), atol=1e-10)
    np.testing.assert_allclose(result.weights.numpy(), weights, atol=1e-10)
    # both components sit on the global mean
    np.testing.assert_allclose(result.means[0].numpy(), two_clusters.X.mean(axis=0), atol=1e-8)
    # equal responsibilities resolve to the first component
    expected_label = 0 if weights[0] >= weights[1] else 1
    assert (result.labels == expected_label).all()


def test_one_component_per_point_uses_regularization_floor():
    X = np.array([[0.0, 0.0], [100.0, 0.0], [0.0, 100.0], [100.0, 100.0]])
    init = make_params(np.full(4, 0.25), X, np.stack([np.eye(2)] * 4))
    reg = 1e-6

    result = fit_em(X, init, EMConfig(reg_covar=reg, max_iter=5))

    assert torch.isfinite(result.covariances).all()
    np.testing.assert_allclose(result.means.numpy(), X, atol=1e-9)
    expected = np.stack([np.eye(2) * reg] * 4)
    np.testing.assert_allclose(result.covariances.numpy(), expected, rtol=1e-3, atol=1e-9)
    np.testing.assert_array_equal(result.labels.numpy(), np.arange(4))
    np.testing.assert_allclose(result.weights.numpy(), np.full(4, 0.25), atol=1e-12)


def test_one_component_per_point_without_floor_is_degenerate():
    X = np.array([[0.0, 0.0], [100.0, 0.0], [0.0, 100.0], [100.0, 100.0]])
    init = make_params(np.full(4, 0.25), X, np.stack([np.eye(2)] * 4))

    with pytest.raises(DegenerateComponentError) as excinfo:
        fit_em(X, init, EMConfig(reg_covar=0.0, max_iter=5))
    assert excinfo.value.n_iter == 1
    assert excinfo.value.component is not None


def test_collapsing_component_aborts_fit(two_clusters):
    init = make_params([0.5, 0.5], [[2.5, 2.5], [1e4, 1e4]], [np.eye(2), np.eye(2)])
    with pytest.raises(DegenerateComponentError) as excinfo:
        fit_em(two_clusters.X, init)
    assert excinfo.value.component == 1


def test_non_convergence_is_reported_not_raised(two_clusters):
    init = make_params([0.9, 0.1], [[2.0, 1.0], [3.0, 4.0]], [np.eye(2) * 4.0, np.eye(2) * 4.0])

    with pytest.warns(ConvergenceWarning):
        result = fit_em(two_clusters.X, init, EMConfig(tol=0.0, max_iter=2))

    assert not result.converged
    assert result.n_iter == 2
    assert torch.isfinite(result.means).all()


def test_non_convergence_is_logged(two_clusters, caplog):
    init = make_params([0.9, 0.1], [[2.0, 1.0], [3.0, 4.0]], [np.eye(2) * 4.0, np.eye(2) * 4.0])

    with caplog.at_level(logging.WARNING, logger="gmm_em._em"):
        with pytest.warns(ConvergenceWarning):
            fit_em(two_clusters.X, init, EMConfig(tol=0.0, max_iter=2))

    records = [r for r in caplog.records if r.name == "gmm_em._em" and r.levelno == logging.WARNING]
    assert len(records) == 1
    assert "did not converge after 2 iterations" in records[0].getMessage()


def test_callback_sees_every_iteration(two_clusters, two_cluster_init):
    seen = []

    def callback(state):
        seen.append((state.n_iter, state.log_likelihood, state.converged))

    result = fit_em(two_clusters.X, two_cluster_init, EMConfig(tol=1e-8, max_iter=200), callback=callback)

    assert [s[0] for s in seen] == list(range(1, result.n_iter + 1))
    assert seen[-1][2] is True
    assert seen[-1][1] == pytest.approx(result.log_likelihood)


def test_verbose_progress(two_clusters, two_cluster_init, capsys):
    fit_em(two_clusters.X, two_cluster_init, EMConfig(tol=1e-8, max_iter=200, verbose=2, verbose_interval=1))
    out = capsys.readouterr().out
    assert "Initialization" in out
    assert "Iteration 1" in out
    assert "converged" in out


def test_weights_are_renormalized_and_inputs_untouched(two_clusters):
    means = torch.tensor([[0.5, -0.5], [4.5, 5.5]], dtype=torch.float64)
    init = MixtureParams(
        weights=torch.tensor([2.0, 2.0], dtype=torch.float64),
        means=means,
        covariances=torch.eye(2, dtype=torch.float64).repeat(2, 1, 1),
    )
    X = torch.from_numpy(two_clusters.X.copy())
    X_before = X.clone()

    result = fit_em(X, init, EMConfig(tol=1e-8, max_iter=200))

    assert result.weights.sum().item() == pytest.approx(1.0)
    assert torch.equal(X, X_before)
    assert torch.equal(init.means, torch.tensor([[0.5, -0.5], [4.5, 5.5]], dtype=torch.float64))
    assert init.weights.tolist() == [2.0, 2.0]


def test_integer_data_is_promoted_to_float64():
    rng = np.random.RandomState(0)
    X = np.vstack([rng.randint(0, 3, size=(30, 1)), rng.randint(10, 13, size=(30, 1))])
    init = make_params([0.5, 0.5], [[1.0], [11.0]], [[[1.0]], [[1.0]]])
    result = fit_em(X, init, EMConfig(max_iter=200))
    assert result.means.dtype == torch.float64
    np.testing.assert_allclose(np.sort(result.means.numpy().ravel()), [X[:30].mean(), X[30:].mean()], atol=1e-3)


def test_hard_assignment_tie_break():
    resp = torch.tensor([[0.5, 0.5], [0.2, 0.8], [1 / 3, 1 / 3 + 0.0], [0.7, 0.3]])
    np.testing.assert_array_equal(hard_assignment(resp).numpy(), [0, 1, 0, 0])
    equal = torch.full((5, 4), 0.25)
    assert (hard_assignment(equal) == 0).all()


# ---------------------------
# Configuration errors
# ---------------------------

def _valid():
    X = np.random.RandomState(0).randn(10, 2)
    return X, make_params([0.5, 0.5], [[0.0, 0.0], [1.0, 1.0]], [np.eye(2), np.eye(2)])


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda X, p: (X[:, 0], p), "2D"),
        (lambda X, p: (X[:1], p), "at least 2 samples"),
        (lambda X, p: (X, MixtureParams(p.weights[:0], p.means[:0], p.covariances[:0])), "n_components"),
        (lambda X, p: (X, MixtureParams(p.weights, p.means[:, :1], p.covariances)), "means"),
        (lambda X, p: (X, MixtureParams(p.weights[:1], p.means, p.covariances)), "weights"),
        (lambda X, p: (X, MixtureParams(p.weights, p.means, p.covariances[:, :1, :1])), "covariances"),
        (lambda X, p: (X, MixtureParams(-p.weights, p.means, p.covariances)), "non-negative"),
        (lambda X, p: (X, MixtureParams(p.weights, p.means, -p.covariances)), "positive definite"),
        (lambda X, p: (X, MixtureParams(p.weights, p.means, p.covariances + torch.tensor([[0.0, 0.5], [0.0, 0.0]], dtype=torch.float64))), "symmetric"),
        (lambda X, p: (np.where(np.arange(20).reshape(10, 2) == 3, np.nan, X), p), "NaN"),
    ],
)
def test_invalid_inputs_fail_fast(mutate, message):
    X, params = mutate(*_valid())
    with pytest.raises(InvalidConfigurationError, match=message):
        fit_em(X, params)


@pytest.mark.parametrize(
    "config, message",
    [
        (EMConfig(tol=-1.0), "tol"),
        (EMConfig(max_iter=0), "max_iter"),
        (EMConfig(reg_covar=-1e-3), "reg_covar"),
        (EMConfig(n_components=3), "n_components=3"),
        (EMConfig(verbose_interval=0), "verbose_interval"),
    ],
)
def test_invalid_config_fails_fast(config, message):
    X, params = _valid()
    with pytest.raises(InvalidConfigurationError, match=message):
        fit_em(X, params, config)


def test_invalid_configuration_is_a_value_error():
    X, params = _valid()
    with pytest.raises(ValueError):
        fit_em(X[:1], params)


def test_no_warning_when_converged(two_clusters, two_cluster_init):
    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        fit_em(two_clusters.X, two_cluster_init, EMConfig(tol=1e-8, max_iter=500))
