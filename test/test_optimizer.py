"""Tests for the EM optimizer."""

from dataclasses import replace

import numpy as np
import pytest

from melissa.data import MelissaModel, RawMethylationData
from melissa.exceptions import EMFailedError, InvalidConfigError
from melissa.optimizer import EMOptimizer, EMState, fit_melissa


def _is_non_decreasing(trace, tol):
    trace = np.asarray(trace)
    scale = np.maximum(1.0, np.abs(trace[:-1]))
    return np.all(np.diff(trace) >= -tol * scale)


@pytest.mark.parametrize("n_jobs", [1, 2])
def test_two_patterns_are_separated(two_pattern_data, fast_opts, true_groups, n_jobs):
    """Test that two cells per pattern end up in separate clusters."""
    model = fit_melissa(two_pattern_data, replace(fast_opts, n_jobs=n_jobs))

    assert isinstance(model, MelissaModel)
    assignments = model.cluster_assignments()
    assert assignments[0] == assignments[1]
    assert assignments[2] == assignments[3]
    assert assignments[0] != assignments[2]
    assert np.all(model.responsibilities.max(axis=1) > 0.9)


def test_parallel_restarts_match_sequential(two_pattern_data, fast_opts):
    sequential = fit_melissa(two_pattern_data, replace(fast_opts, n_jobs=1))
    parallel = fit_melissa(two_pattern_data, replace(fast_opts, n_jobs=2))
    assert sequential.restart_log_likelihoods == pytest.approx(parallel.restart_log_likelihoods)
    np.testing.assert_allclose(sequential.responsibilities, parallel.responsibilities)


def test_model_invariants(fitted_model, fast_opts):
    """Test responsibilities, weights and the monotone log-likelihood."""
    np.testing.assert_allclose(fitted_model.responsibilities.sum(axis=1), 1.0)
    assert fitted_model.weights.sum() == pytest.approx(1.0)
    assert np.all(fitted_model.weights >= 0)
    assert fitted_model.state == "converged"
    assert len(fitted_model.log_likelihood_trace) == fitted_model.n_iter + 1
    assert _is_non_decreasing(fitted_model.log_likelihood_trace, fast_opts.tol)
    assert fitted_model.log_likelihood == pytest.approx(fitted_model.log_likelihood_trace[-1])
    assert fitted_model.log_likelihood == max(fitted_model.restart_log_likelihoods)


def test_fit_is_deterministic(two_pattern_data, fast_opts, fitted_model):
    again = fit_melissa(two_pattern_data, fast_opts)
    np.testing.assert_allclose(again.responsibilities, fitted_model.responsibilities)
    for a, b in zip(again.prototypes, fitted_model.prototypes):
        np.testing.assert_allclose(a, b)


def test_random_initialisation(two_pattern_data, fast_opts):
    opts = replace(fast_opts, init="random", n_restarts=4)
    model = fit_melissa(two_pattern_data, opts)
    np.testing.assert_allclose(model.responsibilities.sum(axis=1), 1.0)
    assert len(model.restart_log_likelihoods) == 4
    assert _is_non_decreasing(model.log_likelihood_trace, opts.tol)


def test_initialize_random_bounds(two_pattern_data, fast_opts):
    optimizer = EMOptimizer(replace(fast_opts, init="random", coef_bound=0.5))
    encoded = two_pattern_data.encode(n_jobs=1)
    prototypes = optimizer.initialize(encoded, np.random.default_rng(0))
    assert [p.shape for p in prototypes] == [(2, 3)] * 3
    assert all(np.all(np.abs(p) <= 0.5) for p in prototypes)


def test_cell_signatures_fill_missing_regions(regions, make_met, fast_opts):
    met, _ = make_met()
    met["cell_0_0"]["region1"] = np.zeros((0, 2))
    encoded = RawMethylationData(met, regions).encode(n_jobs=1)
    signatures = EMOptimizer(fast_opts).cell_signatures(encoded)

    assert signatures.shape == (4, 9)
    assert not np.any(np.isnan(signatures))
    np.testing.assert_allclose(signatures[0, 3:6], signatures[1:, 3:6].mean(axis=0))


def test_warm_start_runs_single_restart(two_pattern_data, fast_opts, fitted_model):
    model = fit_melissa(two_pattern_data, fast_opts, warm_start=fitted_model)
    assert len(model.restart_log_likelihoods) == 1
    assert model.state == "converged"
    assert _is_non_decreasing(model.log_likelihood_trace, fast_opts.tol)


def test_log_likelihood_is_monotone_under_strong_ridge(two_pattern_data, fast_opts, fitted_model):
    """Test that shrinking ridge refits never lower the log-likelihood."""
    opts = replace(fast_opts, ridge=1.0)
    start = [3.0 * p for p in fitted_model.prototypes]
    result = EMOptimizer(opts).run(two_pattern_data.encode(n_jobs=1), seed=0, warm_start=start)

    assert result.state is EMState.CONVERGED
    assert _is_non_decreasing(result.log_likelihood_trace, 1e-9)


def test_warm_start_shape_mismatch(two_pattern_data, fast_opts):
    with pytest.raises(InvalidConfigError):
        fit_melissa(two_pattern_data, fast_opts, warm_start=[np.zeros((2, 3))] * 2)
    with pytest.raises(InvalidConfigError):
        fit_melissa(two_pattern_data, fast_opts, warm_start=[np.zeros((3, 3))] * 3)


def test_max_iter_stops_early(two_pattern_data, fast_opts):
    model = fit_melissa(two_pattern_data, replace(fast_opts, max_iter=1))
    assert model.n_iter <= 1
    assert model.state == "converged"


def test_decreasing_log_likelihood_fails_and_keeps_stable_state(two_pattern_data, fast_opts, fitted_model,
                                                           monkeypatch):
    """Test that a worse M-step ends the restart as FAILED with the previous parameters."""
    def bad_m_step(self, data, resp, prototypes):
        return resp.mean(axis=0), [np.full_like(p, 20.0) for p in prototypes], 0

    monkeypatch.setattr(EMOptimizer, "m_step", bad_m_step)
    optimizer = EMOptimizer(fast_opts)
    encoded = two_pattern_data.encode(n_jobs=1)

    result = optimizer.run(encoded, seed=0, warm_start=fitted_model.prototypes)
    assert result.state is EMState.FAILED
    assert not result.converged
    assert result.n_iter == 1
    assert result.log_likelihood_trace[1] < result.log_likelihood_trace[0]
    assert result.log_likelihood == result.log_likelihood_trace[0]
    for kept, start in zip(result.prototypes, fitted_model.prototypes):
        np.testing.assert_array_equal(kept, start)

    with pytest.raises(EMFailedError) as excinfo:
        optimizer.fit(encoded, warm_start=fitted_model)
    assert excinfo.value.result.state is EMState.FAILED


def test_fit_rejects_unknown_input(fast_opts):
    with pytest.raises(TypeError):
        fit_melissa({"cell": {}}, fast_opts)


def test_kmeans_needs_enough_cells(regions, make_met, fast_opts):
    met, _ = make_met(n_per_group=1)
    data = RawMethylationData(met, regions)
    with pytest.raises(InvalidConfigError):
        fit_melissa(data, replace(fast_opts, n_clusters=3))
