"""Tests for run options."""

import pytest

from melissa.basis import PolynomialBasis, RBFBasis
from melissa.config import MelissaOptions
from melissa.exceptions import InvalidConfigError, MelissaError


def test_default_options():
    opts = MelissaOptions()
    assert opts.n_clusters == 3
    assert opts.upstream == -5000
    assert opts.downstream == 5000
    assert opts.min_cpgcov == 5
    assert opts.sd_thresh == -1.0
    assert opts.n_jobs == 1
    assert opts.basis() == RBFBasis(dim=4)


def test_polynomial_basis_option():
    opts = MelissaOptions(basis_type="polynomial", basis_dim=5)
    assert opts.basis() == PolynomialBasis(dim=5)


@pytest.mark.parametrize("overrides", [
    {"n_clusters": 0},
    {"n_restarts": 0},
    {"init": "spectral"},
    {"coef_bound": 0.0},
    {"basis_type": "wavelet"},
    {"basis_dim": 0},
    {"rbf_gamma": -1.0},
    {"upstream": 100, "downstream": -100},
    {"upstream": 0, "downstream": 0},
    {"min_cpgcov": -1},
    {"tol": 0.0},
    {"max_iter": 0},
    {"glm_max_iter": 0},
    {"ridge": -0.1},
    {"min_obs": 0},
    {"glm_tol": 0.0},
    {"glm_max_retries": -1},
    {"glm_step_shrink": 1.0},
])
def test_invalid_options(overrides):
    """Test that malformed options are rejected immediately."""
    with pytest.raises(InvalidConfigError):
        MelissaOptions(**overrides)


def test_invalid_config_is_a_value_error():
    with pytest.raises(ValueError):
        MelissaOptions(n_clusters=0)
    assert issubclass(InvalidConfigError, MelissaError)


def test_n_jobs_clipped():
    assert MelissaOptions(n_jobs=0).n_jobs == 1
    assert MelissaOptions(n_jobs=-2).n_jobs == 1


def test_to_dict_round_trip():
    opts = MelissaOptions(n_clusters=4, basis_type="polynomial", basis_dim=3)
    assert MelissaOptions(**opts.to_dict()) == opts
