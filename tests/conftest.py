# tests/conftest.py
"""Shared fixtures for simulation and fitting tests."""

import numpy as np
import pytest

from jointsim import cast_joint, sigma_gen, sim_data


@pytest.fixture
def sigma() -> np.ndarray:
    """Valid positive definite random-effects covariance."""
    return sigma_gen(1.0, 0.5, 0.2)


@pytest.fixture
def non_pd_sigma() -> np.ndarray:
    """Symmetric matrix with a negative eigenvalue."""
    return np.array([
        [1.0, 0.99, 0.99],
        [0.99, 1.0, -0.99],
        [0.99, -0.99, 1.0],
    ])


@pytest.fixture
def small_sim(sigma):
    """Small censored data set with a coarse hazard grid."""
    return sim_data(sigma, num_subj=30, num_times=5, dt=0.01, rng=2024)


@pytest.fixture(scope="module")
def fit_data():
    """Data set large enough for both joint model backends."""
    return cast_joint(sim_data(sigma_gen(1.0, 0.5, 0.2), num_subj=150, num_times=6,
                               dt=0.01, rng=7))
