#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
jointsim
Simulation of longitudinal data and survival times sharing quadratic random effects

Functions here represent steps in simulating and fitting a joint model and
are designed to be mapped over a list of simulation settings:
    sigma_gen -> sim_data -> cast_joint -> (jointfit backends)
"""

import numpy as np
import pandas as pd
from statsmodels.stats.correlation_tools import cov_nearest


class CovarianceError(ValueError):
    pass


class JointData:
    """Longitudinal and survival tables of one simulated data set, keyed by id"""
    def __init__(self, longitudinal, survival, baseline, id_col="id", time_col="time"):
        self.longitudinal = longitudinal
        self.survival = survival
        self.baseline = baseline
        self.id_col = id_col
        self.time_col = time_col

    @property
    def n_subjects(self):
        return len(self.survival)

    def __repr__(self):
        return (f"JointData(subjects={self.n_subjects}, "
                f"longitudinal_rows={len(self.longitudinal)})")


# Generate Sigma ----------------------------------------------------------

def sigma_gen(sigma_0, sigma_1, sigma_2, rho12=0.2, rho13=0.5, rho23=0.4):
    """Covariance matrix of (intercept, slope, quadratic) random effects"""
    sd = np.array([sigma_0, sigma_1, sigma_2], dtype=float)
    rho = np.array([
        [1,     rho12, rho13],
        [rho12, 1,     rho23],
        [rho13, rho23, 1]
    ], dtype=float)
    return np.outer(sd, sd) * rho


def check_sigma(Sigma):
    """
    Validate a random-effects covariance matrix.

    Raises CovarianceError if Sigma is not symmetric. A matrix that is not
    positive definite is replaced by its nearest positive definite matrix.
    """
    Sigma = np.asarray(Sigma, dtype=float)
    if Sigma.ndim != 2 or Sigma.shape[0] != Sigma.shape[1] or not np.allclose(Sigma, Sigma.T):
        raise CovarianceError("Covariance matrix Sigma not symmetric")
    if np.any(np.linalg.eigvalsh(Sigma) < 0) or np.linalg.det(Sigma) <= 0:
        print("Provided covariance matrix is not positive definite, transforming...")
        Sigma = cov_nearest(Sigma, method="clipped", threshold=1e-6)
    return Sigma


# Simulate longitudinal data and survival times ---------------------------

def sim_data(Sigma, num_subj=250, num_times=6, sigma_epsilon=1.5, gamma=(1, 0.5, 0.1),
             beta_longit=(40, -10, 5, 15, 0.1), theta_0=np.log(0.01), theta_1=0.5,
             beta_surv=(-0.1, 0.01), censoring=True, cens_rate=0.01, dt=0.001,
             print_data=False, rng=None):
    """
    Simulate a longitudinal outcome with quadratic random effects and an
    event time whose Gompertz hazard depends on the same random effects.

    Parameters
    ----------
    Sigma : (3, 3) array
        Covariance of the random intercept, slope and curvature.
    gamma : sequence of 3 floats
        Association of U0, U1 * t and U2 * t^2 with the hazard.
    beta_longit : sequence of 5 floats
        Intercept, x1, x2 (level 2), x2 (level 3), x3.
    theta_0, theta_1 : float
        Gompertz baseline hazard exp(theta_0 + theta_1 * t).
    beta_surv : sequence of 2 floats
        Effects of x1 and x3 on the hazard.
    dt : float
        Step of the grid the hazard is evaluated on. Event times are drawn
        in discrete time, so small steps approximate the continuous model.
    rng : numpy.random.Generator, int or None

    Returns
    -------
    dict with 'long_data' and 'surv_data' DataFrames
    """
    if num_times < 2:
        raise ValueError(f"num_times must be at least 2, got {num_times}")
    rng = np.random.default_rng(rng)

    # Checks on provided covariance matrix
    Sigma = check_sigma(Sigma)

    N = num_subj * num_times
    tau = num_times - 1

    # Generate random effects
    REs = rng.multivariate_normal(np.zeros(3), Sigma, size=num_subj)
    U0, U1, U2 = REs[:, 0], REs[:, 1], REs[:, 2]

    # Baseline covariates
    subj_id = np.arange(1, num_subj + 1)
    x1 = rng.binomial(1, 0.5, num_subj)  # Treatment received
    x2 = np.arange(num_subj) % 3 + 1  # Factor
    x3 = np.floor(rng.normal(65, 10, num_subj))
    x3 = x3 - x3.mean()  # Continuous

    # Longitudinal part
    x1l = np.repeat(x1, num_times)
    x2l = np.repeat(x2, num_times)
    x3l = np.repeat(x3, num_times)
    Xl = np.column_stack([np.ones(N), x1l, x2l == 2, x2l == 3, x3l])
    time = np.tile(np.arange(num_times), num_subj)
    Yl = (Xl @ np.asarray(beta_longit, dtype=float)
          + np.repeat(U0, num_times) + np.repeat(U1, num_times) * time
          + np.repeat(U2, num_times) * time ** 2 + rng.normal(0, sigma_epsilon, N))
    long_data = pd.DataFrame({
        'id': np.repeat(subj_id, num_times),
        'time': time,
        'x1': x1l,
        'x2': pd.Categorical(x2l, categories=[1, 2, 3]),
        'x3': x3l,
        'Y': Yl
    })

    # Survival part
    XsBs = np.column_stack([x1, x3]) @ np.asarray(beta_surv, dtype=float)
    # Grid steps of dt, excluding 0; stops short of tau when dt does not divide it
    gridt = np.minimum(dt * np.arange(1, int(np.floor(tau / dt + 1e-9)) + 1), tau)
    # Hazard at each grid time for each subject
    bl_haz = np.exp(XsBs)[:, None] * np.exp(theta_0 + theta_1 * gridt)[None, :]
    gamma_U = np.exp(gamma[0] * U0[:, None] + gamma[1] * U1[:, None] * gridt
                     + gamma[2] * U2[:, None] * gridt ** 2)
    lambda_dt = gamma_U * bl_haz * dt

    # First grid time whose scaled hazard beats its uniform draw, else tau
    unifs = rng.uniform(size=lambda_dt.shape)
    candidate_times = np.where(lambda_dt < unifs, tau, gridt[None, :])
    surv_time = candidate_times.min(axis=1)

    # Censoring
    status = np.ones(num_subj, dtype=int)
    if censoring:
        # Rate 0 never censors
        cens_scale = np.inf if cens_rate == 0 else 1 / cens_rate
        cens_time = rng.exponential(cens_scale, num_subj)
        f = cens_time < surv_time
        status[f] = 0
        surv_time[f] = cens_time[f]
    status[surv_time == tau] = 0  # Survived to end of follow-up

    surv_data = pd.DataFrame({
        'id': subj_id,
        'x1': x1,
        'x3': x3,
        'surv_time': surv_time,
        'status': status
    })

    if print_data:
        print("Longitudinal data:")
        print(long_data.head(25))
        print("Survival data:")
        print(surv_data.head(25))
    print(f"Failure rate of {round(np.sum(status == 1) / num_subj * 100)}%")

    return {'long_data': long_data, 'surv_data': surv_data}


# Cast the two simulated data sets to one joint data set ------------------

def cast_joint(x):
    long_data, surv_data = x['long_data'], x['surv_data']
    long = long_data.merge(surv_data[['id', 'surv_time']], on='id', how='left')
    long = long.loc[long['time'] <= long['surv_time'], list(long_data.columns)]

    return JointData(
        longitudinal=long.reset_index(drop=True),
        survival=surv_data,
        baseline=surv_data[['id', 'x1', 'x3']],
        id_col='id', time_col='time'
    )
