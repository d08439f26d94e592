#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
jointfit
Fitting joint longitudinal-survival models to simulated data

Two backends share the same longitudinal submodel, a linear mixed model
with random intercept, slope and curvature per subject:
    quad   - separate association of U0, U1 * t and U2 * t^2 with a Cox hazard
    mjoint - one association of W(t) = U0 + U1 * t + U2 * t^2 with a Gompertz hazard
Each backend returns a fit object that its extractor flattens into one row.
"""

import warnings

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from statsmodels.formula.api import mixedlm
from lifelines import CoxTimeVaryingFitter
from lifelines.exceptions import ConvergenceWarning

from jointsim import JointData, cast_joint

LONG_FORMULA = "Y ~ x1 + x2 + x3 + time"
RE_FORMULA = "~ time + I(time ** 2)"
SURV_COVARIATES = ["x1", "x3"]
RE_NAMES = ["U0", "U1", "U2"]


# Fit containers ----------------------------------------------------------

class JointFit:
    """Separate-association fit; coefficients nested as fixed/longitudinal, fixed/survival, latent"""
    def __init__(self, coefficients, sigma_u, sigma_z, convergence,
                 longitudinal=None, survival=None):
        self.coefficients = coefficients
        self.sigma_u = sigma_u
        self.sigma_z = sigma_z
        self.convergence = convergence
        self.longitudinal = longitudinal
        self.survival = survival


class MJointFit:
    """Single-association fit; coefficients hold beta, gamma, D, sigma2 and the Gompertz theta"""
    def __init__(self, coefficients, convergence, longitudinal=None, survival=None):
        self.coefficients = coefficients
        self.convergence = convergence
        self.longitudinal = longitudinal
        self.survival = survival


# Longitudinal submodel ---------------------------------------------------

def fit_longitudinal(jd, max_iter=500):
    """Linear mixed model with quadratic random effects"""
    long = jd.longitudinal
    model = mixedlm(LONG_FORMULA, long, groups=long[jd.id_col], re_formula=RE_FORMULA)
    return model.fit(maxiter=max_iter, method="lbfgs")


def predict_random_effects(lmm, id_col="id"):
    """Predicted (U0, U1, U2) per subject, indexed by id"""
    re = pd.DataFrame({g: np.asarray(v, dtype=float) for g, v in lmm.random_effects.items()}).T
    re.columns = RE_NAMES
    re.index.name = id_col
    return re


# Survival submodels ------------------------------------------------------

def split_at_event_times(surv, re, id_col="id"):
    """
    Counting-process (start, stop] rows for each subject, cut at every
    observed event time before the subject's own survival time, with the
    random-effect terms evaluated at the end of each interval.
    """
    event_times = np.unique(surv.loc[surv['status'] == 1, 'surv_time'])

    pieces = []
    for sid, T, d in surv[[id_col, 'surv_time', 'status']].itertuples(index=False):
        stops = np.append(event_times[event_times < T], T)
        pieces.append(pd.DataFrame({
            id_col: sid,
            'start': np.append(0.0, stops[:-1]),
            'stop': stops,
            'status': np.append(np.zeros(len(stops) - 1, dtype=int), int(d))
        }))
    episodes = pd.concat(pieces, ignore_index=True)
    episodes = episodes.merge(surv[[id_col] + SURV_COVARIATES], on=id_col, how='left')
    episodes = episodes.merge(re.rename_axis(id_col).reset_index(), on=id_col, how='left')

    t = episodes['stop']
    episodes['U1_t'] = episodes['U1'] * t
    episodes['U2_t2'] = episodes['U2'] * t ** 2
    return episodes.drop(columns=['U1', 'U2'])


def fit_gompertz_ph(surv, re, max_iter=500, n_nodes=30, id_col="id"):
    """
    Gompertz proportional hazards with time-varying association.

    h_i(t) = exp(theta_0 + theta_1 * t + x_i' beta + gamma_Y * W_i(t)),
    W_i(t) = U0_i + U1_i * t + U2_i * t^2. The cumulative hazard is integrated
    with Gauss-Legendre quadrature on [0, T_i].
    """
    T = surv['surv_time'].to_numpy(dtype=float)
    d = surv['status'].to_numpy(dtype=float)
    X = surv[SURV_COVARIATES].to_numpy(dtype=float)
    B = re.loc[surv[id_col], RE_NAMES].to_numpy(dtype=float)

    nodes, weights = np.polynomial.legendre.leggauss(n_nodes)
    s = T[:, None] / 2 * (nodes + 1)
    w = T[:, None] / 2 * weights

    W_T = B[:, 0] + B[:, 1] * T + B[:, 2] * T ** 2
    W_s = B[:, [0]] + B[:, [1]] * s + B[:, [2]] * s ** 2
    Z_T = np.column_stack([np.ones_like(T), T, X, W_T])
    Z_s = np.stack([np.ones_like(s), s,
                    np.broadcast_to(X[:, [0]], s.shape),
                    np.broadcast_to(X[:, [1]], s.shape), W_s], axis=-1)

    # Mean log-likelihood
    n = len(T)

    def negloglik(par):
        wh = w * np.exp(Z_s @ par)
        ll = d @ (Z_T @ par) - wh.sum()
        grad = Z_T.T @ d - np.einsum('nk,nkp->p', wh, Z_s)
        return -ll / n, -grad / n

    start = np.array([np.log(max(d.sum(), 1) / T.sum()), 0, 0, 0, 0])
    return minimize(negloglik, start, jac=True, method="BFGS", options={"maxiter": max_iter})


# Backends ----------------------------------------------------------------

class JointBackend:
    """fit(data) -> fit object, extract(fit) -> one-row DataFrame"""
    name = None

    def __init__(self, max_iter=500, verbose=False):
        self.max_iter = max_iter
        self.verbose = verbose

    @staticmethod
    def as_joint(x):
        return x if isinstance(x, JointData) else cast_joint(x)

    def fit(self, x):
        raise NotImplementedError

    def extract(self, fit):
        raise NotImplementedError

    def fit_extract(self, x):
        return self.extract(self.fit(x))

    def _fit_longitudinal(self, jd):
        if self.verbose:
            print(f"  [{self.name}] Fitting longitudinal submodel")
        lmm = fit_longitudinal(jd, self.max_iter)
        if self.verbose and not lmm.converged:
            print(f"  [{self.name}] Warning: longitudinal submodel did not converge")
        return lmm


class QuadraticRandomEffectsBackend(JointBackend):
    name = "quad"

    def fit(self, x):
        jd = self.as_joint(x)
        lmm = self._fit_longitudinal(jd)
        re = predict_random_effects(lmm, jd.id_col)

        if self.verbose:
            print(f"  [{self.name}] Fitting Cox submodel")
        episodes = split_at_event_times(jd.survival, re, jd.id_col)
        ctv = CoxTimeVaryingFitter()
        with warnings.catch_warnings(record=True) as wlist:
            warnings.simplefilter("always")
            ctv.fit(episodes, id_col=jd.id_col, event_col='status',
                    start_col='start', stop_col='stop', show_progress=False,
                    fit_options={"max_steps": self.max_iter})
        conv_warn = [w for w in wlist if issubclass(w.category, ConvergenceWarning)]

        coefficients = {
            'fixed': {
                'longitudinal': lmm.fe_params,
                'survival': ctv.params_[SURV_COVARIATES]
            },
            'latent': ctv.params_[['U0', 'U1_t', 'U2_t2']]
        }
        return JointFit(coefficients,
                        sigma_u=np.asarray(lmm.cov_re, dtype=float),
                        sigma_z=float(lmm.scale),
                        convergence=bool(lmm.converged) and not conv_warn,
                        longitudinal=lmm, survival=ctv)

    def extract(self, fit):
        return extract_params(fit)


class MultivariateJointBackend(JointBackend):
    name = "mjoint"

    def fit(self, x):
        jd = self.as_joint(x)
        lmm = self._fit_longitudinal(jd)
        re = predict_random_effects(lmm, jd.id_col)

        if self.verbose:
            print(f"  [{self.name}] Fitting Gompertz submodel")
        res = fit_gompertz_ph(jd.survival, re, self.max_iter, id_col=jd.id_col)
        names = ['theta_0', 'theta_1'] + SURV_COVARIATES + ['gamma_Y']
        est = pd.Series(res.x, index=names)

        coefficients = {
            'beta': lmm.fe_params,
            'gamma': est[SURV_COVARIATES + ['gamma_Y']],
            'theta': est[['theta_0', 'theta_1']],
            'D': np.asarray(lmm.cov_re, dtype=float),
            'sigma2': float(lmm.scale)
        }
        return MJointFit(coefficients,
                         convergence=bool(lmm.converged) and bool(res.success),
                         longitudinal=lmm, survival=res)

    def extract(self, fit):
        return extract_ml_params(fit)


BACKENDS = {
    QuadraticRandomEffectsBackend.name: QuadraticRandomEffectsBackend,
    MultivariateJointBackend.name: MultivariateJointBackend
}


def get_backend(name, **kwargs):
    try:
        return BACKENDS[name](**kwargs)
    except KeyError:
        raise ValueError(f"Unknown joint model backend '{name}', "
                         f"choose from {sorted(BACKENDS)}") from None


# Extract parameter estimates from joint models ---------------------------

def extract_params(fit):
    """Flatten a separate-association fit"""
    convergence = fit.convergence
    sigma_e = np.sqrt(fit.sigma_z)
    sigma_u = np.sqrt(np.diag(fit.sigma_u))
    gamma = np.asarray(fit.coefficients['latent'], dtype=float)
    long_coefs = fit.coefficients['fixed']['longitudinal']
    surv_coefs = fit.coefficients['fixed']['survival']

    row = dict(long_coefs)
    row.update({f"surv_{k}": v for k, v in surv_coefs.items()})
    row['sigma_e'] = sigma_e
    row.update({f"sigma_U{i}": v for i, v in enumerate(sigma_u)})
    row.update({f"gamma_{i}": v for i, v in enumerate(gamma)})
    row['convergence'] = convergence
    return pd.DataFrame([row])


def extract_ml_params(fit):
    """Flatten a single-association fit"""
    coefs = fit.coefficients
    U = np.sqrt(np.diag(coefs['D']))
    sigma_e = np.sqrt(coefs['sigma2'])
    betas = coefs['gamma']

    row = dict(coefs['beta'])
    row.update({f"surv_{k}": v for k, v in betas.iloc[:-1].items()})
    row['sigma_e'] = sigma_e
    row.update({f"sigma_U{i}": v for i, v in enumerate(U)})
    row['gamma_Y'] = betas.iloc[-1]
    row.update(dict(coefs['theta']))
    row['convergence'] = fit.convergence
    return pd.DataFrame([row])
