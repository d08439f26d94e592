#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Quadratic random effects simulation study
Joint longitudinal-survival models with separate vs single association
"""

import numpy as np
import pandas as pd
import pickle
from pathlib import Path
import warnings
warnings.filterwarnings('ignore')

from multiprocessing import Pool, cpu_count

from jointsim import sigma_gen, sim_data, cast_joint
from jointfit import BACKENDS, get_backend

##########################################
# Simulation settings:

## number of subjects: n=250
## repeated measurements: ni=6 (t = 0, ..., 5)
## U ~ N(0, Sigma), Sigma built from SDs (1, 0.5, 0.2) and correlations (0.2, 0.5, 0.4)
## number of simulation repetitions: rep=100

# quad: Cox hazard with separate association of U0, U1*t, U2*t^2
# mjoint: Gompertz hazard with one association of W(t) = U0 + U1*t + U2*t^2

REP = 100
N = 250
NI = 6
SIGMA_SD = np.array([1.0, 0.5, 0.2])
SIGMA = sigma_gen(*SIGMA_SD)
SIGMA_E = 1.5
GAMMA = np.array([1.0, 0.5, 0.1])
BETA_LONGIT = np.array([40, -10, 5, 15, 0.1])
THETA = np.array([np.log(0.01), 0.5])
BETA_SURV = np.array([-0.1, 0.01])
CENSORING = True
CENS_RATE = 0.01
DT = 0.001
MAX_ITER = 500
MAX_ATTEMPTS = 10
SEED = 1
N_CORES = max(cpu_count() - 1, 1)

OUTPUT_DIR = Path("simulation_output")


def true_params(beta_longit=BETA_LONGIT, beta_surv=BETA_SURV, sigma_e=SIGMA_E,
                sigma_sd=SIGMA_SD, gamma=GAMMA, theta=THETA):
    """True values under the column names of the extracted rows"""
    truth = {
        'Intercept': beta_longit[0],
        'x1': beta_longit[1],
        'x2[T.2]': beta_longit[2],
        'x2[T.3]': beta_longit[3],
        'x3': beta_longit[4],
        'time': 0.0,
        'surv_x1': beta_surv[0],
        'surv_x3': beta_surv[1],
        'sigma_e': sigma_e,
        'theta_0': theta[0],
        'theta_1': theta[1]
    }
    truth.update({f"sigma_U{i}": v for i, v in enumerate(sigma_sd)})
    truth.update({f"gamma_{i}": v for i, v in enumerate(gamma)})
    return pd.Series(truth, dtype=float)


TRUE_PARAMS = true_params()


def run_replicate(seed, backends=tuple(BACKENDS), max_attempts=MAX_ATTEMPTS):
    """Simulate one data set and fit every backend, re-simulating on failure"""
    rng = np.random.default_rng(seed)
    models = [get_backend(name, max_iter=MAX_ITER) for name in backends]

    for attempt in range(1, max_attempts + 1):
        print(f"  Attempt {attempt}: Simulating data")
        data = sim_data(SIGMA, num_subj=N, num_times=NI, sigma_epsilon=SIGMA_E,
                        gamma=GAMMA, beta_longit=BETA_LONGIT, theta_0=THETA[0],
                        theta_1=THETA[1], beta_surv=BETA_SURV, censoring=CENSORING,
                        cens_rate=CENS_RATE, dt=DT, rng=rng)
        jd = cast_joint(data)

        rows = {}
        for model in models:
            print(f"  Fitting {model.name} model")
            try:
                row = model.fit_extract(jd)
            except (np.linalg.LinAlgError, ValueError) as e:
                print(f"  Warning: {model.name} fit failed: {e}")
                break
            if not row['convergence'].iloc[0]:
                print(f"  Warning: {model.name} did not converge")
                break
            rows[model.name] = row
        else:
            return rows

    print(f"  Warning: no converged fit after {max_attempts} attempts")
    return None


def run_study(rep=REP, seed=SEED, n_cores=N_CORES):
    """Run independent replicates, returning one DataFrame of estimates per backend"""
    seeds = np.random.SeedSequence(seed).spawn(rep)
    print(f"Starting {rep} simulation runs on {n_cores} cores...")
    if n_cores > 1:
        with Pool(n_cores) as pool:
            results = pool.map(run_replicate, seeds)
    else:
        results = []
        for k, s in enumerate(seeds):
            print(f"This is run {k+1}")
            results.append(run_replicate(s))

    failed = sum(r is None for r in results)
    if failed:
        print(f"Warning: {failed} of {rep} runs failed to converge")

    est = {}
    for name in BACKENDS:
        rows = [r[name].assign(run=k + 1) for k, r in enumerate(results) if r is not None]
        est[name] = pd.concat(rows, ignore_index=True) if rows else pd.DataFrame()
    return est


# Analysis functions
def _common(est, truth):
    cols = [c for c in est.columns if c in truth.index]
    return est[cols].astype(float), truth[cols]


def rm_big(est, truth=TRUE_PARAMS, big=15):
    """Remove estimates with large relative bias"""
    values, true = _common(est, truth)
    nonzero = true.index[true != 0]
    out_bias = np.abs((values[nonzero] - true[nonzero]) / true[nonzero] * 100)
    out_rm = (out_bias.max(axis=1) > big).to_numpy()

    print(f"Removing {np.sum(out_rm)} rows with relative bias > {big}%")

    return {'out_df': est.loc[~out_rm].reset_index(drop=True), 'out_rm': out_rm}


def get_summary(est, truth=TRUE_PARAMS):
    """Calculate summary statistics"""
    values, true = _common(est, truth)
    Est = values.mean()

    Bias_mat = values - true
    Bias = Est - true
    with np.errstate(divide='ignore', invalid='ignore'):
        rBias = (np.abs(Bias) / np.abs(true) * 100).where(true != 0)
        rMSE = ((Bias_mat ** 2).mean() / np.abs(true) * 100).where(true != 0)
    SE_em = values.std(ddof=1)

    res = pd.DataFrame({
        'True': true, 'Est': Est, 'Bias': Bias, 'rBias': rBias,
        'rMSE': rMSE, 'SE_em': SE_em
    })
    if 'convergence' in est.columns:
        res['Converged'] = est['convergence'].astype(float).mean()
    return res


def save_results(est, summaries, output_dir=OUTPUT_DIR):
    output_dir = Path(output_dir)
    output_dir.mkdir(exist_ok=True)

    results = {
        'est': est,
        'true': TRUE_PARAMS,
        'sigma': SIGMA
    }
    with open(output_dir / "quad_results.pkl", 'wb') as f:
        pickle.dump(results, f)

    # Save as CSV files with 3 decimal places
    for name, summary in summaries.items():
        summary.to_csv(output_dir / f"{name}_summary.csv", float_format="%.3f",
                       index_label="parameter")

    print(f"\nResults saved to {output_dir}")


# Visualization functions
def create_visualization(est, truth=TRUE_PARAMS, output_dir=OUTPUT_DIR, show=False):
    """Boxplots of estimates per parameter with the true values marked"""
    import matplotlib.pyplot as plt
    import seaborn as sns

    sns.set_palette("husl")
    names = [n for n in est if not est[n].empty]
    fig, axes = plt.subplots(len(names), 1, figsize=(16, 6 * len(names)), squeeze=False)

    for ax, name in zip(axes[:, 0], names):
        values, true = _common(est[name], truth)
        # Centre each parameter on its true value so they share one axis
        long_df = (values - true).melt(var_name='Parameter', value_name='Error')
        sns.boxplot(data=long_df, x='Parameter', y='Error', ax=ax)
        ax.axhline(y=0, color='red', linestyle='--', alpha=0.7, label='True value')
        ax.set_title(f'{name}: estimate minus true value')
        ax.tick_params(axis='x', rotation=45)
        ax.grid(True, alpha=0.3)
        ax.legend()

    plt.tight_layout()
    output_dir = Path(output_dir)
    output_dir.mkdir(exist_ok=True)
    plt.savefig(output_dir / "quad_results_visualization.png", dpi=300, bbox_inches='tight')
    if show:
        plt.show()
    plt.close(fig)


def main():
    print(f"True parameters:\n{TRUE_PARAMS}")

    est = run_study()

    summaries = {}
    for name, values in est.items():
        if values.empty:
            print(f"No converged runs for {name}")
            continue
        print(f"\n{name} results:")
        print(get_summary(values))

        # Remove large bias estimates
        cleaned = rm_big(values)['out_df']
        summaries[name] = get_summary(cleaned)
        print(f"\n{name} results with large bias removed:")
        print(summaries[name])

    save_results(est, summaries)

    print("\nGenerating visualizations...")
    create_visualization(est)
    print("Simulation completed successfully!")


if __name__ == "__main__":
    main()
