# tests/test_quad_sim_study.py
"""Tests for the simulation study driver."""

import matplotlib
import numpy as np
import pandas as pd
import pytest

matplotlib.use("Agg")

import quad_sim_study as study


@pytest.fixture
def truth() -> pd.Series:
    return pd.Series({'Intercept': 40.0, 'time': 0.0, 'sigma_e': 1.5})


@pytest.fixture
def est() -> pd.DataFrame:
    return pd.DataFrame({
        'Intercept': [39.0, 41.0, 40.0, 60.0],
        'time': [0.1, -0.1, 0.0, 0.0],
        'sigma_e': [1.5, 1.5, 1.5, 1.5],
        'convergence': [True, True, False, True],
        'run': [1, 2, 3, 4],
    })


@pytest.fixture
def small_study(monkeypatch):
    """Shrink the study configuration so replicates fit quickly."""
    monkeypatch.setattr(study, "N", 120)
    monkeypatch.setattr(study, "NI", 5)
    monkeypatch.setattr(study, "DT", 0.01)


class TestTrueParams:
    """Tests for true_params."""

    def test_names_match_extracted_rows(self):
        truth = study.true_params()
        assert truth['Intercept'] == 40
        assert truth['x2[T.3]'] == 15
        assert truth['time'] == 0
        assert truth['surv_x1'] == pytest.approx(-0.1)
        assert truth['sigma_U1'] == pytest.approx(0.5)
        assert truth['gamma_2'] == pytest.approx(0.1)
        assert truth['theta_0'] == pytest.approx(np.log(0.01))

    def test_sigma_matches_sds(self):
        assert np.allclose(np.sqrt(np.diag(study.SIGMA)), study.SIGMA_SD)


class TestGetSummary:
    """Tests for get_summary."""

    def test_columns(self, est, truth):
        res = study.get_summary(est, truth)
        assert list(res.columns) == ['True', 'Est', 'Bias', 'rBias', 'rMSE', 'SE_em', 'Converged']
        assert list(res.index) == ['Intercept', 'time', 'sigma_e']

    def test_values(self, est, truth):
        res = study.get_summary(est, truth)
        assert res.loc['Intercept', 'Est'] == pytest.approx(45.0)
        assert res.loc['Intercept', 'Bias'] == pytest.approx(5.0)
        assert res.loc['Intercept', 'rBias'] == pytest.approx(12.5)
        assert res.loc['sigma_e', 'SE_em'] == pytest.approx(0.0)
        assert res.loc['sigma_e', 'rBias'] == pytest.approx(0.0)
        assert res['Converged'].iloc[0] == pytest.approx(0.75)

    def test_zero_truth_has_no_relative_bias(self, est, truth):
        res = study.get_summary(est, truth)
        assert np.isnan(res.loc['time', 'rBias'])
        assert np.isnan(res.loc['time', 'rMSE'])
        assert res.loc['time', 'Bias'] == pytest.approx(0.0)


class TestRmBig:
    """Tests for rm_big."""

    def test_removes_large_bias(self, est, truth, capsys):
        out = study.rm_big(est, truth, big=15)
        assert out['out_rm'].tolist() == [False, False, False, True]
        assert out['out_df']['run'].tolist() == [1, 2, 3]
        assert "Removing 1 rows" in capsys.readouterr().out

    def test_threshold(self, est, truth):
        out = study.rm_big(est, truth, big=100)
        assert len(out['out_df']) == 4


class TestRunReplicate:
    """Tests for run_replicate and run_study."""

    def test_returns_row_per_backend(self, small_study):
        rows = study.run_replicate(np.random.SeedSequence(3))
        assert rows is not None
        assert set(rows) == {'quad', 'mjoint'}
        assert all(len(r) == 1 for r in rows.values())
        assert all(bool(r['convergence'].iloc[0]) for r in rows.values())

    def test_gives_up_after_max_attempts(self, small_study, monkeypatch, capsys):
        def failing_fit(self, x):
            raise np.linalg.LinAlgError("Singular matrix")

        monkeypatch.setattr(study.BACKENDS['quad'], "fit", failing_fit)
        assert study.run_replicate(np.random.SeedSequence(3), max_attempts=2) is None
        out = capsys.readouterr().out
        assert "Attempt 2: Simulating data" in out
        assert "no converged fit after 2 attempts" in out

    def test_run_study_serial(self, small_study):
        est = study.run_study(rep=2, seed=5, n_cores=1)
        assert set(est) == {'quad', 'mjoint'}
        for values in est.values():
            assert len(values) == 2
            assert values['run'].tolist() == [1, 2]
            assert values['convergence'].all()


class TestSaveResults:
    """Tests for save_results."""

    def test_writes_pickle_and_csv(self, est, truth, tmp_path):
        summaries = {'quad': study.get_summary(est, truth)}
        study.save_results({'quad': est}, summaries, output_dir=tmp_path)
        assert (tmp_path / "quad_results.pkl").exists()
        saved = pd.read_csv(tmp_path / "quad_summary.csv", index_col="parameter")
        assert saved.loc['Intercept', 'Est'] == pytest.approx(45.0)


class TestCreateVisualization:
    """Tests for create_visualization."""

    def test_writes_png(self, est, truth, tmp_path):
        study.create_visualization({'quad': est, 'mjoint': est}, truth=truth, output_dir=tmp_path)
        assert (tmp_path / "quad_results_visualization.png").stat().st_size > 0

    def test_skips_empty_backends(self, est, truth, tmp_path):
        study.create_visualization({'quad': est, 'mjoint': pd.DataFrame()}, truth=truth,
                                   output_dir=tmp_path)
        assert (tmp_path / "quad_results_visualization.png").exists()
