"""
Tests for the effect-size sweep, result files and the command line.
"""

import dataclasses
import math
import os

import numpy as np
import pandas as pd
import pytest

import powersim.power as pw
import powersim.sweep as sw
from powersim.fitting import TTestFit
from powersim.generate import CrossedParams, OneSampleParams, SingleFactorParams
from powersim.power import get_design


TABLE_COLUMNS = [
    "id", "eff", "nsubj",
    "n_singular", "n_nonconverged", "n_significant", "n_total", "power", "ci_low", "ci_high",
]


class _ModuleHoldingFit(TTestFit):
    """t-test handle that cannot be pickled."""

    def __init__(self, sample):
        super().__init__(sample)
        self.engine = math


def _one_sample_settings(effects=(0.0, 0.4, 0.8), nsubj=(20,)):
    return sw.build_settings(get_design("one-sample"), effects, nsubj=nsubj)


class TestSettings:
    def test_effect_grid_is_inclusive(self):
        np.testing.assert_allclose(sw.effect_grid(0.0, 1.5, 5), [0.0, 0.375, 0.75, 1.125, 1.5])

    def test_sample_sizes_outer_effects_inner(self):
        settings = sw.build_settings(get_design("single"), [0.0, 1.0], nsubj=[10, 20], ntrials=5)
        assert [(s.nsubj, s.eff) for s in settings] == [(10, 0.0), (10, 1.0), (20, 0.0), (20, 1.0)]
        assert all(isinstance(s, SingleFactorParams) and s.ntrials == 5 for s in settings)

    def test_crossed_settings_keep_defaults(self):
        settings = sw.build_settings(get_design("crossed"), [80.0], nsubj=[30], nitem=40)
        assert settings == [CrossedParams(eff=80.0, nsubj=30, nitem=40)]

    def test_parse_csv_numbers(self):
        assert sw._parse_csv_numbers("10, 20,,40", cast=int) == [10, 20, 40]
        assert sw._parse_csv_numbers(None) is None
        with pytest.raises(ValueError):
            sw._parse_csv_numbers("10,abc", cast=int)

    def test_resolve_n_jobs(self):
        assert sw._resolve_n_jobs(None) == 1
        assert sw._resolve_n_jobs(0) == 1
        assert sw._resolve_n_jobs(4) == 4
        assert sw._resolve_n_jobs(-1) == (os.cpu_count() or 1)

    @pytest.mark.parametrize("value", [-0.1, 1.5, float("nan")])
    def test_validate_probability_rejects(self, value):
        with pytest.raises(ValueError):
            sw.validate_probability(value, "alpha")


class TestRunSweep:
    def test_table_layout(self):
        result = sw.run_sweep("one-sample", _one_sample_settings(), nmc=30, quiet=True)
        assert list(result.table.columns) == TABLE_COLUMNS
        assert result.table["id"].tolist() == [1, 2, 3]
        assert result.table["eff"].tolist() == [0.0, 0.4, 0.8]
        assert (result.table["n_total"] == 30).all()
        assert result.trials == []
        assert len(result.settings) == 3

    def test_same_seed_same_table(self):
        a = sw.run_sweep("one-sample", _one_sample_settings(), nmc=50, seed=1451, quiet=True)
        b = sw.run_sweep("one-sample", _one_sample_settings(), nmc=50, seed=1451, quiet=True)
        pd.testing.assert_frame_equal(a.table, b.table)
        assert a.table.to_csv(index=False) == b.table.to_csv(index=False)

    def test_different_seed_different_draws(self):
        settings = _one_sample_settings(effects=(0.3,), nsubj=(15,))
        a = sw.run_sweep("one-sample", settings, nmc=5, seed=1, keep_trials=True, quiet=True)
        b = sw.run_sweep("one-sample", settings, nmc=5, seed=2, keep_trials=True, quiet=True)
        pvals_a = [t.stats.p_value for t in a.trials[0]]
        pvals_b = [t.stats.p_value for t in b.trials[0]]
        assert pvals_a != pvals_b

    def test_keep_trials(self):
        result = sw.run_sweep("one-sample", _one_sample_settings(effects=(0.0, 1.0)), nmc=4,
                              keep_trials=True, quiet=True)
        assert [len(t) for t in result.trials] == [4, 4]
        assert all(len(t.data) == 20 for t in result.trials[1])

    def test_rejects_non_positive_nmc(self):
        with pytest.raises(ValueError, match="nmc"):
            sw.run_sweep("one-sample", _one_sample_settings(), nmc=0)

    def test_unknown_design(self):
        with pytest.raises(ValueError, match="unknown design"):
            sw.run_sweep("nested", [], nmc=1)

    def test_progress_line_per_setting(self, capsys):
        sw.run_sweep("one-sample", _one_sample_settings(), nmc=3)
        err = capsys.readouterr().err
        assert err.count("[info] computing stats over 3 runs for") == 3

    def test_single_factor_sweep(self):
        settings = sw.build_settings(get_design("single"), [0.0, 1.5], nsubj=[10], ntrials=10)
        result = sw.run_sweep("single", settings, nmc=5, quiet=True)
        table = result.table
        assert list(table.columns) == [
            "id", "eff", "nsubj", "ntrials",
            "n_singular", "n_nonconverged", "n_significant", "n_total", "power", "ci_low", "ci_high",
        ]
        assert (table["n_total"] == 5).all()
        assert ((table["n_significant"] >= 0) & (table["n_significant"] <= 5)).all()
        assert table.loc[1, "power"] >= table.loc[0, "power"]

    def test_odd_item_count_fails(self):
        settings = [CrossedParams(eff=80.0, nsubj=5, nitem=7)]
        with pytest.raises(ValueError):
            sw.run_sweep("crossed", settings, nmc=1, quiet=True)

    def test_parallel_depends_on_seed_only(self):
        settings = _one_sample_settings(effects=(0.0, 0.3, 0.6, 0.9))
        a = sw.run_sweep("one-sample", settings, nmc=40, seed=99, n_jobs=2, quiet=True)
        b = sw.run_sweep("one-sample", settings, nmc=40, seed=99, n_jobs=3, quiet=True)
        pd.testing.assert_frame_equal(a.table, b.table)

    def test_parallel_keeps_trials(self):
        result = sw.run_sweep("one-sample", _one_sample_settings(effects=(0.0, 0.5)), nmc=4, n_jobs=2,
                              keep_trials=True, quiet=True)
        assert [len(t) for t in result.trials] == [4, 4]
        assert all(t.model is not None for t in result.trials[1])


class TestResultFiles:
    def test_filename_encodes_parameters(self):
        settings = sw.build_settings(get_design("single"), [0.0, 1.5], nsubj=[10], ntrials=10)
        name = sw.results_filename(get_design("single"), 5, settings)
        assert name == "power-simulation-results_single_nmc5_nsubj10_ntrials10.pkl"

    def test_filename_lists_sample_size_grid(self):
        settings = _one_sample_settings(effects=(0.0, 1.0), nsubj=(10, 20))
        name = sw.results_filename(get_design("one-sample"), 100, settings, ext="csv")
        assert name == "power-simulation-results_one-sample_nmc100_nsubj10-20.csv"

    def test_save_table_round_trip(self, tmp_path):
        result = sw.run_sweep("one-sample", _one_sample_settings(), nmc=10, quiet=True)
        path = sw.save_results(result, str(tmp_path / "table.pkl"))
        pd.testing.assert_frame_equal(pd.read_pickle(path), result.table)

    def test_save_everything(self, tmp_path):
        result = sw.run_sweep("one-sample", _one_sample_settings(effects=(0.5,)), nmc=3,
                              keep_trials=True, quiet=True)
        path = sw.save_results(result, str(tmp_path / "all.pkl"), everything=True)
        saved = pd.read_pickle(path)
        assert set(saved) == {"table", "settings", "trials"}
        assert saved["settings"] == [OneSampleParams(eff=0.5, nsubj=20)]
        assert len(saved["trials"][0]) == 3

    def test_failed_save_leaves_no_file(self, tmp_path):
        result = sw.run_sweep("one-sample", _one_sample_settings(effects=(0.5,)), nmc=2, quiet=True)
        result.trials = [[_ModuleHoldingFit([1.0, 2.0, 3.5])]]
        with pytest.raises(TypeError):
            sw.save_results(result, str(tmp_path / "all.pkl"), everything=True)
        assert list(tmp_path.iterdir()) == []


class TestCli:
    def test_missing_run_count_is_usage_error(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc:
            sw.main([])
        assert exc.value.code == 2
        assert list(tmp_path.iterdir()) == []

    def test_zero_runs_is_an_error(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc:
            sw.main(["0"])
        assert exc.value.code == 1
        assert "Error:" in capsys.readouterr().err
        assert list(tmp_path.iterdir()) == []

    def test_odd_item_count_is_an_error(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc:
            sw.main(["1", "--design", "crossed", "--nitem", "7"])
        assert exc.value.code == 1
        assert "--nitem" in capsys.readouterr().err

    def test_bad_alpha_is_an_error(self, capsys):
        with pytest.raises(SystemExit) as exc:
            sw.main(["1", "--alpha", "1.5"])
        assert exc.value.code == 1
        assert "alpha" in capsys.readouterr().err

    def test_run_writes_table(self, tmp_path, capsys):
        out = tmp_path / "power.pkl"
        sw.main(["20", "--design", "one-sample", "--nsubj", "20", "--eff-steps", "3", "--out", str(out)])
        captured = capsys.readouterr()
        table = pd.read_pickle(out)
        assert len(table) == 3
        assert table["eff"].tolist() == [0.0, 0.6, 1.2]
        assert (table["n_total"] == 20).all()
        assert "power" in captured.out
        assert f"[info] results saved to '{out}'" in captured.err

    def test_default_output_name(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        sw.main(["2", "--design", "one-sample", "--eff-steps", "1", "--quiet"])
        assert (tmp_path / "power-simulation-results_one-sample_nmc2_nsubj10.pkl").exists()

    def test_save_all_one_sample(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        sw.main(["3", "--design", "one-sample", "--eff-steps", "2", "--save-all", "--quiet"])
        saved = pd.read_pickle(tmp_path / "power-simulation-results_one-sample_nmc3_nsubj10.pkl")
        assert [len(t) for t in saved["trials"]] == [3, 3]
        assert saved["trials"][0][0].model.tidy()["p_value"] == saved["trials"][0][0].stats.p_value

    def test_failed_save_leaves_no_artifact(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        design = dataclasses.replace(get_design("one-sample"), analyze=lambda data: _ModuleHoldingFit(data["dv"]))
        monkeypatch.setitem(pw.DESIGNS, "one-sample", design)
        with pytest.raises(TypeError):
            sw.main(["3", "--design", "one-sample", "--eff-steps", "2", "--save-all", "--quiet"])
        assert list(tmp_path.iterdir()) == []
