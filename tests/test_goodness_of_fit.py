"""
Tests for occupancy_pipeline/goodness_of_fit.py.

Checks the MacKenzie-Bailey statistic against a hand computation, the
handling of missing-occasion cohorts, bootstrap bookkeeping when refits
fail, seed reproducibility and the trivial all-zero scenario.
"""

import numpy as np
import pytest

from conftest import make_histories, simulate_history_matrix
from occupancy_pipeline import goodness_of_fit as gof_module
from occupancy_pipeline.exceptions import FitNonConvergence
from occupancy_pipeline.goodness_of_fit import history_chisq, mb_chisq, mb_gof_test
from occupancy_pipeline.occupancy_model import ModelFormula, fit_occupancy_model


@pytest.fixture
def small_fit():
    h = make_histories(simulate_history_matrix(30, 3, psi=0.6, p=0.5, seed=2))
    return fit_occupancy_model(h, ModelFormula()), h


class TestStatistic:

    def test_hand_computation(self):
        # One site per history 00, 01, 10, 11 with psi = p = 0.5:
        # expected counts 2.5, 0.5, 0.5, 0.5
        y = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=float)
        chi = history_chisq(y, np.full(4, 0.5), np.full((4, 2), 0.5))
        assert chi == pytest.approx(1.5 ** 2 / 2.5 + 3 * 0.5 ** 2 / 0.5)

    def test_cohorts_sum(self):
        """Sites with different missing occasions are scored separately."""
        full = np.array([[0, 0], [1, 1]], dtype=float)
        partial = np.array([[1, np.nan], [0, np.nan]], dtype=float)
        psi = np.full(2, 0.7)
        p_full = np.full((2, 2), 0.4)

        combined = history_chisq(np.vstack([full, partial]), np.full(4, 0.7),
                                 np.vstack([p_full, p_full]))
        separate = (history_chisq(full, psi, p_full)
                    + history_chisq(partial[:, :1], psi, p_full[:, :1]))
        assert combined == pytest.approx(separate)

    def test_perfect_fit_is_zero(self):
        # Expected counts equal observed: 4 sites, psi = 1, p = 0.5, K = 2
        y = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=float)
        assert history_chisq(y, np.ones(4), np.full((4, 2), 0.5)) == pytest.approx(0.0)

    def test_nonnegative(self, small_fit):
        fit, h = small_fit
        assert mb_chisq(fit, h) >= 0


class TestBootstrap:

    def test_forced_refit_failures(self, small_fit, monkeypatch):
        fit, h = small_fit
        real_fit = gof_module.fit_occupancy_model
        calls = {"n": 0}

        def failing_fit(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] <= 3:
                raise FitNonConvergence("forced")
            return real_fit(*args, **kwargs)

        monkeypatch.setattr(gof_module, "fit_occupancy_model", failing_fit)
        result = mb_gof_test(fit, h, n_boot=1000, seed=1)

        assert result.n_boot_requested == 1000
        assert result.n_boot_effective == 997
        assert len(result.bootstrap) == 997
        assert not result.low_confidence
        expected_p = np.mean(result.bootstrap >= result.chi_square)
        assert result.p_value == pytest.approx(expected_p)
        assert result.c_hat == pytest.approx(result.chi_square / result.bootstrap.mean())

    def test_low_confidence_flag(self, small_fit, monkeypatch):
        fit, h = small_fit
        real_fit = gof_module.fit_occupancy_model
        calls = {"n": 0}

        def failing_fit(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] <= 3:
                raise FitNonConvergence("forced")
            return real_fit(*args, **kwargs)

        monkeypatch.setattr(gof_module, "fit_occupancy_model", failing_fit)
        result = mb_gof_test(fit, h, n_boot=20, seed=1)
        assert result.n_boot_effective == 17
        assert result.low_confidence

    def test_all_refits_fail(self, small_fit, monkeypatch):
        fit, h = small_fit

        def always_fail(*args, **kwargs):
            raise FitNonConvergence("forced")

        monkeypatch.setattr(gof_module, "fit_occupancy_model", always_fail)
        result = mb_gof_test(fit, h, n_boot=5)
        assert result.n_boot_effective == 0
        assert np.isnan(result.p_value)
        assert result.low_confidence

    def test_seed_reproducible(self, small_fit):
        fit, h = small_fit
        a = mb_gof_test(fit, h, n_boot=25, seed=9)
        b = mb_gof_test(fit, h, n_boot=25, seed=9)
        np.testing.assert_array_equal(a.bootstrap, b.bootstrap)
        assert a.p_value == b.p_value

    def test_well_specified_model_not_rejected(self, small_fit):
        fit, h = small_fit
        result = mb_gof_test(fit, h, n_boot=100, seed=4)
        assert 0.0 <= result.p_value <= 1.0
        assert result.p_value > 0.01
        assert result.c_hat > 0

    def test_all_zero_detections_fit_well(self, all_zero_histories):
        fit = fit_occupancy_model(all_zero_histories, ModelFormula())
        result = mb_gof_test(fit, all_zero_histories, n_boot=50, seed=3)
        assert result.p_value > 0.5
        assert result.n_boot_effective == 50

    def test_identical_simulation_ties_exactly(self, small_fit, monkeypatch):
        fit, h = small_fit
        monkeypatch.setattr(gof_module, "simulate_detections", lambda f, hist, rng: hist.y.copy())
        result = mb_gof_test(fit, h, n_boot=10, seed=3)
        assert (result.bootstrap == result.chi_square).all()
        assert result.p_value == 1.0

    def test_default_p_value_is_plain_count(self, small_fit):
        fit, h = small_fit
        result = mb_gof_test(fit, h, n_boot=40, seed=5)
        assert result.p_value == np.mean(result.bootstrap >= result.chi_square)

    def test_tie_tolerance_widens_count(self, small_fit):
        fit, h = small_fit
        plain = mb_gof_test(fit, h, n_boot=40, seed=5)
        wide = mb_gof_test(fit, h, n_boot=40, seed=5, tie_tolerance=plain.chi_square)
        np.testing.assert_array_equal(plain.bootstrap, wide.bootstrap)
        assert wide.p_value == 1.0
        assert plain.p_value <= wide.p_value

    def test_invalid_n_boot(self, small_fit):
        fit, h = small_fit
        with pytest.raises(ValueError, match="n_boot"):
            mb_gof_test(fit, h, n_boot=0)

    def test_to_dict(self, small_fit):
        fit, h = small_fit
        d = mb_gof_test(fit, h, n_boot=5).to_dict()
        assert set(d) == {"species", "formula", "chi_square", "p_value", "c_hat",
                          "n_boot_requested", "n_boot_effective", "low_confidence"}
        assert d["formula"] == "p(.) psi(.)"
