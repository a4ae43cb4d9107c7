"""
Tests for occupancy_pipeline/model_averaging.py.

Uses hand-built fitted models with known AICc values so that top-set
membership, Akaike weights, full-average shrinkage, unconditional SEs
and relative importance can be checked exactly.
"""

import numpy as np
import pandas as pd
import pytest

from conftest import make_histories
from occupancy_pipeline.dredge import DredgeEntry, ModelSet, dredge, rank_entries
from occupancy_pipeline.exceptions import UnfittableSpecies
from occupancy_pipeline.model_averaging import (
    ESTIMATE_COLUMNS,
    average_models,
    select_top_set,
)
from occupancy_pipeline.occupancy_model import FittedModel, ModelFormula
from occupancy_pipeline.schemas import EstimateSchema

GLOBAL = ModelFormula(detection=("w",), occupancy=("x", "z"))


def fitted(occupancy, coefs, ses, aicc):
    """FittedModel with the given coefficients, diagonal vcov and AICc."""
    formula = ModelFormula(detection=("w",), occupancy=occupancy)
    coef = pd.Series(coefs, index=formula.coefficient_names, dtype=float)
    return FittedModel(
        formula=formula,
        coef=coef,
        vcov=np.diag(np.square(ses)),
        log_likelihood=-aicc / 2,
        k=formula.n_params,
        n_sites=100,
        aicc=aicc,
    )


def model_set(models, failed=()):
    entries = [DredgeEntry(formula=m.formula, model=m) for m in models]
    entries += [DredgeEntry(formula=f, error="forced") for f in failed]
    return ModelSet(species="Test species", analysis="full",
                    global_formula=GLOBAL, entries=tuple(rank_entries(entries)))


@pytest.fixture
def three_models():
    """Two models within 4 AICc units and one far outside."""
    a = fitted(("x",), [0.5, 1.0, 0.1, 0.3], [0.1, 0.2, 0.1, 0.1], 100.0)
    b = fitted((), [0.4, 0.2, 0.3], [0.1, 0.1, 0.1], 101.0)
    c = fitted(("x", "z"), [0.3, 2.0, -1.0, 0.2, 0.3], [0.1] * 5, 110.0)
    return a, b, c


class TestTopSet:

    def test_membership_threshold(self, three_models):
        top = select_top_set(model_set(three_models))
        assert [e.formula.occupancy for e, _ in top] == [("x",), ()]
        assert top[0][1] == 0.0
        assert top[1][1] == pytest.approx(1.0)

    def test_threshold_is_strict(self, three_models):
        a, b, _ = three_models
        top = select_top_set(model_set([a, b]), threshold=1.0)
        assert len(top) == 1

    def test_failed_entries_ignored(self, three_models):
        a, b, _ = three_models
        ms = model_set([a, b], failed=[ModelFormula(detection=("w",), occupancy=("z",))])
        assert len(select_top_set(ms)) == 2

    def test_all_failed_raises(self):
        ms = model_set([], failed=[ModelFormula(), ModelFormula(occupancy=("x",))])
        with pytest.raises(UnfittableSpecies, match="converged"):
            select_top_set(ms)

    def test_undefined_aicc_reported_separately(self):
        """Converged fits on too few sites are not reported as non-convergent."""
        a = fitted(("x",), [0.5, 1.0, 0.1, 0.3], [0.1] * 4, np.inf)
        b = fitted((), [0.4, 0.2, 0.3], [0.1] * 3, np.inf)
        with pytest.raises(UnfittableSpecies, match="AICc undefined for all 2") as info:
            select_top_set(model_set([a, b]))
        assert "did not converge" not in str(info.value)
        assert "None of" not in str(info.value)

    def test_too_few_sites_for_aicc(self):
        h = make_histories(np.array([[1, 0, 1, 0, 0], [0, 1, 0, 0, 1], [0, 0, 0, 0, 0]], dtype=float))
        result = dredge(h, ModelFormula())
        assert result.best is not None
        assert np.isinf(result.best.aicc)
        with pytest.raises(UnfittableSpecies, match="3 sites is too few"):
            average_models(result)


class TestAveraging:

    def test_weights_over_top_set(self, three_models):
        result = average_models(model_set(three_models))
        w_a = 1 / (1 + np.exp(-0.5))
        assert result.averaged
        assert result.n_top == 2
        assert result.weights[0] == pytest.approx(w_a)
        assert sum(result.weights) == pytest.approx(1.0)

    def test_full_average_shrinks_absent_terms(self, three_models):
        result = average_models(model_set(three_models))
        w_a = 1 / (1 + np.exp(-0.5))
        coefs = result.coefficients
        assert coefs["psi(x)"] == pytest.approx(w_a * 1.0)
        assert 0.0 < coefs["psi(x)"] < 1.0
        assert coefs["psi(Int)"] == pytest.approx(w_a * 0.5 + (1 - w_a) * 0.4)
        # z only appears in a model outside the top set
        assert "psi(z)" not in coefs.index

    def test_unconditional_se(self, three_models):
        result = average_models(model_set(three_models))
        w_a = 1 / (1 + np.exp(-0.5))
        b_avg = w_a * 1.0
        expected = w_a * np.sqrt(0.2 ** 2 + (1.0 - b_avg) ** 2) + (1 - w_a) * abs(0.0 - b_avg)
        row = result.table.set_index("coefficient").loc["psi(x)"]
        assert row["se"] == pytest.approx(expected)
        assert row["ci_lower"] == pytest.approx(b_avg - 1.959964 * expected, rel=1e-5)

    def test_importance(self, three_models):
        result = average_models(model_set(three_models))
        w_a = 1 / (1 + np.exp(-0.5))
        importance = result.importance_table().set_index("coefficient")
        assert importance.loc["psi(x)", "importance"] == pytest.approx(w_a)
        assert importance.loc["p(w)", "importance"] == pytest.approx(1.0)
        assert importance.loc["psi(x)", "n_models"] == 1
        assert "psi(Int)" not in importance.index

    def test_single_model_passes_through(self, three_models):
        a, _, c = three_models
        result = average_models(model_set([a, c]))
        assert not result.averaged
        assert result.n_top == 1
        pd.testing.assert_series_equal(
            result.coefficients, a.coef, check_names=False,
        )
        assert result.table["importance"].isna().all()
        assert (result.table["n_models"] == 1).all()

    def test_same_shape_both_branches(self, three_models):
        a, b, c = three_models
        single = average_models(model_set([a, c]))
        multi = average_models(model_set([a, b, c]))
        assert list(single.table.columns) == ESTIMATE_COLUMNS
        assert list(multi.table.columns) == ESTIMATE_COLUMNS
        EstimateSchema.validate(single.table)
        EstimateSchema.validate(multi.table)

    def test_blocks(self, three_models):
        result = average_models(model_set(three_models))
        assert list(result.block("state")["coefficient"]) == ["psi(Int)", "psi(x)"]
        assert list(result.block("det")["coefficient"]) == ["p(Int)", "p(w)"]
