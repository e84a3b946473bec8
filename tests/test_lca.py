"""
Tests for Latent Class Analysis fitting on synthetic categorical responses.

The three_class_data fixture has a known three-class structure, so fits are
checked for recovery as well as for the probability and likelihood
invariants of the EM solution.

Run: pytest tests/test_lca.py -v
"""

import logging

import numpy as np
import pytest
from sklearn.metrics import adjusted_rand_score

from survey_segments.exceptions import ConvergenceError
from survey_segments.models.lca import (
    MIN_CLASS_SIZE,
    _reseed_classes,
    compute_classification_entropy,
    count_lca_parameters,
    encode_indicators,
    find_collapsed_classes,
    fit_lca,
    initialize_lca_parameters,
    lca_e_step,
    lca_m_step,
    lca_profiles_frame,
    predict_lca,
    validate_lca_data,
)
from survey_segments.utils import make_rng

from conftest import collapsing_start, make_class_responses, make_two_pattern_responses


@pytest.fixture
def fit3(three_class_data: np.ndarray) -> dict:
    """K=3 fit with 10 restarts."""
    return fit_lca(three_class_data, 3, n_init=10, rng=make_rng(42))


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidateData:
    """Tests for validate_lca_data()."""

    def test_infers_alphabet(self, three_class_data: np.ndarray) -> None:
        _, n_categories = validate_lca_data(three_class_data, 3)
        assert n_categories == 4

    def test_too_many_classes(self, three_class_data: np.ndarray) -> None:
        with pytest.raises(ValueError, match="smaller than the number of observations"):
            validate_lca_data(three_class_data[:5], 5)

    def test_constant_variable(self, three_class_data: np.ndarray) -> None:
        data = three_class_data.copy()
        data[:, 4] = 3
        with pytest.raises(ValueError, match="fewer than 2 observed levels"):
            validate_lca_data(data, 2)

    def test_code_out_of_range(self, three_class_data: np.ndarray) -> None:
        data = three_class_data.copy()
        data[0, 0] = 0
        with pytest.raises(ValueError, match="must lie in"):
            validate_lca_data(data, 2)

    def test_code_above_declared_alphabet(self, three_class_data: np.ndarray) -> None:
        with pytest.raises(ValueError, match="must lie in 1..3"):
            validate_lca_data(three_class_data, 2, n_categories=3)

    def test_non_integer_codes(self, three_class_data: np.ndarray) -> None:
        data = three_class_data.astype(float)
        data[0, 0] = 1.5
        with pytest.raises(ValueError, match="finite integers"):
            validate_lca_data(data, 2)


# ── EM steps ─────────────────────────────────────────────────────────────────


class TestEMSteps:
    """Tests for the E- and M-steps in isolation."""

    def test_indicators_one_hot(self, three_class_data: np.ndarray) -> None:
        ind = encode_indicators(three_class_data, 4)
        assert ind.shape == (100, 12, 4)
        np.testing.assert_array_equal(ind.sum(axis=2), 1.0)
        assert ind[0, 0, three_class_data[0, 0] - 1] == 1.0

    def test_initial_parameters_valid(self) -> None:
        class_probs, item_probs = initialize_lca_parameters(3, 12, 4, make_rng(0))
        assert item_probs.shape == (3, 12, 4)
        assert class_probs.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(item_probs.sum(axis=2), 1.0)

    def test_responsibilities_normalised(self, three_class_data: np.ndarray) -> None:
        ind = encode_indicators(three_class_data, 4)
        class_probs, item_probs = initialize_lca_parameters(3, 12, 4, make_rng(0))
        resp, ll = lca_e_step(ind, class_probs, item_probs, return_log_likelihood=True)
        assert resp.shape == (100, 3)
        np.testing.assert_allclose(resp.sum(axis=1), 1.0)
        assert np.isfinite(ll)
        assert ll < 0

    def test_m_step_weighted_frequencies(self) -> None:
        data = np.array([[1], [1], [2], [2]])
        ind = encode_indicators(data, 2)
        resp = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.5, 0.5]])
        class_probs, item_probs = lca_m_step(ind, resp)
        np.testing.assert_allclose(class_probs, [0.625, 0.375])
        # Class 0 mass: level 1 -> 2.0, level 2 -> 0.5
        np.testing.assert_allclose(item_probs[0, 0], [0.8, 0.2], atol=1e-8)
        # Class 1 mass: level 2 only
        np.testing.assert_allclose(item_probs[1, 0], [0.0, 1.0], atol=1e-8)

    def test_parameter_count(self) -> None:
        assert count_lca_parameters(3, 12, 4) == 2 + 3 * 12 * 3
        assert count_lca_parameters(1, 5, 2) == 5


# ── Fitting ──────────────────────────────────────────────────────────────────


class TestFitLCA:
    """Tests for fit_lca()."""

    def test_three_class_scenario_converges(self, fit3: dict) -> None:
        assert fit3["converged"]
        assert fit3["n_iter"] <= 1000
        assert fit3["class_proportions"].sum() == pytest.approx(1.0, abs=1e-6)

    def test_probability_vectors_valid(self, fit3: dict) -> None:
        assert fit3["class_probs"].sum() == pytest.approx(1.0)
        np.testing.assert_allclose(fit3["item_probs"].sum(axis=2), 1.0)
        assert (fit3["item_probs"] >= 0).all()
        np.testing.assert_allclose(fit3["responsibilities"].sum(axis=1), 1.0)

    def test_output_shapes(self, fit3: dict) -> None:
        assert fit3["item_probs"].shape == (3, 12, 4)
        assert fit3["responsibilities"].shape == (100, 3)
        assert fit3["assignments"].shape == (100,)
        assert fit3["restart_log_likelihoods"].shape == (10,)

    def test_information_criteria(self, fit3: dict) -> None:
        p = count_lca_parameters(3, 12, 4)
        ll = fit3["log_likelihood"]
        assert fit3["n_params"] == p
        assert fit3["aic"] == pytest.approx(-2 * ll + 2 * p)
        assert fit3["bic"] == pytest.approx(-2 * ll + p * np.log(100))

    def test_best_restart_dominates(self, fit3: dict) -> None:
        converged = fit3["restart_converged"]
        assert converged.any()
        assert converged.dtype == bool
        assert converged.shape == fit3["restart_log_likelihoods"].shape
        best_of_restarts = fit3["restart_log_likelihoods"][converged].max()
        assert fit3["log_likelihood"] >= best_of_restarts - 1e-9

    def test_recovers_known_classes(self, fit3: dict, three_class_labels: np.ndarray) -> None:
        assert adjusted_rand_score(three_class_labels, fit3["assignments"]) > 0.8

    def test_assignments_are_posterior_mode(self, fit3: dict) -> None:
        np.testing.assert_array_equal(
            fit3["assignments"], fit3["responsibilities"].argmax(axis=1)
        )

    def test_deterministic_with_same_generator(self, three_class_data: np.ndarray) -> None:
        a = fit_lca(three_class_data, 3, n_init=4, rng=make_rng(9))
        b = fit_lca(three_class_data, 3, n_init=4, rng=make_rng(9))
        np.testing.assert_array_equal(a["item_probs"], b["item_probs"])
        np.testing.assert_array_equal(a["class_probs"], b["class_probs"])
        assert a["aic"] == b["aic"]
        assert a["bic"] == b["bic"]

    def test_seed_argument_matches_generator(self, three_class_data: np.ndarray) -> None:
        a = fit_lca(three_class_data, 2, n_init=2, seed=5)
        b = fit_lca(three_class_data, 2, n_init=2, rng=make_rng(5))
        assert a["log_likelihood"] == b["log_likelihood"]

    def test_input_not_modified(self, three_class_data: np.ndarray) -> None:
        before = three_class_data.copy()
        fit_lca(three_class_data, 2, n_init=2, rng=make_rng(1))
        np.testing.assert_array_equal(three_class_data, before)

    def test_more_classes_fit_at_least_as_well(self, three_class_data: np.ndarray) -> None:
        one = fit_lca(three_class_data, 1, n_init=1, rng=make_rng(0))
        three = fit_lca(three_class_data, 3, n_init=5, rng=make_rng(0))
        assert three["log_likelihood"] > one["log_likelihood"]

    def test_entropy_bounds(self, fit3: dict) -> None:
        assert 0.0 <= fit3["entropy"] <= 1.0
        assert fit3["entropy"] > 0.8

    def test_single_class_entropy(self) -> None:
        assert compute_classification_entropy(np.ones((5, 1))) == 1.0

    def test_no_convergence_raises(self, three_class_data: np.ndarray) -> None:
        with pytest.raises(ConvergenceError) as exc:
            fit_lca(three_class_data, 3, max_iter=2, n_init=3, rng=make_rng(0))
        assert exc.value.n_restarts == 3
        assert "within 2 iterations" in str(exc.value)

    def test_single_iteration_cap_rejected(self, three_class_data: np.ndarray) -> None:
        # Convergence compares two iterations, so one can never suffice
        with pytest.raises(ValueError, match="max_iter must be at least 2"):
            fit_lca(three_class_data, 3, max_iter=1)

    def test_identical_responses_rejected(self, identical_data: np.ndarray) -> None:
        with pytest.raises(ValueError, match="fewer than 2 observed levels"):
            fit_lca(identical_data, 2, n_categories=4, rng=make_rng(0))

    def test_invalid_n_init(self, three_class_data: np.ndarray) -> None:
        with pytest.raises(ValueError, match="n_init"):
            fit_lca(three_class_data, 2, n_init=0)


# ── Seeded fits on held-out data ─────────────────────────────────────────────


class TestSeededFit:
    """Tests for fitting new data starting from an earlier solution."""

    def test_same_data_reproduces_partition(self, three_class_data: np.ndarray,
                                            fit3: dict) -> None:
        seeded = fit_lca(three_class_data, 3, n_init=1, rng=make_rng(1),
                         initial_item_probs=fit3["item_probs"])
        assert np.mean(seeded["assignments"] == fit3["assignments"]) > 0.95

    def test_held_out_classes_stay_aligned(self, fit3: dict) -> None:
        held_out, labels = make_class_responses(n_obs=60, seed=99)
        seeded = fit_lca(held_out, 3, n_init=1, rng=make_rng(1), n_categories=4,
                         initial_item_probs=fit3["item_probs"])
        expected = predict_lca(held_out, fit3)
        assert np.mean(seeded["assignments"] == expected) > 0.9
        assert adjusted_rand_score(labels, seeded["assignments"]) > 0.8

    def test_shape_mismatch(self, three_class_data: np.ndarray, fit3: dict) -> None:
        with pytest.raises(ValueError, match="initial_item_probs has shape"):
            fit_lca(three_class_data, 2, initial_item_probs=fit3["item_probs"])


# ── Degenerate classes ───────────────────────────────────────────────────────


class TestDegenerateClasses:
    """Tests for the collapsed-class reseed policy."""

    def test_reseed_restores_valid_parameters(self) -> None:
        class_probs = np.array([0.6, 0.4, 0.0])
        _, item_probs = initialize_lca_parameters(3, 5, 4, make_rng(0))
        new_class, new_items = _reseed_classes(class_probs, item_probs, np.array([2]), make_rng(1))
        assert new_class.sum() == pytest.approx(1.0)
        assert find_collapsed_classes(new_class, 100).size == 0
        np.testing.assert_allclose(new_items.sum(axis=2), 1.0)
        np.testing.assert_array_equal(new_items[:2], item_probs[:2])
        # Inputs untouched
        assert class_probs[2] == 0.0

    def test_fit_reports_degeneracy_flag(self, fit3: dict) -> None:
        assert fit3["degenerate"] is False
        assert fit3["n_reseeds"] >= 0

    def test_collapse_measured_in_respondents(self) -> None:
        # Shares well above zero can still hold less than one respondent
        priors = np.array([1.68e-02, 2.20e-06, 0.476, 7.40e-03, 6.58e-03, 0.493])
        assert find_collapsed_classes(priors, 100).tolist() == [1, 3, 4]
        assert find_collapsed_classes(priors, 1000).tolist() == [1]
        assert find_collapsed_classes(priors, 100, min_class_size=0.5).tolist() == [1]
        assert MIN_CLASS_SIZE == 1.0

    def test_unfillable_class_reseeded_then_flagged(self, caplog) -> None:
        data = make_two_pattern_responses()
        with caplog.at_level(logging.WARNING, logger="survey_segments.models.lca"):
            result = fit_lca(data, 3, n_init=1, rng=make_rng(0), n_categories=4,
                             initial_item_probs=collapsing_start())
        assert result["converged"]
        assert result["n_reseeds"] == 5
        assert result["degenerate"] is True
        assert find_collapsed_classes(result["class_probs"], 100).size >= 1
        counts = np.bincount(result["assignments"], minlength=3)
        assert counts.sum() == 100
        assert (counts == 0).any()
        assert "expected respondent" in caplog.text

    def test_reseed_budget_respected(self) -> None:
        data = make_two_pattern_responses()
        result = fit_lca(data, 3, n_init=1, rng=make_rng(0), n_categories=4,
                         initial_item_probs=collapsing_start(), max_reseeds=2)
        assert result["n_reseeds"] == 2
        assert result["degenerate"] is True

    def test_two_patterns_two_classes_healthy(self) -> None:
        result = fit_lca(make_two_pattern_responses(), 2, n_init=3, rng=make_rng(0),
                         n_categories=4)
        assert result["degenerate"] is False
        assert sorted(np.bincount(result["assignments"]).tolist()) == [50, 50]


# ── Post-processing ──────────────────────────────────────────────────────────


class TestPostProcessing:
    """Tests for predict_lca() and lca_profiles_frame()."""

    def test_predict_on_training_data(self, three_class_data: np.ndarray, fit3: dict) -> None:
        np.testing.assert_array_equal(predict_lca(three_class_data, fit3), fit3["assignments"])

    def test_predict_wrong_width(self, three_class_data: np.ndarray, fit3: dict) -> None:
        with pytest.raises(ValueError, match="response columns"):
            predict_lca(three_class_data[:, :5], fit3)

    def test_profiles_frame(self, fit3: dict) -> None:
        names = [f"Q{j}" for j in range(12)]
        profiles = lca_profiles_frame(fit3, names, ["a", "b", "c", "d"])
        assert len(profiles) == 3 * 12 * 4
        sums = profiles.groupby(["class", "variable"])["probability"].sum()
        np.testing.assert_allclose(sums.to_numpy(), 1.0)
        assert set(profiles["class"]) == {1, 2, 3}

    def test_profiles_frame_name_mismatch(self, fit3: dict) -> None:
        with pytest.raises(ValueError, match="do not match"):
            lca_profiles_frame(fit3, ["only_one"])
