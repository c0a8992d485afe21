"""Tests for projecting regression draws onto census strata."""

import numpy as np
import pytest
from scipy.special import logit

from seroifr.poststratification import InfectionDrawSet, PoststratificationEngine

import simulation


def _true_beta() -> np.ndarray:
    """Treatment-coded coefficients reproducing the true incidences."""
    logits = logit(simulation.INCIDENCE)
    return np.concatenate([[logits[0]], logits[1:] - logits[0]])


class TestPoststratificationEngine:
    @pytest.fixture
    def engine(self, strata) -> PoststratificationEngine:
        return PoststratificationEngine(strata, random_seed=11)

    @pytest.fixture
    def beta(self) -> np.ndarray:
        rng = np.random.default_rng(0)
        return _true_beta() + rng.normal(0.0, 0.05, (200, 4))

    def test_probabilities_match_regression(self, engine) -> None:
        p = engine.probabilities(_true_beta())
        np.testing.assert_allclose(p[0], simulation.INCIDENCE)

    def test_counts_within_population(self, engine, beta) -> None:
        infections = engine.project(beta)
        assert infections.counts.shape == (200, 4)
        assert np.all(infections.counts >= 0)
        assert np.all(infections.counts <= simulation.POPULATION)

    def test_totals_conserve_counts(self, engine, beta) -> None:
        infections = engine.project(beta)
        np.testing.assert_array_equal(infections.totals(), infections.counts.sum(axis=1))
        np.testing.assert_allclose(
            infections.overall_incidence(),
            100.0 * infections.totals() / simulation.POPULATION.sum(),
        )

    def test_incidence_near_truth(self, engine) -> None:
        infections = engine.project(np.tile(_true_beta(), (50, 1)))
        np.testing.assert_allclose(
            infections.incidence().mean(axis=0), 100 * simulation.INCIDENCE, rtol=5e-3
        )

    def test_extreme_probabilities(self, engine) -> None:
        beta = np.array([[-50.0, 0.0, 0.0, 0.0], [50.0, 0.0, 0.0, 0.0]])
        infections = engine.project(beta)
        np.testing.assert_array_equal(infections.counts[0], 0)
        np.testing.assert_array_equal(infections.counts[1], simulation.POPULATION)

    def test_seed_reproduces(self, strata, beta) -> None:
        a = PoststratificationEngine(strata, random_seed=5).project(beta)
        b = PoststratificationEngine(strata, random_seed=5).project(beta)
        np.testing.assert_array_equal(a.counts, b.counts)

    def test_coefficient_count_checked(self, engine) -> None:
        with pytest.raises(ValueError, match="coefficient"):
            engine.probabilities(np.zeros((3, 2)))


class TestInfectionDrawSet:
    def test_out_of_range_counts_rejected(self) -> None:
        with pytest.raises(ValueError, match="within"):
            InfectionDrawSet(
                strata=("a", "b"),
                draw_ids=np.arange(1),
                counts=np.array([[5, 11]]),
                population=np.array([10, 10]),
            )

    def test_take_keeps_ids_with_rows(self, infections) -> None:
        order = np.arange(infections.n_draws)[::-1]
        reordered = infections.take(order)
        np.testing.assert_array_equal(reordered.draw_ids, infections.draw_ids[::-1])
        np.testing.assert_array_equal(reordered.counts[0], infections.counts[-1])

    def test_to_frame_long_format(self, infections) -> None:
        frame = infections.to_frame()
        assert len(frame) == infections.n_draws * 4
        assert frame.groupby("draw")["infections"].sum().tolist() == infections.totals().tolist()
