"""Tests for the staged pipeline."""

from dataclasses import dataclass

import arviz as az
import numpy as np
import pymc as pm
import pytest

from conftest import FixedRateSampler
from seroifr.diagnostics import DiagnosticsConfig
from seroifr.ifr_propagation import PropagationConfig
from seroifr.pipeline import PipelineConfig, run_from_infections, run_pipeline
from seroifr.sampling import SamplingControls

import simulation


@dataclass(frozen=True)
class PriorSampler:
    """Stands in for NUTS by returning independent prior draws."""

    draws: int = 400

    def sample(self, model, controls, random_seed):
        prior = pm.sample_prior_predictive(self.draws, model=model, random_seed=random_seed)
        return az.InferenceData(posterior=prior.prior)


FAST = PipelineConfig(propagation=PropagationConfig(max_workers=1), seed=8)


class TestPipelineConfig:
    def test_stage_seeds_distinct_and_stable(self) -> None:
        seeds = PipelineConfig(seed=1).stage_seeds()
        assert len(set(seeds)) == 3
        assert seeds == PipelineConfig(seed=1).stage_seeds()
        assert seeds != PipelineConfig(seed=2).stage_seeds()


class TestRunFromInfections:
    def test_tables_and_deaths(self, strata, infections) -> None:
        result = run_from_infections(
            infections, strata, config=FAST, secondary_sampler=FixedRateSampler()
        )
        assert result.deaths is not None
        assert result.deaths.n_draws == infections.n_draws
        assert list(result.incidence.index) == ["Overall", *simulation.STRATA]
        assert list(result.ifr.index) == ["Overall", *simulation.STRATA]

    def test_without_deaths_skips_ifr(self, infections) -> None:
        result = run_from_infections(infections, simulation.census(with_deaths=False))
        assert result.deaths is None
        assert result.ifr is None


class TestRunPipeline:
    def test_ifr_requires_deaths(self, survey) -> None:
        with pytest.raises(ValueError, match="deaths"):
            run_pipeline(
                survey.participants,
                simulation.census(with_deaths=False),
                sampler=PriorSampler(),
            )

    def test_stages_hand_draws_forward(self, survey) -> None:
        result = run_pipeline(
            survey.participants,
            survey.strata,
            config=FAST,
            sampler=PriorSampler(),
            secondary_sampler=FixedRateSampler(),
        )
        assert result.posterior.n_draws == 400
        np.testing.assert_array_equal(result.infections.draw_ids, result.posterior.draw_ids)
        np.testing.assert_array_equal(result.deaths.draw_ids, result.infections.draw_ids)
        assert np.all(result.deaths.non_ltc_deaths <= survey.strata.deaths)
        assert result.ifr is not None

    def test_incidence_only(self, survey) -> None:
        result = run_pipeline(
            survey.participants,
            simulation.census(with_deaths=False),
            config=FAST,
            sampler=PriorSampler(),
            incidence_only=True,
        )
        assert result.deaths is None
        assert result.ifr is None
        assert result.incidence.shape == (5, 3)

    def test_same_seed_same_tables(self, survey) -> None:
        kwargs = dict(
            config=FAST, sampler=PriorSampler(), secondary_sampler=FixedRateSampler()
        )
        a = run_pipeline(survey.participants, survey.strata, **kwargs)
        b = run_pipeline(survey.participants, survey.strata, **kwargs)
        np.testing.assert_allclose(a.incidence.values, b.incidence.values)
        np.testing.assert_array_equal(a.deaths.non_ltc_deaths, b.deaths.non_ltc_deaths)


@pytest.mark.slow
class TestEndToEnd:
    def test_incidence_recovered(self) -> None:
        survey = simulation.simulate_survey(n_per_stratum=500, seed=30)
        config = PipelineConfig(
            sampling=SamplingControls(draws=500, tune=1000, chains=2),
            diagnostics=DiagnosticsConfig(ess_bulk_min=50),
            seed=30,
        )
        result = run_pipeline(
            survey.participants, survey.strata, config=config, incidence_only=True
        )
        table = result.incidence
        truth = 100 * simulation.INCIDENCE
        for label, value in zip(simulation.STRATA, truth):
            assert table.loc[label, "2.5%"] <= value <= table.loc[label, "97.5%"], label
        pooled = 100 * np.sum(simulation.POPULATION * simulation.INCIDENCE) / np.sum(
            simulation.POPULATION
        )
        assert table.loc["Overall", "2.5%"] <= pooled <= table.loc["Overall", "97.5%"]
