"""Shared fixtures and fakes for the test suite."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

import numpy as np
import pytest

from seroifr.errors import SamplingFailure
from seroifr.poststratification import InfectionDrawSet

import simulation


def pytest_addoption(parser):
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run full MCMC tests"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --runslow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ---------------------------------------------------------------------
# Fake engines for the per-draw deaths model
# ---------------------------------------------------------------------


def _n_strata(model) -> int:
    return len(model.coords["stratum"])


@dataclass(frozen=True)
class FixedRateSampler:
    """Returns constant rates without running MCMC."""

    eta: float = 0.004
    theta: float = 0.08

    def sample_last(self, model, var_names, controls, random_seed):
        M = _n_strata(model)
        return {"eta": np.full(M, self.eta), "theta": np.full(M, self.theta)}


@dataclass(frozen=True)
class SeededRateSampler:
    """Rates depend only on the seed, like a real chain would."""

    def sample_last(self, model, var_names, controls, random_seed):
        rng = np.random.default_rng(random_seed)
        M = _n_strata(model)
        return {
            "eta": rng.uniform(0.001, 0.01, M),
            "theta": rng.uniform(0.01, 0.1, M),
        }


@dataclass
class FlakySampler:
    """Fails the first `failures` calls for each distinct infection vector."""

    failures: int = 1
    calls: Counter = field(default_factory=Counter)

    def sample_last(self, model, var_names, controls, random_seed):
        key = tuple(np.asarray(model["infections"].get_value()).tolist())
        self.calls[key] += 1
        if self.calls[key] <= self.failures:
            raise SamplingFailure("divergent transitions after warm-up")
        M = _n_strata(model)
        return {"eta": np.full(M, 0.004), "theta": np.full(M, 0.08)}


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------


@pytest.fixture
def strata():
    return simulation.census()


@pytest.fixture
def infections(strata) -> InfectionDrawSet:
    """Infection draws scattered around the true incidences."""
    rng = np.random.default_rng(7)
    p = np.clip(
        simulation.INCIDENCE + rng.normal(0.0, 0.005, (40, len(simulation.STRATA))),
        0.0,
        1.0,
    )
    counts = rng.binomial(strata.population, p)
    return InfectionDrawSet(
        strata=strata.strata,
        draw_ids=np.arange(40),
        counts=counts,
        population=strata.population,
    )


@pytest.fixture
def survey():
    return simulation.simulate_survey(n_per_stratum=60, seed=3)
