# -----------------------------------------------------------------------------
# Copyright 2025 Down Syndrome Education International and contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# -----------------------------------------------------------------------------
"""
Deaths apportionment model
==========================

Infections y_j enter as data, never as parameters:

    d_j   ~ Poisson(y_j η_j + n2_j θ_j)        deaths in stratum j
    d_LTC ~ Poisson(Σ_j n2_j θ_j)              deaths in long-term care

η_j  IFR outside long-term care
θ_j  death rate inside long-term care
n2_j long-term care population

A stratum with y_j = 0 and n2_j = 0 has no rate that could produce its
deaths; that term is dropped from the likelihood and η_j follows its prior.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pymc as pm
import pytensor.tensor as pt

from .data import StratumTable
from .sampling import Sampler, SamplingControls


@dataclass(frozen=True)
class DeathsModelConfig:
    """
    Beta priors on the two death rates.

    Defaults are weakly informative: η has prior mean ~1%, θ ~9%.
    """

    eta_alpha: float = 1.0
    eta_beta: float = 99.0
    theta_alpha: float = 1.0
    theta_beta: float = 10.0

    def __post_init__(self):
        for name in ("eta_alpha", "eta_beta", "theta_alpha", "theta_beta"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive.")


@dataclass(frozen=True, eq=False)
class CutDraw:
    """One draw of the rates given one fixed infection vector."""

    eta: np.ndarray  # (M,)
    theta: np.ndarray  # (M,)


def build_deaths_model(
    strata: StratumTable, config: DeathsModelConfig | None = None
) -> pm.Model:
    """
    Build the apportionment model with infections as a data container.

    Set the infections of each outer draw with `pm.set_data` (see
    `sample_cut_draw`) so one compiled model serves many draws.
    """
    cfg = config or DeathsModelConfig()
    if not strata.has_deaths:
        raise ValueError("The stratum table carries no deaths.")
    if strata.ltc_deaths > 0 and strata.ltc_population.sum() == 0:
        raise ValueError("LTC deaths were reported but the LTC population is empty.")

    ltc_population = np.asarray(strata.ltc_population, dtype=np.float64)
    observed_deaths = np.asarray(strata.deaths, dtype=np.float64)

    with pm.Model(coords={"stratum": np.array(strata.strata, dtype=str)}) as model:
        infections = pm.Data(
            "infections",
            np.zeros(strata.n_strata, dtype=np.float64),
            dims=("stratum",),
        )

        eta = pm.Beta("eta", cfg.eta_alpha, cfg.eta_beta, dims=("stratum",))
        theta = pm.Beta("theta", cfg.theta_alpha, cfg.theta_beta, dims=("stratum",))

        ltc_expected = ltc_population * theta
        # a stratum with no infections and no LTC residents cannot explain its
        # deaths; its term is held constant so eta stays prior-only there
        informative = pt.or_(pt.gt(infections, 0), ltc_population > 0)
        pm.Poisson(
            "deaths",
            mu=pt.switch(
                informative, infections * eta + ltc_expected, observed_deaths
            ),
            observed=strata.deaths,
            dims=("stratum",),
        )
        pm.Poisson("ltc_deaths", mu=pt.sum(ltc_expected), observed=strata.ltc_deaths)

    return model


def sample_cut_draw(
    model: pm.Model,
    infections: np.ndarray,
    sampler: Sampler,
    controls: SamplingControls,
    random_seed: int,
) -> CutDraw:
    """Condition on one infection vector and return a single posterior draw."""
    pm.set_data({"infections": np.asarray(infections, dtype=np.float64)}, model=model)
    values = sampler.sample_last(model, ["eta", "theta"], controls, random_seed)
    return CutDraw(eta=values["eta"], theta=values["theta"])


def apportion_deaths(
    infections: np.ndarray,
    eta: np.ndarray,
    deaths: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Non-LTC deaths ~ Binomial(y_j, η_j), capped at the observed d_j.

    The cap keeps the apportioned count within the deaths actually reported.
    """
    drawn = rng.binomial(np.asarray(infections, dtype=np.int64), np.clip(eta, 0.0, 1.0))
    return np.minimum(drawn, np.asarray(deaths, dtype=np.int64))
