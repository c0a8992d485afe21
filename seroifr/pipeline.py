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
End-to-end pipeline
===================

    participants + strata
        -> (1) titre mixture fit          PosteriorDrawSet
        -> (2) poststratification         InfectionDrawSet
        -> (3) cut deaths apportionment   DeathsDrawSet
        -> (4) quantile reduction         incidence / IFR tables

Stages only hand data forward; nothing downstream is fed back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
import pandas as pd

from .data import ParticipantDataset, StratumTable
from .deaths_model import DeathsModelConfig
from .diagnostics import DiagnosticsConfig
from .ifr_propagation import DeathsDrawSet, IFRPropagationEngine, PropagationConfig
from .mixture_model import MixtureConfig, PosteriorDrawSet, fit_mixture_model
from .poststratification import InfectionDrawSet, PoststratificationEngine
from .sampling import Sampler, SamplingControls
from .summary import SummaryReducer, SummaryTables

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Configuration of every stage plus the master seed.

    Each stage receives its own seed spawned from `seed`, so changing one
    stage's settings does not reshuffle the random numbers of the others.
    """

    mixture: MixtureConfig = field(default_factory=MixtureConfig)
    sampling: SamplingControls = field(default_factory=SamplingControls)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    deaths: DeathsModelConfig = field(default_factory=DeathsModelConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    quantiles: Tuple[float, float, float] = (0.025, 0.5, 0.975)
    seed: int = 20201

    def stage_seeds(self) -> Tuple[int, int, int]:
        """Seeds for the mixture fit, poststratification and apportionment."""
        children = np.random.SeedSequence(self.seed).spawn(3)
        return tuple(int(c.generate_state(1, dtype=np.uint32)[0]) for c in children)


@dataclass
class PipelineResult:
    infections: InfectionDrawSet
    tables: SummaryTables
    posterior: PosteriorDrawSet | None = None
    deaths: DeathsDrawSet | None = None

    @property
    def incidence(self) -> pd.DataFrame:
        return self.tables.incidence

    @property
    def ifr(self) -> pd.DataFrame | None:
        return self.tables.ifr

    @property
    def notes(self) -> List[str]:
        return self.tables.notes


def run_from_infections(
    infections: InfectionDrawSet,
    strata: StratumTable,
    config: PipelineConfig | None = None,
    secondary_sampler: Sampler | None = None,
    posterior: PosteriorDrawSet | None = None,
) -> PipelineResult:
    """
    Stages (3) and (4) for infection draws that are already realised.

    The deaths stage is skipped when `strata` carries no deaths.
    """
    cfg = config or PipelineConfig()
    _, _, apportion_seed = cfg.stage_seeds()
    reducer = SummaryReducer(cfg.quantiles)

    deaths = None
    if strata.has_deaths:
        logger.info("Stage 3/4: deaths apportionment")
        engine = IFRPropagationEngine(
            strata,
            deaths_config=cfg.deaths,
            config=cfg.propagation,
            sampler=secondary_sampler,
            random_seed=apportion_seed,
        )
        deaths = engine.run(infections)
    else:
        logger.info("Stage 3/4: skipped, no deaths supplied")

    logger.info("Stage 4/4: summarising %d draws", infections.n_draws)
    tables = reducer.reduce(infections, deaths)
    for note in tables.notes:
        logger.info("note: %s", note)
    return PipelineResult(
        infections=infections, tables=tables, posterior=posterior, deaths=deaths
    )


def run_pipeline(
    participants: ParticipantDataset,
    strata: StratumTable,
    config: PipelineConfig | None = None,
    sampler: Sampler | None = None,
    secondary_sampler: Sampler | None = None,
    incidence_only: bool = False,
) -> PipelineResult:
    """
    Run all stages.

    Parameters
    ----------
    participants : ParticipantDataset
    strata : StratumTable
        Must carry deaths unless `incidence_only` is set.
    config : PipelineConfig, optional
    sampler, secondary_sampler : Sampler, optional
        Engines for the mixture fit and the per-draw deaths model; both
        default to `PymcSampler`.
    incidence_only : bool
        Stop after poststratification.

    Raises
    ------
    ConvergenceError, LabelSwitchingError, SecondaryConvergenceError
        Fatal inference problems; see `seroifr.errors`.
    """
    cfg = config or PipelineConfig()
    if not incidence_only and not strata.has_deaths:
        raise ValueError("IFR estimation needs deaths; pass incidence_only=True to skip it.")
    mixture_seed, poststrat_seed, _ = cfg.stage_seeds()

    logger.info("Stage 1/4: titre mixture")
    posterior = fit_mixture_model(
        participants,
        strata,
        config=cfg.mixture,
        controls=cfg.sampling,
        sampler=sampler,
        diagnostics_config=cfg.diagnostics,
        random_seed=mixture_seed,
    )

    logger.info("Stage 2/4: poststratification")
    infections = PoststratificationEngine(strata, random_seed=poststrat_seed).run(
        posterior
    )

    if incidence_only:
        tables = SummaryReducer(cfg.quantiles).reduce(infections)
        return PipelineResult(infections=infections, tables=tables, posterior=posterior)

    return run_from_infections(
        infections,
        strata,
        config=cfg,
        secondary_sampler=secondary_sampler,
        posterior=posterior,
    )
