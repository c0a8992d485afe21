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
Cut propagation of infection uncertainty into deaths apportionment
==================================================================

Each outer draw y(t) of infections is handed to the deaths model as fixed data,
one short chain is run, and only its last draw is kept. Deaths never feed back
into the infection posterior.

Outer draws are independent tasks. They are grouped into chunks (one compiled
deaths model per chunk) and run on a bounded worker pool; results come back
keyed by draw id. Every seed is derived from (base seed, draw id, attempt), so
the output does not depend on chunking, worker count or completion order.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import (
    Executor,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    as_completed,
)
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

import numpy as np
import pandas as pd
from pymc.exceptions import SamplingError

from . import stats_utils
from .data import StratumTable
from .deaths_model import (
    DeathsModelConfig,
    apportion_deaths,
    build_deaths_model,
    sample_cut_draw,
)
from .errors import SamplingFailure, SecondaryConvergenceError
from .poststratification import InfectionDrawSet
from .sampling import PymcSampler, Sampler, SamplingControls, quiet_pymc

logger = logging.getLogger(__name__)

EXECUTORS = ("process", "thread")


def _short_chain() -> SamplingControls:
    return SamplingControls(draws=20, tune=200, chains=1, target_accept=0.95)


@dataclass(frozen=True)
class PropagationConfig:
    """
    Worker pool and failure tolerance for the per-draw deaths model.

    `max_workers=None` uses every available CPU; 1 runs inline.
    `max_attempts` counts the first run plus retries with fresh seeds.
    """

    max_workers: int | None = None
    executor: str = "process"
    chunks_per_worker: int = 4
    max_attempts: int = 3
    max_drop_fraction: float = 0.05
    controls: SamplingControls = field(default_factory=_short_chain)

    def __post_init__(self):
        if self.executor not in EXECUTORS:
            raise ValueError(f"executor must be one of {EXECUTORS}; got {self.executor!r}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        if self.chunks_per_worker < 1 or self.max_attempts < 1:
            raise ValueError("chunks_per_worker and max_attempts must be at least 1.")
        if not 0.0 <= self.max_drop_fraction <= 1.0:
            raise ValueError("max_drop_fraction must lie in [0, 1].")


# ---------------------------------------------------------------------
# (1) Results
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class DeathsDrawSet:
    """
    Apportioned deaths, one row per outer draw (aligned with the infections).

    Dropped draws keep their row: `kept` is False, counts are zero and the
    rates are NaN.
    """

    strata: Tuple[str, ...]
    draw_ids: np.ndarray  # (T,)
    non_ltc_deaths: np.ndarray  # (T, M)
    eta: np.ndarray  # (T, M)
    theta: np.ndarray  # (T, M)
    kept: np.ndarray  # (T,) bool
    attempts: np.ndarray  # (T,)
    deaths: np.ndarray  # (M,) observed totals
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def n_draws(self) -> int:
        return int(self.draw_ids.shape[0])

    @property
    def n_dropped(self) -> int:
        return int((~self.kept).sum())

    @property
    def dropped_draw_ids(self) -> np.ndarray:
        return self.draw_ids[~self.kept]

    def ltc_deaths(self) -> np.ndarray:
        """(T, M) deaths left to long-term care."""
        return np.where(self.kept[:, None], self.deaths - self.non_ltc_deaths, 0)

    def to_frame(self) -> pd.DataFrame:
        """Long format, kept draws only: one row per (draw, stratum)."""
        kept = self.kept
        T = int(kept.sum())
        M = len(self.strata)
        return pd.DataFrame(
            {
                "draw": np.repeat(self.draw_ids[kept], M),
                "stratum": np.tile(np.asarray(self.strata, dtype=object), T),
                "non_ltc_deaths": self.non_ltc_deaths[kept].ravel(),
                "ltc_deaths": self.ltc_deaths()[kept].ravel(),
                "eta": self.eta[kept].ravel(),
                "theta": self.theta[kept].ravel(),
            }
        )


@dataclass(frozen=True, eq=False)
class _DrawResult:
    draw_id: int
    attempts: int
    non_ltc_deaths: np.ndarray | None = None
    eta: np.ndarray | None = None
    theta: np.ndarray | None = None
    failure: str | None = None


# ---------------------------------------------------------------------
# (2) Worker side
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class _Chunk:
    """Everything a worker needs; pickled, so each worker owns a copy."""

    strata: StratumTable
    deaths_config: DeathsModelConfig
    controls: SamplingControls
    sampler: Sampler
    base_seed: int
    max_attempts: int
    draw_ids: np.ndarray
    counts: np.ndarray
    silence_pymc: bool = False


def _apportion_one(model, chunk: _Chunk, draw_id: int, infections: np.ndarray) -> _DrawResult:
    reason = None
    for attempt in range(chunk.max_attempts):
        seed = stats_utils.derive_seed(chunk.base_seed, draw_id, attempt)
        try:
            draw = sample_cut_draw(model, infections, chunk.sampler, chunk.controls, seed)
        except (SamplingFailure, SamplingError) as err:
            reason = str(err)
            logger.debug("draw %d attempt %d failed: %s", draw_id, attempt + 1, reason)
            continue

        rng = np.random.default_rng(
            stats_utils.derive_seed(chunk.base_seed, draw_id, attempt, 1)
        )
        non_ltc = apportion_deaths(infections, draw.eta, chunk.strata.deaths, rng)
        return _DrawResult(
            draw_id=draw_id,
            attempts=attempt + 1,
            non_ltc_deaths=non_ltc,
            eta=draw.eta,
            theta=draw.theta,
        )

    logger.warning(
        "draw %d dropped after %d attempt(s): %s", draw_id, chunk.max_attempts, reason
    )
    return _DrawResult(draw_id=draw_id, attempts=chunk.max_attempts, failure=reason)


def _apportion_chunk(chunk: _Chunk) -> List[_DrawResult]:
    if chunk.silence_pymc:
        # worker processes own their logging state
        logging.getLogger("pymc").setLevel(logging.ERROR)
    model = build_deaths_model(chunk.strata, chunk.deaths_config)
    return [
        _apportion_one(model, chunk, int(draw_id), counts)
        for draw_id, counts in zip(chunk.draw_ids, chunk.counts)
    ]


# ---------------------------------------------------------------------
# (3) Engine
# ---------------------------------------------------------------------


class IFRPropagationEngine:
    """Runs the deaths model once per outer infection draw."""

    def __init__(
        self,
        strata: StratumTable,
        deaths_config: DeathsModelConfig | None = None,
        config: PropagationConfig | None = None,
        sampler: Sampler | None = None,
        random_seed: int = 0,
    ):
        if not strata.has_deaths:
            raise ValueError("Deaths apportionment needs a stratum table with deaths.")
        self.strata = strata
        self.deaths_config = deaths_config or DeathsModelConfig()
        self.config = config or PropagationConfig()
        self.sampler = sampler or PymcSampler()
        self.random_seed = random_seed

    def n_workers(self, n_draws: int) -> int:
        workers = self.config.max_workers or os.cpu_count() or 1
        return max(1, min(workers, n_draws))

    def _chunks(self, infections: InfectionDrawSet, workers: int) -> List[_Chunk]:
        n_chunks = min(infections.n_draws, workers * self.config.chunks_per_worker)
        if workers == 1:
            n_chunks = 1
        rows = np.array_split(np.arange(infections.n_draws), n_chunks)
        return [
            _Chunk(
                strata=self.strata,
                deaths_config=self.deaths_config,
                controls=self.config.controls,
                sampler=self.sampler,
                base_seed=self.random_seed,
                max_attempts=self.config.max_attempts,
                draw_ids=infections.draw_ids[r],
                counts=infections.counts[r],
                silence_pymc=self.config.executor == "process",
            )
            for r in rows
            if r.size
        ]

    def _map(self, chunks: List[_Chunk], workers: int) -> Iterator[_DrawResult]:
        if workers == 1:
            for chunk in chunks:
                yield from _apportion_chunk(chunk)
            return

        pool_cls: type[Executor] = (
            ProcessPoolExecutor if self.config.executor == "process" else ThreadPoolExecutor
        )
        with pool_cls(max_workers=workers) as pool:
            futures = [pool.submit(_apportion_chunk, chunk) for chunk in chunks]
            for future in as_completed(futures):
                yield from future.result()

    def run(self, infections: InfectionDrawSet) -> DeathsDrawSet:
        """
        Apportion deaths for every outer draw.

        Raises
        ------
        SecondaryConvergenceError
            If the fraction of draws dropped after all attempts exceeds
            `max_drop_fraction`.
        """
        if tuple(infections.strata) != self.strata.strata:
            raise ValueError(
                f"Infection strata {infections.strata} do not match {self.strata.strata}."
            )

        T, M = infections.counts.shape
        if T == 0:
            raise ValueError("No infection draws to propagate.")
        workers = self.n_workers(T)
        chunks = self._chunks(infections, workers)
        logger.info(
            "Apportioning deaths for %d draws: %d chunk(s) on %d %s worker(s)",
            T,
            len(chunks),
            workers,
            self.config.executor if workers > 1 else "inline",
        )

        with quiet_pymc():
            results = {result.draw_id: result for result in self._map(chunks, workers)}

        non_ltc = np.zeros((T, M), dtype=np.int64)
        eta = np.full((T, M), np.nan)
        theta = np.full((T, M), np.nan)
        kept = np.zeros(T, dtype=bool)
        attempts = np.zeros(T, dtype=np.int64)
        failures = {}
        for row, draw_id in enumerate(infections.draw_ids):
            result = results[int(draw_id)]
            attempts[row] = result.attempts
            if result.failure is not None:
                failures[int(draw_id)] = result.failure
                continue
            kept[row] = True
            non_ltc[row] = result.non_ltc_deaths
            eta[row] = result.eta
            theta[row] = result.theta

        deaths = DeathsDrawSet(
            strata=infections.strata,
            draw_ids=np.array(infections.draw_ids, copy=True),
            non_ltc_deaths=non_ltc,
            eta=eta,
            theta=theta,
            kept=kept,
            attempts=attempts,
            deaths=np.asarray(self.strata.deaths, dtype=np.int64),
            failures=failures,
        )

        if deaths.n_dropped:
            logger.warning("%d of %d draws dropped", deaths.n_dropped, T)
        if deaths.n_dropped / T > self.config.max_drop_fraction:
            raise SecondaryConvergenceError(
                deaths.n_dropped, T, self.config.max_drop_fraction
            )
        return deaths
