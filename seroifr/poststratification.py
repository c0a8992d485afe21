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
Poststratification
==================

For every posterior draw t and census stratum j:
    p_j(t) = logistic(x_j·β(t))
    Y_j(t) ~ Binomial(n_j, p_j(t))

Counts rather than expected values are kept because the deaths apportionment
model takes integer infections as data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

from . import stats_utils
from .data import StratumTable, design_columns

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class InfectionDrawSet:
    """
    Realised infections, one row per posterior draw.

    Attributes
    ----------
    strata : tuple of str
    draw_ids : (T,) int
        Identity of each row; rows may be in any order.
    counts : (T, M) int
        Infections per draw and stratum.
    population : (M,) int
        Census population per stratum.
    """

    strata: Tuple[str, ...]
    draw_ids: np.ndarray
    counts: np.ndarray
    population: np.ndarray

    def __post_init__(self):
        counts = np.asarray(self.counts)
        if counts.ndim != 2 or counts.shape[1] != len(self.strata):
            raise ValueError(
                f"counts: expected shape (T, {len(self.strata)}), got {counts.shape}."
            )
        if np.shape(self.draw_ids) != (counts.shape[0],):
            raise ValueError("draw_ids must have one entry per row of counts.")
        if len(np.unique(self.draw_ids)) != len(self.draw_ids):
            raise ValueError("draw_ids must be unique.")
        if np.any(counts < 0) or np.any(counts > np.asarray(self.population)):
            raise ValueError("Infection counts must lie within [0, population].")

    @property
    def n_draws(self) -> int:
        return int(self.counts.shape[0])

    def totals(self) -> np.ndarray:
        """(T,) infections summed over strata."""
        return self.counts.sum(axis=1)

    def incidence(self) -> np.ndarray:
        """(T, M) percentage of each stratum infected."""
        return 100.0 * self.counts / self.population

    def overall_incidence(self) -> np.ndarray:
        """(T,) percentage of the whole census population infected."""
        return 100.0 * self.totals() / self.population.sum()

    def take(self, order: np.ndarray) -> "InfectionDrawSet":
        """Rows in a new order (draw ids travel with their rows)."""
        order = np.asarray(order)
        return InfectionDrawSet(
            strata=self.strata,
            draw_ids=self.draw_ids[order],
            counts=self.counts[order],
            population=self.population,
        )

    def to_frame(self) -> pd.DataFrame:
        """Long format: one row per (draw, stratum)."""
        T, M = self.counts.shape
        return pd.DataFrame(
            {
                "draw": np.repeat(self.draw_ids, M),
                "stratum": np.tile(np.asarray(self.strata, dtype=object), T),
                "infections": self.counts.ravel(),
                "population": np.tile(self.population, T),
            }
        )


class PoststratificationEngine:
    """Projects regression draws onto the census strata."""

    def __init__(self, strata: StratumTable, random_seed: int = 0):
        self.strata = strata
        self.design = strata.design_matrix()
        self.random_seed = random_seed

    def probabilities(self, beta: np.ndarray) -> np.ndarray:
        """(T, M) infection probability per draw and stratum."""
        beta = np.atleast_2d(np.asarray(beta, dtype=np.float64))
        if beta.shape[1] != self.design.shape[1]:
            raise ValueError(
                f"beta has {beta.shape[1]} coefficient(s); the census design has "
                f"{self.design.shape[1]}."
            )
        return stats_utils.expit(beta @ self.design.T)

    def project(
        self, beta: np.ndarray, draw_ids: np.ndarray | None = None
    ) -> InfectionDrawSet:
        """
        Realise infection counts for each row of `beta`.

        Parameters
        ----------
        beta : (T, P) float
            Regression coefficient draws.
        draw_ids : (T,) int, optional
            Defaults to 0..T-1.
        """
        p = self.probabilities(beta)
        rng = np.random.default_rng(self.random_seed)
        counts = rng.binomial(self.strata.population[None, :], p).astype(np.int64)
        if draw_ids is None:
            draw_ids = np.arange(counts.shape[0])

        infections = InfectionDrawSet(
            strata=self.strata.strata,
            draw_ids=np.asarray(draw_ids, dtype=np.int64),
            counts=counts,
            population=np.asarray(self.strata.population, dtype=np.int64),
        )
        logger.info(
            "Poststratified %d draws over %d strata; median overall incidence %.2f%%",
            infections.n_draws,
            len(infections.strata),
            float(np.median(infections.overall_incidence())),
        )
        return infections

    def run(self, posterior) -> InfectionDrawSet:
        """Project the β draws of a `PosteriorDrawSet`."""
        expected = design_columns(self.strata.strata, self.strata.covariate_names)
        if list(posterior.covariate_names) != expected:
            raise ValueError(
                "Posterior regression coefficients do not match the census design."
            )
        return self.project(posterior.beta(), posterior.draw_ids)
