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
Posterior summaries of incidence and IFR (percentages).

Per draw t:
    overall incidence   100 Σ_j y_j / Σ_j n_j
    stratum incidence   100 y_j / n_j
    overall IFR         100 Σ_j D_j / Σ_j y_j
    stratum IFR         100 D_j / y_j

where D_j are the apportioned non-LTC deaths. An IFR with a zero denominator
is undefined for that draw and left out of the quantiles for that cell only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
import pandas as pd

from . import stats_utils
from .ifr_propagation import DeathsDrawSet
from .poststratification import InfectionDrawSet

OVERALL = "Overall"


def _quantile_label(q: float) -> str:
    if np.isclose(q, 0.5):
        return "median"
    return f"{100 * q:g}%"


@dataclass
class SummaryTables:
    incidence: pd.DataFrame
    ifr: pd.DataFrame | None = None
    notes: List[str] = field(default_factory=list)


class SummaryReducer:
    """Reduces per-draw quantities to a median and a credible interval."""

    def __init__(self, quantiles: Tuple[float, float, float] = (0.025, 0.5, 0.975)):
        quantiles = tuple(float(q) for q in quantiles)
        if any(not 0.0 <= q <= 1.0 for q in quantiles):
            raise ValueError(f"Quantiles must lie in [0, 1]; got {quantiles}.")
        # the median leads, then the interval bounds in increasing order
        self.quantiles = tuple(sorted(quantiles, key=lambda q: (not np.isclose(q, 0.5), q)))
        self.columns = [_quantile_label(q) for q in self.quantiles]

    def _table(self, draws: np.ndarray, rows: List[str]) -> pd.DataFrame:
        values = stats_utils.posterior_quantiles(draws, self.quantiles, axis=0)
        return pd.DataFrame(
            values.T, index=pd.Index(rows, name="stratum"), columns=self.columns
        )

    def incidence_table(self, infections: InfectionDrawSet) -> pd.DataFrame:
        draws = np.column_stack(
            [infections.overall_incidence(), infections.incidence()]
        )
        return self._table(draws, [OVERALL, *infections.strata])

    def ifr_draws(
        self, infections: InfectionDrawSet, deaths: DeathsDrawSet
    ) -> np.ndarray:
        """
        (T_kept, 1 + M) IFR per kept draw: overall first, then each stratum.

        Draws are matched by id; undefined cells are NaN.
        """
        order = pd.Index(deaths.draw_ids).get_indexer(infections.draw_ids)
        if np.any(order < 0):
            raise ValueError("Deaths draws do not cover every infection draw.")
        kept = deaths.kept[order]
        y = infections.counts[kept].astype(np.float64)
        non_ltc = deaths.non_ltc_deaths[order][kept].astype(np.float64)

        y_all = np.column_stack([y.sum(axis=1), y])
        d_all = np.column_stack([non_ltc.sum(axis=1), non_ltc])
        out = np.full_like(y_all, np.nan)
        np.divide(100.0 * d_all, y_all, out=out, where=y_all > 0)
        return out

    def ifr_table(
        self, infections: InfectionDrawSet, deaths: DeathsDrawSet
    ) -> pd.DataFrame:
        draws = self.ifr_draws(infections, deaths)
        table = self._table(draws, [OVERALL, *infections.strata])
        n_undefined = np.isnan(draws).sum(axis=0)
        table["n_draws"] = draws.shape[0] - n_undefined
        table["n_undefined"] = n_undefined
        table["undefined"] = table["n_draws"] == 0
        return table

    def reduce(
        self, infections: InfectionDrawSet, deaths: DeathsDrawSet | None = None
    ) -> SummaryTables:
        tables = SummaryTables(incidence=self.incidence_table(infections))
        if deaths is None:
            return tables

        tables.ifr = self.ifr_table(infections, deaths)
        if deaths.n_dropped:
            tables.notes.append(
                f"{deaths.n_dropped} of {deaths.n_draws} draws dropped after the "
                "deaths model failed to converge"
            )

        draws = self.ifr_draws(infections, deaths)
        strata_draws = draws[:, 1:]
        with_zero = int(np.isnan(strata_draws).any(axis=1).sum())
        if with_zero:
            tables.notes.append(
                f"{with_zero} draws had zero-infection strata; "
                "those cells were excluded"
            )
        if draws.shape[0] == 0:
            tables.notes.append("IFR undefined: no kept draws remain")
            return tables
        for stratum, row in tables.ifr.iloc[1:].iterrows():
            if row["undefined"]:
                tables.notes.append(
                    f"{stratum}: IFR undefined, no kept draw has infections"
                )
            elif row["n_undefined"]:
                tables.notes.append(
                    f"{stratum}: {int(row['n_undefined'])} draws excluded due to zero infections"
                )
        return tables
