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
Posterior checks that gate the mixture fit.

Both checks raise rather than warn: every downstream stage assumes the
mixture draws are a valid sample with stable class labels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import arviz as az
import numpy as np
import pandas as pd

from .errors import ConvergenceError, LabelSwitchingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticsConfig:
    """
    Thresholds for accepting a posterior sample.

    `label_tolerance_sd` is measured in prior standard deviations of the
    location level being checked.
    """

    r_hat_max: float = 1.05
    ess_bulk_min: float = 100.0
    max_divergence_fraction: float = 0.01
    label_tolerance_sd: float = 4.0


def _worst(values: np.ndarray, pick) -> float:
    values = np.asarray(values, dtype=np.float64).ravel()
    values = values[np.isfinite(values)]
    return float(pick(values)) if values.size else float("nan")


def convergence_table(idata: az.InferenceData, var_names: Sequence[str]) -> pd.DataFrame:
    """Worst split R-hat and bulk ESS over the elements of each variable."""
    var_names = list(var_names)
    rhat = az.rhat(idata, var_names=var_names)
    ess = az.ess(idata, var_names=var_names, method="bulk")
    rows = [
        dict(
            parameter=name,
            r_hat=_worst(rhat[name].values, np.max),
            ess_bulk=_worst(ess[name].values, np.min),
        )
        for name in var_names
    ]
    return pd.DataFrame(rows).set_index("parameter")


def check_convergence(
    idata: az.InferenceData,
    var_names: Sequence[str],
    config: DiagnosticsConfig,
    stage: str,
) -> pd.DataFrame:
    """
    Raise `ConvergenceError` naming every parameter that mixes poorly.

    Returns the per-parameter diagnostics table when all checks pass.
    """
    table = convergence_table(idata, var_names)
    poor = table.index[
        (table["r_hat"] > config.r_hat_max) | (table["ess_bulk"] < config.ess_bulk_min)
    ].tolist()
    if poor:
        logger.error("%s: poor mixing\n%s", stage, table.loc[poor].to_string())
        raise ConvergenceError(stage, poor, table)

    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        fraction = float(np.mean(idata.sample_stats["diverging"].values))
        if fraction > config.max_divergence_fraction:
            raise ConvergenceError(
                stage,
                [],
                table,
                reason=f"{fraction:.1%} divergent transitions",
            )

    logger.info(
        "%s: max R-hat %.3f, min bulk ESS %.0f",
        stage,
        table["r_hat"].max(),
        table["ess_bulk"].min(),
    )
    return table


def check_label_ordering(
    idata: az.InferenceData, axes: Iterable, config: DiagnosticsConfig
) -> None:
    """
    Compare each posterior location level with its prior mean.

    A level further than `label_tolerance_sd` prior sds from its prior mean,
    or medians out of order, means the components have traded places.
    """
    offenders = []
    details = []
    for axis in axes:
        name = f"loc_{axis.name}"
        medians = np.atleast_1d(
            idata.posterior[name].median(dim=("chain", "draw")).values
        )
        prior = np.asarray(axis.level_mu, dtype=np.float64)
        distance = np.abs(medians - prior) / axis.level_sd
        for level, d in enumerate(distance):
            if d > config.label_tolerance_sd:
                offenders.append(f"{name}[{level}]")
                details.append(
                    f"{name}[{level}] median {medians[level]:.2f} vs prior {prior[level]:.2f}"
                )
        if np.any(np.diff(medians) <= 0):
            offenders.append(name)
            details.append(f"{name} medians not increasing: {np.round(medians, 2)}")

    if offenders:
        raise LabelSwitchingError(offenders, "; ".join(details))
