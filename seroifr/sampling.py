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
Boundary to the MCMC engine.

The sampler holds no random state: every call receives its own seed, so two
calls with the same model, controls and seed return the same draws.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Iterator, Protocol, Sequence

import arviz as az
import numpy as np
import pymc as pm

from .errors import SamplingFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingControls:
    """
    Draw and chain controls for one sampler invocation.

    `draws` counts retained draws per chain, after `tune` warm-up iterations.
    """

    draws: int = 1000
    tune: int = 1000
    chains: int = 4
    cores: int | None = None
    target_accept: float = 0.9

    def __post_init__(self):
        if self.draws < 1 or self.tune < 0 or self.chains < 1:
            raise ValueError(
                f"Invalid sampling controls: draws={self.draws}, "
                f"tune={self.tune}, chains={self.chains}"
            )
        if not 0.0 < self.target_accept < 1.0:
            raise ValueError("target_accept must lie in (0, 1).")


class Sampler(Protocol):
    def sample(
        self, model: pm.Model, controls: SamplingControls, random_seed: int
    ) -> az.InferenceData: ...

    def sample_last(
        self,
        model: pm.Model,
        var_names: Sequence[str],
        controls: SamplingControls,
        random_seed: int,
    ) -> dict[str, np.ndarray]: ...


@contextlib.contextmanager
def quiet_pymc(level: int = logging.ERROR) -> Iterator[None]:
    """Temporarily raise the PyMC log level (per-draw runs are chatty)."""
    pymc_logger = logging.getLogger("pymc")
    previous = pymc_logger.level
    pymc_logger.setLevel(level)
    try:
        yield
    finally:
        pymc_logger.setLevel(previous)


@dataclass(frozen=True)
class PymcSampler:
    """NUTS via `pm.sample`."""

    progressbar: bool = False

    def sample(
        self, model: pm.Model, controls: SamplingControls, random_seed: int
    ) -> az.InferenceData:
        logger.info(
            "Sampling %d chain(s) x %d draws (%d tune)",
            controls.chains,
            controls.draws,
            controls.tune,
        )
        with model:
            return pm.sample(
                draws=controls.draws,
                tune=controls.tune,
                chains=controls.chains,
                cores=controls.cores,
                target_accept=controls.target_accept,
                random_seed=random_seed,
                progressbar=self.progressbar,
                compute_convergence_checks=False,
                return_inferencedata=True,
            )

    def sample_last(
        self,
        model: pm.Model,
        var_names: Sequence[str],
        controls: SamplingControls,
        random_seed: int,
    ) -> dict[str, np.ndarray]:
        """
        Run one short chain and keep only its final draw.

        Raises
        ------
        SamplingFailure
            If any retained draw diverged or a requested value is not finite.
        """
        with quiet_pymc(), model:
            idata = pm.sample(
                draws=controls.draws,
                tune=controls.tune,
                chains=1,
                cores=1,
                target_accept=controls.target_accept,
                random_seed=random_seed,
                progressbar=False,
                compute_convergence_checks=False,
                return_inferencedata=True,
            )

        diverging = np.asarray(idata.sample_stats["diverging"].values)
        if diverging.any():
            raise SamplingFailure(
                f"{int(diverging.sum())} divergent transition(s) after warm-up"
            )

        last = {}
        for name in var_names:
            value = np.asarray(idata.posterior[name].values[0, -1], dtype=np.float64)
            if not np.isfinite(value).all():
                raise SamplingFailure(f"non-finite value for {name}")
            last[name] = value
        return last
