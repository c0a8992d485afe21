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
Errors raised by the inference pipeline.

Input validation problems raise plain ``ValueError``. Everything below signals
a problem with the inference itself: the fatal ones abort the run, while
``SamplingFailure`` is recovered per draw by the propagation stage.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd


class SeroIfrError(Exception):
    """Base class for pipeline errors."""


class ConvergenceError(SeroIfrError):
    """A full posterior sample failed its mixing diagnostics."""

    def __init__(
        self,
        stage: str,
        parameters: Sequence[str],
        diagnostics: pd.DataFrame | None = None,
        reason: str = "poor mixing",
    ):
        self.stage = stage
        self.parameters = list(parameters)
        self.diagnostics = diagnostics
        super().__init__(
            f"{stage}: {reason} in {', '.join(self.parameters) or 'sampler'}"
        )


class LabelSwitchingError(SeroIfrError):
    """Component locations landed far from their prior expectations."""

    def __init__(self, parameters: Sequence[str], detail: str = ""):
        self.parameters = list(parameters)
        message = (
            "mixture components disagree with their prior locations "
            f"({', '.join(self.parameters)}); check the titre axis priors "
            "and class level assignments"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SamplingFailure(SeroIfrError):
    """A single secondary-model run did not yield a usable draw."""

    def __init__(self, reason: str, draw_id: int | None = None):
        self.reason = reason
        self.draw_id = draw_id
        prefix = f"draw {draw_id}: " if draw_id is not None else ""
        super().__init__(f"{prefix}{reason}")


class SecondaryConvergenceError(SeroIfrError):
    """Too many outer draws were dropped by the deaths apportionment stage."""

    def __init__(self, dropped: int, total: int, threshold: float):
        self.dropped = dropped
        self.total = total
        self.threshold = threshold
        super().__init__(
            f"deaths apportionment: {dropped} of {total} draws failed after "
            f"retries, above the tolerated fraction {threshold:.3g}"
        )
