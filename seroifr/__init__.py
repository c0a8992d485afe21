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
"""Serosurvey incidence and infection fatality rate estimation."""

from .data import ParticipantDataset, StratumTable
from .deaths_model import DeathsModelConfig
from .diagnostics import DiagnosticsConfig
from .errors import (
    ConvergenceError,
    LabelSwitchingError,
    SamplingFailure,
    SecondaryConvergenceError,
    SeroIfrError,
)
from .ifr_propagation import DeathsDrawSet, IFRPropagationEngine, PropagationConfig
from .mixture_model import MixtureConfig, PosteriorDrawSet, TitreAxis, build_model
from .pipeline import PipelineConfig, PipelineResult, run_from_infections, run_pipeline
from .poststratification import InfectionDrawSet, PoststratificationEngine
from .sampling import PymcSampler, SamplingControls
from .summary import SummaryReducer, SummaryTables

__version__ = "0.1.0"

__all__ = [
    "ConvergenceError",
    "DeathsDrawSet",
    "DeathsModelConfig",
    "DiagnosticsConfig",
    "IFRPropagationEngine",
    "InfectionDrawSet",
    "LabelSwitchingError",
    "MixtureConfig",
    "ParticipantDataset",
    "PipelineConfig",
    "PipelineResult",
    "PoststratificationEngine",
    "PosteriorDrawSet",
    "PropagationConfig",
    "PymcSampler",
    "SamplingControls",
    "SamplingFailure",
    "SecondaryConvergenceError",
    "SeroIfrError",
    "StratumTable",
    "SummaryReducer",
    "SummaryTables",
    "TitreAxis",
    "build_model",
    "run_from_infections",
    "run_pipeline",
]
