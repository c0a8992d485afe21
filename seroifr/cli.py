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
"""Command-line entry point: CSV tables in, incidence and IFR tables out."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Sequence

import pandas as pd

from .data import ParticipantDataset, StratumTable
from .errors import SeroIfrError
from .ifr_propagation import PropagationConfig
from .mixture_model import MixtureConfig, TitreAxis
from .pipeline import PipelineConfig, run_pipeline
from .sampling import SamplingControls

logger = logging.getLogger(__name__)


def parse_axis(text: str) -> TitreAxis:
    """Parse NAME:MU0,MU1[,...][:SD] into a titre axis prior."""
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected NAME:MU0,MU1[:SD], got {text!r}")
    try:
        level_mu = tuple(float(v) for v in parts[1].split(","))
        level_sd = float(parts[2]) if len(parts) == 3 else 0.5
        return TitreAxis(parts[0], level_mu, level_sd)
    except ValueError as err:
        raise argparse.ArgumentTypeError(str(err)) from err


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seroifr",
        description="Estimate infection incidence and IFR from serosurvey titres.",
    )
    parser.add_argument("--participants", type=Path, required=True,
                        help="CSV with one row per participant.")
    parser.add_argument("--census", type=Path, required=True,
                        help="CSV with stratum, population and ltc_population columns.")
    parser.add_argument("--deaths", type=Path,
                        help="CSV with stratum and deaths columns.")
    parser.add_argument("--ltc-deaths", type=int,
                        help="Total deaths in long-term care.")
    parser.add_argument("--stratum-column", default="stratum")
    parser.add_argument("--axis", type=parse_axis, action="append", dest="axes",
                        help="Titre axis prior NAME:MU0,MU1[:SD]; repeat per titre. "
                             "Axis names are the participant titre columns.")
    parser.add_argument("--no-vaccinated", action="store_true",
                        help="Fit two classes (uninfected, infected).")
    parser.add_argument("--draws", type=int, default=1000)
    parser.add_argument("--tune", type=int, default=1000)
    parser.add_argument("--chains", type=int, default=4)
    parser.add_argument("--target-accept", type=float, default=0.9)
    parser.add_argument("--workers", type=int, default=None,
                        help="Worker processes for the deaths stage (default: all CPUs).")
    parser.add_argument("--seed", type=int, default=20201)
    parser.add_argument("--output-dir", type=Path, default=Path("."))
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    mixture = MixtureConfig(include_vaccinated=not args.no_vaccinated)
    if args.axes:
        mixture = MixtureConfig(
            axes=tuple(args.axes), include_vaccinated=not args.no_vaccinated
        )
    return PipelineConfig(
        mixture=mixture,
        sampling=SamplingControls(
            draws=args.draws,
            tune=args.tune,
            chains=args.chains,
            target_accept=args.target_accept,
        ),
        propagation=PropagationConfig(max_workers=args.workers),
        seed=args.seed,
    )


def load_inputs(
    args: argparse.Namespace, config: PipelineConfig
) -> tuple[ParticipantDataset, StratumTable]:
    census = pd.read_csv(args.census)
    deaths = pd.read_csv(args.deaths) if args.deaths else None
    strata = StratumTable.from_frames(
        census,
        deaths=deaths,
        ltc_deaths=args.ltc_deaths,
        stratum_column=args.stratum_column,
    )
    participants = ParticipantDataset.from_frame(
        pd.read_csv(args.participants),
        stratum_column=args.stratum_column,
        titre_columns=list(config.mixture.titre_names),
        levels=strata.strata,
    )
    return participants, strata


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if (args.deaths is None) != (args.ltc_deaths is None):
        parser.error("--deaths and --ltc-deaths must be given together")

    try:
        config = config_from_args(args)
        participants, strata = load_inputs(args, config)
        result = run_pipeline(
            participants, strata, config, incidence_only=not strata.has_deaths
        )
    except (ValueError, SeroIfrError) as err:
        logger.error("%s", err)
        return 1

    out = args.output_dir
    out.mkdir(parents=True, exist_ok=True)
    written: List[Path] = [out / "incidence.csv"]
    result.incidence.to_csv(written[-1])
    if result.ifr is not None:
        written.append(out / "ifr.csv")
        result.ifr.to_csv(written[-1])
    if result.posterior is not None and config.mixture.store_class_log_prob:
        written.append(out / "class_probabilities.csv")
        result.posterior.class_probabilities().to_csv(written[-1])
    written.append(out / "notes.txt")
    written[-1].write_text("".join(f"{note}\n" for note in result.notes))

    print(result.incidence.to_string(float_format="%.2f"))
    if result.ifr is not None:
        print()
        print(result.ifr.to_string(float_format="%.3f"))
    logger.info("Wrote %s", ", ".join(str(p) for p in written))
    return 0


if __name__ == "__main__":
    sys.exit(main())
