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
Input data: survey participants and census/deaths strata
=========================================================

Both tables are validated once at construction and are read-only afterwards.
Strata are identified by label; the order of `levels` fixes the column order
of every design matrix and the first level is the regression reference.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from . import stats_utils

pd.options.mode.copy_on_write = True


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr)
    arr.flags.writeable = False
    return arr


def _check_levels(levels: Sequence[str]) -> tuple[str, ...]:
    levels = tuple(str(level) for level in levels)
    if len(levels) == 0:
        raise ValueError("At least one stratum level is required.")
    if len(set(levels)) != len(levels):
        raise ValueError(f"Stratum levels must be unique; got {levels}.")
    return levels


def _check_covariates(
    covariates: np.ndarray | pd.DataFrame | None,
    covariate_names: Sequence[str],
    n_rows: int,
    owner: str,
) -> tuple[np.ndarray, tuple[str, ...]]:
    names = tuple(str(c) for c in covariate_names)
    if covariates is None:
        if names:
            raise ValueError(f"{owner}: covariate names given without values.")
        return np.zeros((n_rows, 0), dtype=np.float64), names

    values = np.asarray(covariates, dtype=np.float64)
    if values.ndim == 1:
        values = values[:, None]
    if values.ndim != 2 or values.shape[0] != n_rows:
        raise ValueError(
            f"{owner}: expected covariates of shape ({n_rows}, C), got {values.shape}."
        )
    if values.shape[1] != len(names):
        raise ValueError(
            f"{owner}: {values.shape[1]} covariate column(s) but {len(names)} name(s)."
        )
    if not np.isfinite(values).all():
        raise ValueError(f"{owner}: covariates must be fully observed (no NaNs).")
    return values, names


# ---------------------------------------------------------------------
# (1) Survey participants
# ---------------------------------------------------------------------


class ParticipantDataset:
    """
    Serosurvey participants: age stratum, log titres and optional covariates.

    Attributes
    ----------
    levels : tuple of str
        Ordered stratum labels; the first is the regression reference.
    stratum : (N,) str
        Stratum label of each participant.
    stratum_index : (N,) int
        Position of each participant's stratum in `levels`.
    titres : (N, D) float
        Log-scale titre measurements, D >= 2.
    titre_names : tuple of str
        Name of each titre column (matched against the mixture axes).
    covariates : (N, C) float
        Optional known covariates (C may be 0).
    covariate_names : tuple of str
    """

    def __init__(
        self,
        stratum: list | pd.Series | np.ndarray,
        titres: np.ndarray | pd.DataFrame,
        levels: Sequence[str],
        titre_names: Sequence[str],
        covariates: np.ndarray | pd.DataFrame | None = None,
        covariate_names: Sequence[str] = (),
    ):
        self.levels = _check_levels(levels)

        stratum = np.asarray(stratum).astype(str)
        if stratum.ndim != 1:
            raise ValueError(f"stratum: expected shape (N,), got {stratum.shape}.")
        N = stratum.shape[0]
        if N == 0:
            raise ValueError("At least one participant is required.")

        unknown = np.setdiff1d(stratum, np.asarray(self.levels))
        if unknown.size:
            raise ValueError(f"Unknown stratum label(s): {unknown.tolist()}")

        titres = np.asarray(titres, dtype=np.float64)
        if titres.ndim != 2 or titres.shape[1] < 2:
            raise ValueError(f"titres: expected shape (N, D>=2), got {titres.shape}.")
        if titres.shape[0] != N:
            raise ValueError(
                f"All inputs must share the same N; titres has N={titres.shape[0]}, expected {N}."
            )
        if not np.isfinite(titres).all():
            raise ValueError("titres must be fully observed (no NaNs).")

        titre_names = tuple(str(t) for t in titre_names)
        if len(titre_names) != titres.shape[1]:
            raise ValueError(
                f"{titres.shape[1]} titre column(s) but {len(titre_names)} name(s)."
            )
        if len(set(titre_names)) != len(titre_names):
            raise ValueError(f"Titre names must be unique; got {titre_names}.")

        covariates, covariate_names = _check_covariates(
            covariates, covariate_names, N, "participants"
        )

        lookup = {level: i for i, level in enumerate(self.levels)}
        self.stratum = _frozen(stratum)
        self.stratum_index = _frozen(
            np.array([lookup[s] for s in stratum], dtype=np.int64)
        )
        self.titres = _frozen(titres.copy())
        self.titre_names = titre_names
        self.covariates = _frozen(covariates.copy())
        self.covariate_names = covariate_names

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        stratum_column: str,
        titre_columns: Sequence[str],
        levels: Sequence[str] | None = None,
        covariate_columns: Sequence[str] = (),
    ) -> "ParticipantDataset":
        """
        Build a dataset from one row per participant.

        When `levels` is omitted the stratum order is the order of first
        appearance, so pass it explicitly whenever the reference matters.
        """
        missing = [
            c
            for c in [stratum_column, *titre_columns, *covariate_columns]
            if c not in frame.columns
        ]
        if missing:
            raise ValueError(f"Participant table is missing column(s): {missing}")
        if levels is None:
            levels = pd.unique(frame[stratum_column].astype(str)).tolist()
        covariates = (
            frame[list(covariate_columns)].to_numpy(dtype=np.float64)
            if covariate_columns
            else None
        )
        return cls(
            stratum=frame[stratum_column].to_numpy(),
            titres=frame[list(titre_columns)].to_numpy(dtype=np.float64),
            levels=levels,
            titre_names=titre_columns,
            covariates=covariates,
            covariate_names=covariate_columns,
        )

    @property
    def n_participants(self) -> int:
        return self.titres.shape[0]

    @property
    def n_titres(self) -> int:
        return self.titres.shape[1]

    def design_matrix(self) -> np.ndarray:
        return design_matrix(self.stratum_index, self.levels, self.covariates)

    def counts_by_stratum(self) -> pd.Series:
        """Number of participants in each stratum, in level order."""
        counts = np.bincount(self.stratum_index, minlength=len(self.levels))
        return pd.Series(counts, index=pd.Index(self.levels, name="stratum"))


# ---------------------------------------------------------------------
# (2) Census strata and deaths
# ---------------------------------------------------------------------


class StratumTable:
    """
    Census population, LTC population and (optionally) deaths per stratum.

    Attributes
    ----------
    strata : tuple of str
        Stratum labels, in the same order as the participant levels.
    population : (M,) int
        Census population outside long-term care.
    ltc_population : (M,) int
        Population living in long-term care.
    deaths : (M,) int or None
        Observed deaths, LTC and non-LTC combined.
    ltc_deaths : int or None
        Observed total deaths in long-term care, all strata.
    covariates : (M, C) float
        Stratum-level values of any participant covariates.
    """

    def __init__(
        self,
        strata: Sequence[str],
        population: list | pd.Series | np.ndarray,
        ltc_population: list | pd.Series | np.ndarray | None = None,
        deaths: list | pd.Series | np.ndarray | None = None,
        ltc_deaths: int | None = None,
        covariates: np.ndarray | pd.DataFrame | None = None,
        covariate_names: Sequence[str] = (),
    ):
        self.strata = _check_levels(strata)
        M = len(self.strata)

        population = stats_utils.to_count_array(population, "population")
        if ltc_population is None:
            ltc_population = np.zeros(M, dtype=np.int64)
        ltc_population = stats_utils.to_count_array(ltc_population, "ltc_population")
        for name, arr in [("population", population), ("ltc_population", ltc_population)]:
            if arr.shape != (M,):
                raise ValueError(f"{name}: expected shape ({M},), got {arr.shape}.")
        if population.sum() == 0:
            raise ValueError("Census population must not be empty.")

        if (deaths is None) != (ltc_deaths is None):
            raise ValueError("deaths and ltc_deaths must be given together.")
        if deaths is not None:
            deaths = stats_utils.to_count_array(deaths, "deaths")
            if deaths.shape != (M,):
                raise ValueError(f"deaths: expected shape ({M},), got {deaths.shape}.")
            ltc_deaths = int(stats_utils.to_count_array([ltc_deaths], "ltc_deaths")[0])
            deaths = _frozen(deaths)

        covariates, covariate_names = _check_covariates(
            covariates, covariate_names, M, "strata"
        )

        self.population = _frozen(population)
        self.ltc_population = _frozen(ltc_population)
        self.deaths = deaths
        self.ltc_deaths = ltc_deaths
        self.covariates = _frozen(covariates.copy())
        self.covariate_names = covariate_names

    @classmethod
    def from_frames(
        cls,
        census: pd.DataFrame,
        deaths: pd.DataFrame | None = None,
        ltc_deaths: int | None = None,
        stratum_column: str = "stratum",
        population_column: str = "population",
        ltc_population_column: str = "ltc_population",
        deaths_column: str = "deaths",
        covariate_columns: Sequence[str] = (),
    ) -> "StratumTable":
        """
        Build the table from a census frame and an optional deaths frame.

        Deaths rows are matched to census rows by stratum label; every census
        stratum needs exactly one deaths row.
        """
        required = [stratum_column, population_column, *covariate_columns]
        missing = [c for c in required if c not in census.columns]
        if missing:
            raise ValueError(f"Census table is missing column(s): {missing}")

        strata = census[stratum_column].astype(str).tolist()
        ltc = (
            census[ltc_population_column]
            if ltc_population_column in census.columns
            else None
        )

        death_counts = None
        if deaths is not None:
            for c in (stratum_column, deaths_column):
                if c not in deaths.columns:
                    raise ValueError(f"Deaths table is missing column '{c}'.")
            by_stratum = deaths.assign(
                **{stratum_column: deaths[stratum_column].astype(str)}
            )
            if by_stratum[stratum_column].duplicated().any():
                raise ValueError("Deaths table has duplicate strata.")
            by_stratum = by_stratum.set_index(stratum_column)[deaths_column]
            absent = [s for s in strata if s not in by_stratum.index]
            if absent:
                raise ValueError(f"No deaths recorded for strata: {absent}")
            death_counts = by_stratum.loc[strata].to_numpy()

        covariates = (
            census[list(covariate_columns)].to_numpy(dtype=np.float64)
            if covariate_columns
            else None
        )
        return cls(
            strata=strata,
            population=census[population_column].to_numpy(),
            ltc_population=None if ltc is None else ltc.to_numpy(),
            deaths=death_counts,
            ltc_deaths=ltc_deaths,
            covariates=covariates,
            covariate_names=covariate_columns,
        )

    def with_deaths(
        self, deaths: list | pd.Series | np.ndarray, ltc_deaths: int
    ) -> "StratumTable":
        """Return a copy of this table carrying the given deaths."""
        return StratumTable(
            strata=self.strata,
            population=self.population,
            ltc_population=self.ltc_population,
            deaths=deaths,
            ltc_deaths=ltc_deaths,
            covariates=self.covariates,
            covariate_names=self.covariate_names,
        )

    @property
    def n_strata(self) -> int:
        return len(self.strata)

    @property
    def has_deaths(self) -> bool:
        return self.deaths is not None

    @property
    def total_population(self) -> int:
        return int(self.population.sum())

    def design_matrix(self) -> np.ndarray:
        return design_matrix(np.arange(self.n_strata), self.strata, self.covariates)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "population": self.population,
                "ltc_population": self.ltc_population,
            },
            index=pd.Index(self.strata, name="stratum"),
        )
        if self.deaths is not None:
            frame["deaths"] = self.deaths
        for i, name in enumerate(self.covariate_names):
            frame[name] = self.covariates[:, i]
        return frame


# ---------------------------------------------------------------------
# (3) Design matrices
# ---------------------------------------------------------------------


def design_columns(
    levels: Sequence[str], covariate_names: Sequence[str] = ()
) -> list[str]:
    """Column names matching `design_matrix`."""
    return (
        ["intercept"]
        + [f"stratum[{level}]" for level in list(levels)[1:]]
        + list(covariate_names)
    )


def design_matrix(
    stratum_index: np.ndarray,
    levels: Sequence[str],
    covariates: np.ndarray | None = None,
) -> np.ndarray:
    """
    Intercept, treatment-coded strata (first level is the reference) and any
    covariates, one row per entry of `stratum_index`.
    """
    stratum_index = np.asarray(stratum_index, dtype=np.int64)
    n_levels = len(levels)
    if stratum_index.size and (
        stratum_index.min() < 0 or stratum_index.max() >= n_levels
    ):
        raise ValueError("stratum_index out of range for the given levels.")

    one_hot = np.eye(n_levels, dtype=np.float64)[stratum_index][:, 1:]
    columns = [np.ones((stratum_index.shape[0], 1)), one_hot]
    if covariates is not None and np.size(covariates):
        columns.append(np.asarray(covariates, dtype=np.float64))
    return np.hstack(columns)
