"""Synthetic serosurvey, census and deaths data for tests."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from seroifr.data import ParticipantDataset, StratumTable

STRATA = ("0-19", "20-39", "40-59", "60+")
POPULATION = np.array([11033989, 9776943, 6141313, 3208342])
INCIDENCE = np.array([0.12, 0.10, 0.084, 0.07])
LTC_POPULATION = np.array([0, 2000, 15000, 180000])
DEATHS = np.array([132, 985, 2880, 23400])
LTC_DEATHS = 14805

# true class locations on (anti_n, anti_s); priors are offset by up to 0.5
TRUE_LOCATIONS = {
    "uninfected": (-1.3, -0.6),
    "infected": (1.8, 2.3),
    "vaccinated": (-1.3, 2.3),
}
TRUE_RHO = 0.25
TRUE_SD = 0.35


@dataclass
class Survey:
    participants: ParticipantDataset
    strata: StratumTable
    infected: np.ndarray
    vaccinated: np.ndarray


def census(with_deaths: bool = True) -> StratumTable:
    if with_deaths:
        return StratumTable(
            STRATA, POPULATION, LTC_POPULATION, deaths=DEATHS, ltc_deaths=LTC_DEATHS
        )
    return StratumTable(STRATA, POPULATION, LTC_POPULATION)


def simulate_survey(
    n_per_stratum: int = 500,
    incidence: np.ndarray = INCIDENCE,
    rho: float = TRUE_RHO,
    seed: int = 1,
) -> Survey:
    """Participants drawn at the given per-stratum incidences."""
    rng = np.random.default_rng(seed)
    stratum_index = np.repeat(np.arange(len(STRATA)), n_per_stratum)
    infected = rng.random(stratum_index.size) < incidence[stratum_index]
    vaccinated = ~infected & (rng.random(stratum_index.size) < rho)

    loc = np.where(
        infected[:, None],
        TRUE_LOCATIONS["infected"],
        np.where(
            vaccinated[:, None],
            TRUE_LOCATIONS["vaccinated"],
            TRUE_LOCATIONS["uninfected"],
        ),
    )
    titres = loc + TRUE_SD * rng.standard_normal(loc.shape)

    participants = ParticipantDataset(
        stratum=np.asarray(STRATA)[stratum_index],
        titres=titres,
        levels=STRATA,
        titre_names=("anti_n", "anti_s"),
    )
    return Survey(participants, census(), infected, vaccinated)
