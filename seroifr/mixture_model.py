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

# -----------------------------------------------------------------------------
# Titre mixture with an infection-probability regression (D titres × K classes)
#
# Notation in code mirrors the math below:
#   w    : log titres of one participant (length D)
#   x    : design row (intercept + treatment-coded age stratum + covariates)
#   β    : logistic regression coefficients for P(infected)
#   ρ    : vaccination rate among the non-infected
#   m_k  : location of class k (one ordered level per titre axis)
#   L_k  : Cholesky factor of the class-k scale matrix (LKJ prior)
#   ν_k  : Student-t degrees of freedom, ν = exp(log ν)
#
# Identifiability choices:
#   • Each titre axis has a small set of location levels (e.g. negative <
#     positive) with an ordered transform; classes reuse levels, so swapping
#     labels would violate the ordering.
#   • Level priors are informative; ρ has an informative Beta prior.
#   • β and scales are weakly informative.
# -----------------------------------------------------------------------------

"""
Serosurvey titre mixture model
==============================

Class weights (per participant i):
    π_inf = logistic(x_i·β)
    π_vac = (1 - π_inf) ρ
    π_unv = (1 - π_inf) (1 - ρ)

Likelihood:
    log p(w_i) = logsumexp_k [ log π_k + log MvStudentT(w_i; ν_k, m_k, L_k) ]

Derived quantities:
    class_log_prob[i,k]      log posterior probability of class k for i
    stratum_infection_prob   logistic(x_j·β) for every census stratum j

Glossary / symbol map
---------------------
beta                     β     regression coefficients (covariate)
loc_<axis>               levels of one titre axis, ordered
location                 m     class × titre location matrix
scale_<class>                  packed LKJ Cholesky factor for one class
log_df / df              ν     degrees of freedom per class
rho                      ρ     vaccination rate among the non-infected

Dims:
    participant: N
    titre: D (>= 2)
    class: K = 3 ("uninfected", "infected", "vaccinated"), or 2
    covariate: P
    stratum: M
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
from pymc.distributions import transforms

from . import diagnostics
from .data import ParticipantDataset, StratumTable, design_columns
from .sampling import PymcSampler, Sampler, SamplingControls

logger = logging.getLogger(__name__)

UNINFECTED = "uninfected"
INFECTED = "infected"
VACCINATED = "vaccinated"

# ---------------------------------------------------------------------
# (0) Configuration
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class TitreAxis:
    """
    One titre dimension and the prior for its ordered location levels.

    `level_mu` must be strictly increasing: level 0 is the background
    (no signal) location, higher levels are responses.
    """

    name: str
    level_mu: tuple[float, ...]
    level_sd: float = 0.5

    def __post_init__(self):
        object.__setattr__(self, "level_mu", tuple(float(v) for v in self.level_mu))
        mu = np.asarray(self.level_mu, dtype=np.float64)
        if mu.ndim != 1 or mu.size == 0:
            raise ValueError(f"{self.name}: at least one location level required.")
        if np.any(np.diff(mu) <= 0):
            raise ValueError(
                f"{self.name}: level priors must be strictly increasing; got {self.level_mu}"
            )
        if self.level_sd <= 0:
            raise ValueError(f"{self.name}: level_sd must be positive.")

    @property
    def n_levels(self) -> int:
        return len(self.level_mu)


def _default_axes() -> tuple[TitreAxis, ...]:
    return (
        TitreAxis("anti_n", (-1.0, 1.5)),
        TitreAxis("anti_s", (-1.0, 2.0)),
    )


def _default_class_levels() -> tuple[tuple[str, tuple[int, ...]], ...]:
    # infected respond on both axes, vaccinated only on the spike axis
    return (
        (UNINFECTED, (0, 0)),
        (INFECTED, (1, 1)),
        (VACCINATED, (0, 1)),
    )


@dataclass(frozen=True)
class MixtureConfig:
    """
    Priors and structure of the titre mixture.

    Notes on interpretation:
    - Location levels are on the log-titre scale. Their priors are deliberately
      informative; the model is expected to tolerate offsets of about one
      `level_sd` from the truth.
    - `class_levels` pairs each class with its level index on every axis; a
      mapping is accepted and stored as sorted pairs so the config stays
      hashable.
    - rho ~ Beta(rho_alpha, rho_beta); the default has mean 0.2.
    - log ν ~ Normal(log_df_mu, log_df_sd); exp(log 10) keeps tails moderate.
    """

    axes: tuple[TitreAxis, ...] = field(default_factory=_default_axes)
    class_levels: tuple[tuple[str, tuple[int, ...]], ...] = field(
        default_factory=_default_class_levels
    )
    include_vaccinated: bool = True

    rho_alpha: float = 2.0
    rho_beta: float = 8.0

    sd_prior_intercept: float = 1.5
    sd_prior_beta: float = 1.0
    sd_prior_scale: float = 1.0
    lkj_eta: float = 2.0

    log_df_mu: float = float(np.log(10.0))
    log_df_sd: float = 0.5

    store_class_log_prob: bool = True

    def __post_init__(self):
        pairs = (
            self.class_levels.items()
            if isinstance(self.class_levels, Mapping)
            else self.class_levels
        )
        object.__setattr__(
            self,
            "class_levels",
            tuple(
                sorted((str(cls), tuple(int(v) for v in levels)) for cls, levels in pairs)
            ),
        )
        object.__setattr__(self, "axes", tuple(self.axes))

        if len(self.axes) < 2:
            raise ValueError("The mixture needs at least two titre axes.")
        names = [axis.name for axis in self.axes]
        if len(set(names)) != len(names):
            raise ValueError(f"Titre axis names must be unique; got {names}.")

        by_class = dict(self.class_levels)
        signatures = {}
        for cls in self.classes:
            if cls not in by_class:
                raise ValueError(f"No location levels given for class '{cls}'.")
            levels = by_class[cls]
            if len(levels) != len(self.axes):
                raise ValueError(
                    f"{cls}: expected {len(self.axes)} level indices, got {len(levels)}."
                )
            for axis, level in zip(self.axes, levels):
                if not 0 <= level < axis.n_levels:
                    raise ValueError(
                        f"{cls}: level {level} out of range for axis '{axis.name}'."
                    )
            if levels in signatures:
                raise ValueError(
                    f"Classes '{signatures[levels]}' and '{cls}' share every location "
                    "level and cannot be told apart."
                )
            signatures[levels] = cls

        for name in ("rho_alpha", "rho_beta", "sd_prior_intercept", "sd_prior_beta",
                     "sd_prior_scale", "lkj_eta", "log_df_sd"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive.")

    @property
    def classes(self) -> tuple[str, ...]:
        if self.include_vaccinated:
            return (UNINFECTED, INFECTED, VACCINATED)
        return (UNINFECTED, INFECTED)

    @property
    def titre_names(self) -> tuple[str, ...]:
        return tuple(axis.name for axis in self.axes)

    def level_matrix(self) -> np.ndarray:
        """(K, D) level index of each class on each axis."""
        by_class = dict(self.class_levels)
        return np.array([by_class[c] for c in self.classes], dtype=np.int64)


# ---------------------------------------------------------------------
# (1) Data preparation
# ---------------------------------------------------------------------


@dataclass
class PreparedData:
    """Arrays and coordinates consumed by `build_model`."""

    N: int
    D: int
    K: int
    M: int
    titres: np.ndarray  # (N, D)
    X: np.ndarray  # (N, P)
    X_census: np.ndarray  # (M, P)
    covariate_names: List[str]
    coords: Dict[str, np.ndarray]


def prepare_data(
    participants: ParticipantDataset, strata: StratumTable, cfg: MixtureConfig
) -> PreparedData:
    """
    Check that participants, census and configuration agree, and build the
    participant and census design matrices from the same coding.
    """
    if participants.titre_names != cfg.titre_names:
        raise ValueError(
            f"Participant titres {participants.titre_names} do not match the "
            f"mixture axes {cfg.titre_names}."
        )
    if participants.levels != strata.strata:
        raise ValueError(
            f"Participant strata {participants.levels} do not match the census "
            f"strata {strata.strata}."
        )
    if participants.covariate_names != strata.covariate_names:
        raise ValueError(
            "Participant covariates must also be given for every census stratum; "
            f"got {participants.covariate_names} vs {strata.covariate_names}."
        )

    X = participants.design_matrix()
    X_census = strata.design_matrix()
    covariate_names = design_columns(participants.levels, participants.covariate_names)

    coords = dict(
        participant=np.arange(participants.n_participants),
        titre=np.array(cfg.titre_names, dtype=str),
        **{"class": np.array(cfg.classes, dtype=str)},
        covariate=np.array(covariate_names, dtype=str),
        stratum=np.array(strata.strata, dtype=str),
    )

    return PreparedData(
        N=participants.n_participants,
        D=participants.n_titres,
        K=len(cfg.classes),
        M=strata.n_strata,
        titres=np.asarray(participants.titres, dtype=np.float64),
        X=X,
        X_census=X_census,
        covariate_names=covariate_names,
        coords=coords,
    )


# ---------------------------------------------------------------------
# (2) Model construction
# ---------------------------------------------------------------------


@dataclass
class MixtureModelDefinition:
    """The built model together with the inputs it was built from."""

    participants: ParticipantDataset
    strata: StratumTable
    config: MixtureConfig
    prepared: PreparedData
    model: pm.Model

    @property
    def free_var_names(self) -> List[str]:
        return [rv.name for rv in self.model.free_RVs]


def build_model(
    participants: ParticipantDataset,
    strata: StratumTable,
    config: MixtureConfig | None = None,
) -> MixtureModelDefinition:
    """
    Build the PyMC titre mixture with its infection-probability regression.

    Parameters
    ----------
    participants : ParticipantDataset
        Survey titres and strata.
    strata : StratumTable
        Census strata; only used for the census design matrix.
    config : MixtureConfig, optional
        Priors and class structure.

    Returns
    -------
    MixtureModelDefinition
    """
    cfg = config or MixtureConfig()
    prep = prepare_data(participants, strata, cfg)
    D = prep.D
    level_matrix = cfg.level_matrix()

    beta_sd = np.full(len(prep.covariate_names), cfg.sd_prior_beta, dtype=np.float64)
    beta_sd[0] = cfg.sd_prior_intercept

    with pm.Model(coords=prep.coords) as model:
        # -----------------------------------------------------------------
        # (2.1) Data containers
        # -----------------------------------------------------------------
        X = pm.Data("X", prep.X, dims=("participant", "covariate"))
        titres = pm.Data("titres", prep.titres, dims=("participant", "titre"))
        X_census = pm.Data("X_census", prep.X_census, dims=("stratum", "covariate"))

        # -----------------------------------------------------------------
        # (2.2) Infection-probability regression and class weights
        # -----------------------------------------------------------------
        beta = pm.Normal("beta", 0.0, beta_sd, dims=("covariate",))
        logit_inf = pt.dot(X, beta)  # (N,)

        # log σ(z) = -log1p(exp(-z)), log(1 - σ(z)) = -log1p(exp(z))
        log_p_inf = -pm.math.log1pexp(-logit_inf)
        log_p_not = -pm.math.log1pexp(logit_inf)

        log_weight = {INFECTED: log_p_inf}
        if cfg.include_vaccinated:
            rho = pm.Beta("rho", cfg.rho_alpha, cfg.rho_beta)
            log_weight[UNINFECTED] = log_p_not + pt.log1p(-rho)
            log_weight[VACCINATED] = log_p_not + pt.log(rho)
        else:
            log_weight[UNINFECTED] = log_p_not

        # -----------------------------------------------------------------
        # (2.3) Component locations (ordered levels per titre axis)
        # -----------------------------------------------------------------
        axis_levels = []
        for axis in cfg.axes:
            level_mu = np.asarray(axis.level_mu, dtype=np.float64)
            if axis.n_levels > 1:
                axis_levels.append(
                    pm.Normal(
                        f"loc_{axis.name}",
                        mu=level_mu,
                        sigma=axis.level_sd,
                        shape=(axis.n_levels,),
                        transform=transforms.ordered,
                        initval=level_mu,
                    )
                )
            else:
                axis_levels.append(
                    pm.Normal(
                        f"loc_{axis.name}",
                        mu=level_mu,
                        sigma=axis.level_sd,
                        shape=(1,),
                    )
                )

        location = pm.Deterministic(
            "location",
            pt.stack(
                [
                    pt.stack([axis_levels[d][level_matrix[k, d]] for d in range(D)])
                    for k in range(prep.K)
                ]
            ),
            dims=("class", "titre"),
        )

        # -----------------------------------------------------------------
        # (2.4) Scales and tails
        # -----------------------------------------------------------------
        log_df = pm.Normal("log_df", cfg.log_df_mu, cfg.log_df_sd, dims=("class",))
        df = pm.Deterministic("df", pt.exp(log_df), dims=("class",))

        # -----------------------------------------------------------------
        # (2.5) Mixture likelihood
        # -----------------------------------------------------------------
        columns = []
        for k, cls in enumerate(cfg.classes):
            chol, _, _ = pm.LKJCholeskyCov(
                f"scale_{cls}",
                n=D,
                eta=cfg.lkj_eta,
                sd_dist=pm.HalfNormal.dist(cfg.sd_prior_scale),
                compute_corr=True,
            )
            log_density = pm.logp(
                pm.MvStudentT.dist(nu=df[k], mu=location[k], chol=chol), titres
            )
            columns.append(log_weight[cls] + log_density)

        log_weighted = pt.stack(columns, axis=1)  # (N,K)
        log_marginal = pm.math.logsumexp(log_weighted, axis=1, keepdims=True)
        pm.Potential("mixture_loglik", pt.sum(log_marginal))

        # -----------------------------------------------------------------
        # (2.6) Derived quantities
        # -----------------------------------------------------------------
        if cfg.store_class_log_prob:
            pm.Deterministic(
                "class_log_prob",
                log_weighted - log_marginal,
                dims=("participant", "class"),
            )

        pm.Deterministic(
            "stratum_infection_prob",
            pm.math.sigmoid(pt.dot(X_census, beta)),
            dims=("stratum",),
        )

    return MixtureModelDefinition(
        participants=participants,
        strata=strata,
        config=cfg,
        prepared=prep,
        model=model,
    )


# ---------------------------------------------------------------------
# (3) Posterior draws
# ---------------------------------------------------------------------


class PosteriorDrawSet:
    """
    Read-only view of the mixture posterior with chains flattened into a
    single draw axis. Draw ids are positions on that axis.
    """

    def __init__(self, definition: MixtureModelDefinition, idata: az.InferenceData):
        self.definition = definition
        self.idata = idata

    def _stacked(self, name: str) -> np.ndarray:
        da = self.idata.posterior[name].stack(sample=("chain", "draw"))
        return np.asarray(da.transpose("sample", ...).values)

    @property
    def n_draws(self) -> int:
        posterior = self.idata.posterior
        return int(posterior.sizes["chain"] * posterior.sizes["draw"])

    @property
    def draw_ids(self) -> np.ndarray:
        return np.arange(self.n_draws)

    @property
    def covariate_names(self) -> List[str]:
        return self.definition.prepared.covariate_names

    def beta(self) -> np.ndarray:
        """(T, P) regression coefficients."""
        return self._stacked("beta")

    def rho(self) -> np.ndarray | None:
        """(T,) vaccination rate, or None for a two-class mixture."""
        if not self.definition.config.include_vaccinated:
            return None
        return self._stacked("rho")

    def locations(self) -> np.ndarray:
        """(T, K, D) class locations."""
        return self._stacked("location")

    def df(self) -> np.ndarray:
        return self._stacked("df")

    def stratum_infection_prob(self) -> np.ndarray:
        """(T, M) regression-implied infection probability per census stratum."""
        return self._stacked("stratum_infection_prob")

    def class_log_prob(self) -> np.ndarray:
        """(T, N, K) log posterior class membership per participant."""
        if "class_log_prob" not in self.idata.posterior:
            raise KeyError(
                "class_log_prob was not stored; build with store_class_log_prob=True"
            )
        return self._stacked("class_log_prob")

    def class_probabilities(self) -> pd.DataFrame:
        """Posterior mean class membership, one row per participant."""
        probs = np.exp(self.class_log_prob()).mean(axis=0)
        frame = pd.DataFrame(probs, columns=list(self.definition.config.classes))
        frame.insert(0, "stratum", self.definition.participants.stratum)
        frame.index.name = "participant"
        return frame

    def summary(self, var_names: List[str] | None = None) -> pd.DataFrame:
        """ArviZ summary of the monitored parameters."""
        if var_names is None:
            var_names = ["beta", "location", "df"]
            if self.definition.config.include_vaccinated:
                var_names.append("rho")
        return az.summary(self.idata, var_names=var_names, hdi_prob=0.95)


# ---------------------------------------------------------------------
# (4) Fitting
# ---------------------------------------------------------------------


def fit_mixture_model(
    participants: ParticipantDataset,
    strata: StratumTable,
    config: MixtureConfig | None = None,
    controls: SamplingControls | None = None,
    sampler: Sampler | None = None,
    diagnostics_config: diagnostics.DiagnosticsConfig | None = None,
    random_seed: int = 0,
) -> PosteriorDrawSet:
    """
    Build and sample the mixture, then check mixing and label identity.

    Raises
    ------
    ConvergenceError
        If any free parameter mixes poorly.
    LabelSwitchingError
        If component locations land far from their priors.
    """
    definition = build_model(participants, strata, config)
    sampler = sampler or PymcSampler()
    controls = controls or SamplingControls()
    diag_cfg = diagnostics_config or diagnostics.DiagnosticsConfig()

    logger.info(
        "Fitting titre mixture: %d participants, %d titres, %d classes, %d strata",
        definition.prepared.N,
        definition.prepared.D,
        definition.prepared.K,
        definition.prepared.M,
    )
    idata = sampler.sample(definition.model, controls, random_seed)

    diagnostics.check_convergence(
        idata, definition.free_var_names, diag_cfg, stage="titre mixture"
    )
    diagnostics.check_label_ordering(idata, definition.config.axes, diag_cfg)
    return PosteriorDrawSet(definition, idata)
