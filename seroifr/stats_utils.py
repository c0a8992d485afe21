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
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
from scipy import special


def to_float64_array(x: list | pd.Series | np.ndarray | None) -> np.ndarray:
    """
    Convert input to a NumPy array of float64, with None as np.nan.

    Parameters
    ----------
    x : list | pd.Series | np.ndarray | None
        Input data to be converted.

    Returns
    -------
    np.ndarray
        Converted array of type float64, with None values as np.nan.
    """
    return (
        pd.Series(x, dtype="float64")
        .convert_dtypes()
        .to_numpy(dtype="float64", na_value=np.nan, copy=True)
    )


def to_count_array(x: list | pd.Series | np.ndarray, name: str) -> np.ndarray:
    """
    Convert input to a NumPy array of non-negative int64 counts.

    Parameters
    ----------
    x : list | pd.Series | np.ndarray
        Input counts. Floats are accepted only when integral.
    name : str
        Used in error messages.

    Returns
    -------
    np.ndarray
        Converted array of type int64.
    """
    values = to_float64_array(x)
    if not np.isfinite(values).all():
        raise ValueError(f"{name} must be fully observed (no NaNs).")
    if (values < 0).any():
        raise ValueError(f"{name} must be non-negative; found {values.min()}.")
    if not np.equal(np.mod(values, 1.0), 0.0).all():
        raise ValueError(f"{name} must contain whole numbers.")
    return values.astype(np.int64)


def expit(x: np.ndarray) -> np.ndarray:
    """Inverse logit, numerically stable at extreme logits."""
    return special.expit(np.asarray(x, dtype=np.float64))


def posterior_quantiles(
    draws: np.ndarray, quantiles: tuple[float, ...], axis: int = 0
) -> np.ndarray:
    """
    Quantiles of posterior draws, ignoring undefined (NaN) draws.

    Parameters
    ----------
    draws : np.ndarray
        Draws along `axis`; NaN marks an undefined draw.
    quantiles : tuple of float
        Probabilities in [0, 1].
    axis : int
        Axis holding the draws.

    Returns
    -------
    np.ndarray
        Array with the draw axis replaced by a leading quantile axis. Cells
        without a single defined draw are NaN.
    """
    draws = np.asarray(draws, dtype=np.float64)
    if draws.shape[axis] == 0:
        shape = (len(quantiles),) + tuple(np.delete(draws.shape, axis))
        return np.full(shape, np.nan)
    with warnings.catch_warnings():
        # all-NaN slices are expected for undefined cells and come back as NaN
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanquantile(draws, quantiles, axis=axis)


def derive_seed(base_seed: int, *keys: int) -> int:
    """
    Derive an independent 32-bit seed from a base seed and integer keys.

    The result depends only on the inputs, never on call order, so work keyed
    by (draw id, attempt) reproduces regardless of scheduling.
    """
    sequence = np.random.SeedSequence([int(base_seed), *(int(k) for k in keys)])
    return int(sequence.generate_state(1, dtype=np.uint32)[0])
