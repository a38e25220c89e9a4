"""Cross-modal transform through the shared latent space of a fitted model."""

from __future__ import annotations

import numpy as np
import pandas as pd
import scipy.linalg

from stjoint.core.types import FittedModel
from stjoint.core.utils import finite_2d
from stjoint.errors import ShapeMismatchError, TopologyError, UnknownModalityError


def _check_modality(model: FittedModel, name: str, role: str) -> None:
    if name not in model.modalities:
        raise UnknownModalityError(
            f"{role} modality {name!r} is not part of the fitted topology {list(model.modalities)}."
        )


def _as_observations(model: FittedModel, source: str, x: np.ndarray) -> np.ndarray:
    arr = np.asarray(x, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[None, :]
    expected = model.n_features(source)
    if arr.ndim != 2 or arr.shape[1] != expected:
        raise ShapeMismatchError(
            f"input for modality {source!r} has shape {arr.shape}; "
            f"the model was fitted with {expected} features."
        )
    return finite_2d(f"input for modality {source!r}", arr)


def embed(model: FittedModel, source: str, x: np.ndarray) -> np.ndarray:
    """Infer latent sample codes for new observations of ``source``.

    New samples were not seen at fit time, so their codes come from a ridge
    least-squares fit of the standardized rows against ``B_source C_source^T``.
    """
    _check_modality(model, source, "source")
    arr = _as_observations(model, source, x)
    z = (arr - model.means[source]) / model.scales[source]
    g = model.feature_code(source) @ model.coupling(source).T
    lhs = g.T @ g + model.ridge * np.eye(model.k_dim)
    return scipy.linalg.solve(lhs, (z @ g).T, assume_a="sym").T


def decode(model: FittedModel, target: str, codes: np.ndarray) -> np.ndarray:
    """Reconstruct ``target`` observations (original units) from latent codes."""
    _check_modality(model, target, "target")
    codes = np.asarray(codes, dtype=np.float64)
    if codes.ndim != 2 or codes.shape[1] != model.k_dim:
        raise ShapeMismatchError(
            f"latent codes have shape {codes.shape}; expected (n, {model.k_dim})."
        )
    recon = codes @ model.coupling(target) @ model.feature_code(target).T
    return recon * model.scales[target] + model.means[target]


def transform(model: FittedModel, source: str, target: str, x: np.ndarray) -> np.ndarray:
    """Predict ``target`` observations from ``source`` observations ``x``.

    The model is never mutated; calls are safe to run concurrently.
    """
    _check_modality(model, source, "source")
    _check_modality(model, target, "target")
    if source != target and model.assignment[source]["alpha"] != model.assignment[target]["alpha"]:
        raise TopologyError(
            f"modalities {source!r} and {target!r} use different sample codes "
            f"({model.assignment[source]['alpha']} vs {model.assignment[target]['alpha']}); "
            "their latent spaces are not linked."
        )
    return decode(model, target, embed(model, source, x))


def transform_frame(
    model: FittedModel,
    source: str,
    target: str,
    frame: pd.DataFrame,
) -> pd.DataFrame:
    """Label-aware wrapper around ``transform``.

    Columns of ``frame`` are re-ordered to the fitted vocabulary of ``source``;
    missing columns raise ``ShapeMismatchError`` rather than being filled.
    """
    _check_modality(model, source, "source")
    expected = list(model.col_labels[source])
    cols = [str(c) for c in frame.columns]
    missing = sorted(set(expected) - set(cols))
    if missing:
        head = ", ".join(missing[:5])
        raise ShapeMismatchError(
            f"input frame for {source!r} lacks {len(missing)} fitted features ({head}"
            f"{', ...' if len(missing) > 5 else ''}); shape {frame.shape}."
        )
    values = frame.set_axis(cols, axis=1).loc[:, expected].to_numpy(dtype=np.float64)
    pred = transform(model, source, target, values)
    return pd.DataFrame(pred, index=frame.index, columns=list(model.col_labels[target]))


def reconstruct_training(model: FittedModel, modality: str) -> np.ndarray:
    """Reconstruction of the training matrix from the stored sample codes."""
    _check_modality(model, modality, "target")
    return decode(model, modality, model.sample_code(modality))
