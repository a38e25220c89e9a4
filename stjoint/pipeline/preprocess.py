"""Expression preprocessing ahead of the joint fit."""

from __future__ import annotations

import logging

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from stjoint.config import PreprocessConfig

logger = logging.getLogger(__name__)


def normalize_expression(
    frame: pd.DataFrame,
    config: PreprocessConfig = PreprocessConfig(),
) -> pd.DataFrame:
    """Library-size normalization and ``log1p`` through scanpy."""
    if (frame.to_numpy() < 0).any():
        raise ValueError("expression counts must be non-negative before normalization.")
    adata = ad.AnnData(
        X=frame.to_numpy(dtype=np.float64, copy=True),
        obs=pd.DataFrame(index=[str(i) for i in frame.index]),
        var=pd.DataFrame(index=[str(c) for c in frame.columns]),
    )
    if config.normalize_total:
        sc.pp.normalize_total(adata, target_sum=float(config.target_sum))
    if config.log1p:
        sc.pp.log1p(adata)
    return pd.DataFrame(np.asarray(adata.X), index=frame.index, columns=frame.columns)


def drop_constant_columns(frame: pd.DataFrame, name: str = "matrix") -> pd.DataFrame:
    """Remove zero-variance columns; they carry no signal for the fit."""
    values = frame.to_numpy(dtype=np.float64)
    keep = np.ptp(values, axis=0) > 0.0 if len(frame) else np.zeros(frame.shape[1], dtype=bool)
    n_drop = int((~keep).sum())
    if n_drop:
        logger.info("Dropping %d constant columns of %d from %s", n_drop, frame.shape[1], name)
    if not keep.any():
        raise ValueError(f"every column of {name} is constant.")
    return frame.loc[:, keep]
