"""Tissue samples and the train/test split over them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from stjoint.config import ReadOptions, SampleFiles
from stjoint.errors import ConfigError
from stjoint.pipeline.io import read_coordinates, read_expression, read_image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TissueSample:
    """One slide: spot coordinates, spot x gene counts and the histology image."""

    name: str
    coordinates: pd.DataFrame
    expression: pd.DataFrame
    image: np.ndarray

    @classmethod
    def from_files(cls, files: SampleFiles, options: ReadOptions = ReadOptions()) -> "TissueSample":
        logger.info("Loading sample %s", files.name)
        return cls(
            name=files.name,
            coordinates=read_coordinates(files.coordinates, options),
            expression=read_expression(files.expression, options),
            image=read_image(files.image),
        )


def split_samples(
    samples: Sequence[TissueSample],
    test_fraction: float = 0.25,
    seed: int = 0,
) -> tuple[list[TissueSample], list[TissueSample]]:
    """Deterministic sample-level split; each side keeps at least one sample."""
    names = [s.name for s in samples]
    if len(set(names)) != len(names):
        raise ConfigError(f"sample names must be unique, got {names}.")
    if len(samples) < 2:
        raise ConfigError(f"a train/test split needs at least two samples, got {len(samples)}.")
    n_test = min(max(1, int(round(float(test_fraction) * len(samples)))), len(samples) - 1)
    train, test = train_test_split(list(samples), test_size=n_test, random_state=int(seed))
    logger.info(
        "Split %d samples: train=%s test=%s",
        len(samples),
        [s.name for s in train],
        [s.name for s in test],
    )
    return list(train), list(test)
