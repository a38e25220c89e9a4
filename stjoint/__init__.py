"""stjoint public API."""

from stjoint._version import __version__
from stjoint.core.extraction import extract_spots
from stjoint.core.factorization import fit, fit_frames
from stjoint.core.topology import JoinTopology
from stjoint.core.transform import embed, transform, transform_frame
from stjoint.core.types import (
    ExtractionConfig,
    FittedModel,
    Modality,
    ModelConfig,
    SpotGeometry,
    ValidationConfig,
)
from stjoint.validation import ValidationHarness, ValidationReport


def run_training(*args, **kwargs):
    """Lazy wrapper to avoid importing scanpy at import time."""
    from stjoint.pipeline.workflow import run_training as _run_training

    return _run_training(*args, **kwargs)


__all__ = [
    "__version__",
    "ExtractionConfig",
    "FittedModel",
    "JoinTopology",
    "Modality",
    "ModelConfig",
    "SpotGeometry",
    "ValidationConfig",
    "ValidationHarness",
    "ValidationReport",
    "embed",
    "extract_spots",
    "fit",
    "fit_frames",
    "run_training",
    "transform",
    "transform_frame",
]
