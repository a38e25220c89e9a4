"""Core compute subpackage."""

from stjoint.core.align import align, align_columns, align_rows, common_labels, stack_instances
from stjoint.core.extraction import extract_spots, spot_feature_names
from stjoint.core.factorization import fit, fit_frames, partial_svd
from stjoint.core.topology import JoinTopology
from stjoint.core.transform import (
    decode,
    embed,
    reconstruct_training,
    transform,
    transform_frame,
)
from stjoint.core.types import (
    CoordinateColumns,
    ExtractionConfig,
    FittedModel,
    Modality,
    ModelConfig,
    SpotGeometry,
    ValidationConfig,
)

__all__ = [
    "CoordinateColumns",
    "ExtractionConfig",
    "FittedModel",
    "JoinTopology",
    "Modality",
    "ModelConfig",
    "SpotGeometry",
    "ValidationConfig",
    "align",
    "align_columns",
    "align_rows",
    "common_labels",
    "decode",
    "embed",
    "extract_spots",
    "fit",
    "fit_frames",
    "partial_svd",
    "reconstruct_training",
    "spot_feature_names",
    "stack_instances",
    "transform",
    "transform_frame",
]
