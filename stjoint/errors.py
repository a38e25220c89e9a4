"""Exception and warning taxonomy for stjoint."""

from __future__ import annotations


class StJointError(Exception):
    """Base class for unrecoverable stjoint errors."""


class AlignmentError(StJointError, ValueError):
    """No common rows/columns across modalities, or rows not aligned at fit time."""


class DimensionalityError(StJointError, ValueError):
    """Requested latent dimensionality is incompatible with the data shape."""


class ShapeMismatchError(StJointError, ValueError):
    """Transform input does not match the fitted modality's feature count."""


class UnknownModalityError(StJointError, KeyError):
    """Modality name is not part of the fitted topology."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class TopologyError(StJointError, ValueError):
    """Join topology is invalid or does not link the requested modalities."""


class ExtractionError(StJointError, ValueError):
    """Spot extraction cannot produce any usable sample."""


class ConfigError(StJointError, ValueError):
    """Configuration document contains unknown or invalid fields."""


class ExtractionBoundsWarning(RuntimeWarning):
    """A spot window fell outside the image and the spot was dropped."""


class FitNotConverged(RuntimeWarning):
    """Alternating minimization stopped at max_iter before meeting tolerance."""
