"""Row/column label alignment across modalities and slide instances."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

import numpy as np

from stjoint.core.types import Modality
from stjoint.errors import AlignmentError

logger = logging.getLogger(__name__)


def _describe(modalities: Sequence[Modality], axis: str) -> str:
    parts = []
    for m in modalities:
        n = len(m.row_labels) if axis == "rows" else len(m.col_labels)
        parts.append(f"{m.name}({n} {axis})")
    return ", ".join(parts)


def common_labels(label_sets: Sequence[Sequence[str]]) -> list[str]:
    """Sorted intersection of several label collections."""
    if not label_sets:
        return []
    common = set(str(v) for v in label_sets[0])
    for labels in label_sets[1:]:
        common &= set(str(v) for v in labels)
    return sorted(common)


def align_rows(modalities: Mapping[str, Modality]) -> dict[str, Modality]:
    """Restrict every modality to the shared row labels, in sorted order."""
    if not modalities:
        raise AlignmentError("align_rows requires at least one modality.")
    mods = list(modalities.values())
    rows = common_labels([m.row_labels for m in mods])
    if not rows:
        raise AlignmentError(f"No common row labels across modalities: {_describe(mods, 'rows')}.")
    for m in mods:
        n_lost = len(m.row_labels) - len(rows)
        if n_lost:
            logger.info("Row alignment drops %d of %d rows from %s", n_lost, len(m.row_labels), m.name)
    return {name: m.select(rows=rows) for name, m in modalities.items()}


def align_columns(instances: Sequence[Modality]) -> list[Modality]:
    """Restrict instances of one modality (e.g. slides) to their common columns."""
    if not instances:
        raise AlignmentError("align_columns requires at least one instance.")
    cols = common_labels([m.col_labels for m in instances])
    if not cols:
        raise AlignmentError(
            f"No common column labels across instances: {_describe(instances, 'columns')}."
        )
    return [m.select(cols=cols) for m in instances]


def stack_instances(
    instances: Sequence[Modality],
    prefixes: Sequence[str] | None = None,
    name: str | None = None,
) -> Modality:
    """Row-concatenate column-aligned instances of one modality.

    Row labels become ``<prefix>:<label>`` when prefixes are given so spots
    from different slides stay distinct.
    """
    if not instances:
        raise AlignmentError("stack_instances requires at least one instance.")
    cols = instances[0].col_labels
    for m in instances[1:]:
        if m.col_labels != cols:
            raise AlignmentError(
                f"Instances must share column labels before stacking ({_describe(instances, 'columns')})."
            )
    if prefixes is not None and len(prefixes) != len(instances):
        raise ValueError("prefixes must match the number of instances.")
    rows: list[str] = []
    for i, m in enumerate(instances):
        if prefixes is None:
            rows.extend(m.row_labels)
        else:
            rows.extend(f"{prefixes[i]}:{r}" for r in m.row_labels)
    return Modality(
        name=name or instances[0].name,
        matrix=np.vstack([m.matrix for m in instances]),
        row_labels=tuple(rows),
        col_labels=cols,
    )


def align(
    modalities: Mapping[str, Modality | Sequence[Modality]],
    prefixes: Sequence[str] | None = None,
) -> dict[str, Modality]:
    """Align columns within each modality's instances, then rows across modalities.

    A value may be a single ``Modality`` or a sequence of instances of the same
    modality (one per slide); instances are column-aligned and stacked.
    """
    merged: dict[str, Modality] = {}
    for name, value in modalities.items():
        if isinstance(value, Modality):
            merged[name] = value
            continue
        instances = align_columns(list(value))
        merged[name] = stack_instances(instances, prefixes=prefixes, name=name)
    return align_rows(merged)
