from __future__ import annotations

import logging

import numpy as np
import pytest

from stjoint.core.align import align, align_columns, align_rows, common_labels, stack_instances
from stjoint.core.types import Modality
from stjoint.errors import AlignmentError


def _mod(name: str, rows: list[str], cols: list[str], offset: float = 0.0) -> Modality:
    mat = np.arange(len(rows) * len(cols), dtype=float).reshape(len(rows), len(cols)) + offset
    return Modality(name=name, matrix=mat, row_labels=tuple(rows), col_labels=tuple(cols))


def test_common_labels_sorted_intersection():
    assert common_labels([["C", "A", "B"], ["D", "C", "B"]]) == ["B", "C"]
    assert common_labels([]) == []


def test_align_rows_keeps_shared_labels_in_order(caplog):
    caplog.set_level(logging.INFO)
    gex = _mod("gex", ["A", "B", "C"], ["g1", "g2"])
    spot = _mod("spot", ["C", "D", "B"], ["f1", "f2", "f3"], offset=100.0)
    out = align_rows({"gex": gex, "spot": spot})
    assert out["gex"].row_labels == ("B", "C")
    assert out["spot"].row_labels == ("B", "C")
    # rows travel with their values
    np.testing.assert_array_equal(out["spot"].matrix[0], spot.matrix[2])
    np.testing.assert_array_equal(out["gex"].matrix[1], gex.matrix[2])
    assert "drops 1 of 3 rows" in caplog.text


def test_align_rows_without_overlap_raises():
    gex = _mod("gex", ["A", "B"], ["g1"])
    spot = _mod("spot", ["C", "D"], ["f1"])
    with pytest.raises(AlignmentError, match=r"gex\(2 rows\), spot\(2 rows\)"):
        align_rows({"gex": gex, "spot": spot})


def test_align_columns_and_stack_instances():
    s1 = _mod("gex", ["a", "b"], ["g1", "g2", "g3"])
    s2 = _mod("gex", ["a", "c"], ["g3", "g1"])
    aligned = align_columns([s1, s2])
    assert [m.col_labels for m in aligned] == [("g1", "g3"), ("g1", "g3")]
    stacked = stack_instances(aligned, prefixes=["s1", "s2"])
    assert stacked.row_labels == ("s1:a", "s1:b", "s2:a", "s2:c")
    assert stacked.shape == (4, 2)
    np.testing.assert_array_equal(stacked.matrix[2], [s2.matrix[0, 1], s2.matrix[0, 0]])


def test_align_columns_without_overlap_raises():
    with pytest.raises(AlignmentError, match="No common column labels"):
        align_columns([_mod("gex", ["a"], ["g1"]), _mod("gex", ["a"], ["g2"])])


def test_stack_requires_identical_columns():
    with pytest.raises(AlignmentError):
        stack_instances([_mod("gex", ["a"], ["g1", "g2"]), _mod("gex", ["b"], ["g2", "g1"])])


def test_align_multi_slide():
    out = align(
        {
            "gex": [_mod("gex", ["x", "y"], ["g1", "g2"]), _mod("gex", ["x"], ["g2", "g1", "g9"])],
            "spot": [_mod("spot", ["x", "y"], ["f1"]), _mod("spot", ["x", "z"], ["f1"])],
        },
        prefixes=["s1", "s2"],
    )
    assert out["gex"].row_labels == ("s1:x", "s1:y", "s2:x")
    assert out["spot"].row_labels == out["gex"].row_labels
    assert out["gex"].col_labels == ("g1", "g2")


def test_modality_validates_labels_and_freezes_matrix():
    with pytest.raises(ValueError, match="does not match"):
        Modality("gex", np.zeros((2, 2)), ("a",), ("g1", "g2"))
    with pytest.raises(ValueError, match="unique"):
        Modality("gex", np.zeros((2, 1)), ("a", "a"), ("g1",))
    mod = _mod("gex", ["a"], ["g1"])
    with pytest.raises(ValueError):
        mod.matrix[0, 0] = 5.0
