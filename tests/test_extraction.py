from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from stjoint.core.extraction import extract_spots, rotation_margin, spot_feature_names
from stjoint.core.types import CoordinateColumns, ExtractionConfig, SpotGeometry
from stjoint.errors import ConfigError, ExtractionBoundsWarning, ExtractionError


def _coords(rows: list[tuple[str, float, float]]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=["label", "x", "y"])


def _image(h: int = 40, w: int = 40, c: int = 3, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(0.0, 255.0, size=(h, w, c))


def test_flatten_feature_names_and_shape():
    img = _image()
    coords = _coords([("s0", 20, 20), ("s1", 15, 22)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=8))
    assert out.shape == (2, 8 * 8 * 3)
    assert list(out.index) == ["s0", "s1"]
    assert out.index.name == "spot"
    assert out.columns[0] == "px_0_0_c0"
    assert list(out.columns) == spot_feature_names(SpotGeometry(spot_size=8), ExtractionConfig(), 3)


def test_x_indexes_columns_and_y_indexes_rows():
    img = np.zeros((40, 50))
    img[:, 30] = 1.0
    coords = _coords([("s0", 30, 20)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=4))
    window = out.to_numpy().reshape(4, 4)
    # origin = round(30) - 2 = 28, so the bright column is window column 2
    assert np.all(window[:, 2] == 1.0)
    assert window.sum() == 4.0


def test_centre_rounds_half_up():
    img = np.zeros((20, 20))
    img[:, 9] = 1.0
    coords = _coords([("s0", 10.5, 10.0)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=2)).to_numpy().reshape(2, 2)
    # round_half_up(10.5) = 11 -> window columns 10..11, bright column 9 excluded
    assert out.sum() == 0.0


def test_drop_removes_out_of_bounds_spots_with_warning():
    img = _image(20, 20)
    coords = _coords([("in_a", 10, 10), ("edge", 1, 1), ("far", 18, 18), ("in_b", 9, 10)])
    with pytest.warns(ExtractionBoundsWarning, match="2 of 4 spots"):
        out = extract_spots(img, coords, SpotGeometry(spot_size=8))
    assert list(out.index) == ["in_a", "in_b"]


@pytest.mark.parametrize("bounds", ["reflect", "clamp"])
def test_padding_strategies_keep_every_spot(bounds):
    img = _image(20, 20)
    coords = _coords([("in_a", 10, 10), ("edge", 1, 1), ("far", 18, 18)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=8), ExtractionConfig(bounds=bounds))
    assert list(out.index) == ["in_a", "edge", "far"]
    assert np.isfinite(out.to_numpy()).all()


def test_clamp_repeats_edge_pixels():
    img = np.arange(100, dtype=float).reshape(10, 10)
    coords = _coords([("corner", 0, 0)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=4), ExtractionConfig(bounds="clamp"))
    window = out.to_numpy().reshape(4, 4)
    assert np.all(window[:2, :2] == img[0, 0])


def test_all_spots_dropped_raises():
    img = _image(10, 10)
    coords = _coords([("a", 0, 0), ("b", 9, 9)])
    with pytest.warns(ExtractionBoundsWarning):
        with pytest.raises(ExtractionError, match="every spot window"):
            extract_spots(img, coords, SpotGeometry(spot_size=8))


def test_extraction_is_deterministic():
    img = _image()
    coords = _coords([("a", 20, 20), ("b", 12.4, 25.6), ("c", 27.5, 14.5)])
    geom = SpotGeometry(spot_size=6, rotation=30.0, displacement_x=1.5)
    first = extract_spots(img, coords, geom)
    second = extract_spots(img, coords, geom)
    pd.testing.assert_frame_equal(first, second)


def test_quarter_rotation_matches_array_rotation():
    img = _image(seed=3)
    coords = _coords([("a", 20, 20)])
    base = extract_spots(img, coords, SpotGeometry(spot_size=6)).to_numpy().reshape(6, 6, 3)
    for turns, angle in ((1, 90.0), (2, 180.0), (3, 270.0), (3, -90.0)):
        rot = extract_spots(img, coords, SpotGeometry(spot_size=6, rotation=angle))
        np.testing.assert_array_equal(
            rot.to_numpy().reshape(6, 6, 3), np.rot90(base, turns, axes=(0, 1))
        )


def test_oblique_rotation_of_uniform_patch_is_uniform():
    img = np.full((40, 40), 7.0)
    coords = _coords([("a", 20, 20)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=8, rotation=45.0))
    assert out.shape == (1, 64)
    np.testing.assert_allclose(out.to_numpy(), 7.0)


def test_rotation_margin():
    assert rotation_margin(16, 0.0) == 0
    assert rotation_margin(16, 270.0) == 0
    assert rotation_margin(16, 45.0) > 0


def test_oblique_rotation_needs_margin_inside_image():
    img = _image(20, 20)
    coords = _coords([("a", 10, 10)])
    with pytest.warns(ExtractionBoundsWarning):
        with pytest.raises(ExtractionError):
            extract_spots(img, coords, SpotGeometry(spot_size=16, rotation=45.0))


def test_channel_stats_and_grayscale():
    img = _image()
    coords = _coords([("a", 20, 20)])
    stats = extract_spots(img, coords, SpotGeometry(spot_size=8), ExtractionConfig(pooling="channel_stats"))
    assert list(stats.columns[:5]) == ["c0_mean", "c0_std", "c0_q10", "c0_q50", "c0_q90"]
    assert stats.shape == (1, 15)
    gray = extract_spots(
        img, coords, SpotGeometry(spot_size=8),
        ExtractionConfig(pooling="channel_stats", grayscale=True),
    )
    assert gray.shape == (1, 5)
    row = gray.iloc[0]
    assert row["c0_q10"] <= row["c0_q50"] <= row["c0_q90"]


def test_circle_window_masks_corners():
    img = np.ones((30, 30))
    coords = _coords([("a", 15, 15)])
    out = extract_spots(img, coords, SpotGeometry(spot_size=8), ExtractionConfig(shape="circle"))
    window = out.to_numpy().reshape(8, 8)
    assert window[0, 0] == 0.0
    assert window[3, 3] == 1.0


def test_coordinate_columns_are_positional():
    img = _image()
    coords = pd.DataFrame({"y": [20.0], "junk": ["q"], "x": [18.0], "id": ["spot7"]})
    out = extract_spots(
        img, coords, SpotGeometry(spot_size=4), columns=CoordinateColumns(label=3, x=2, y=0)
    )
    assert list(out.index) == ["spot7"]


def test_bad_coordinate_tables_raise():
    img = _image()
    with pytest.raises(ExtractionError, match="column index"):
        extract_spots(img, _coords([("a", 1, 1)]), SpotGeometry(), columns=CoordinateColumns(x=5))
    with pytest.raises(ExtractionError, match="unique"):
        extract_spots(img, _coords([("a", 20, 20), ("a", 21, 21)]), SpotGeometry(spot_size=4))
    with pytest.raises(ExtractionError, match="empty"):
        extract_spots(img, _coords([]), SpotGeometry(spot_size=4))


def test_geometry_and_config_validation():
    with pytest.raises(ConfigError):
        SpotGeometry(spot_size=0)
    with pytest.raises(ConfigError):
        ExtractionConfig(bounds="wrap")
    with pytest.raises(ConfigError):
        CoordinateColumns(label=1, x=1, y=2)


def test_threaded_extraction_matches_serial():
    img = _image()
    coords = _coords([(f"s{i}", 10 + i, 12 + i) for i in range(12)])
    serial = extract_spots(img, coords, SpotGeometry(spot_size=6))
    threaded = extract_spots(img, coords, SpotGeometry(spot_size=6), ExtractionConfig(n_jobs=3))
    pd.testing.assert_frame_equal(serial, threaded)
