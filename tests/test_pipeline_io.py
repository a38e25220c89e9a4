from __future__ import annotations

import logging
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from PIL import Image

from stjoint.config import ReadOptions
from stjoint.core.factorization import fit
from stjoint.core.topology import JoinTopology
from stjoint.core.transform import transform
from stjoint.core.types import CoordinateColumns, Modality, ModelConfig
from stjoint.pipeline.io import (
    load_model,
    read_coordinates,
    read_expression,
    read_feature_matrix,
    read_image,
    save_model,
    setup_logger,
    write_feature_matrix,
    write_json,
    write_predictions_h5ad,
)
from stjoint.pipeline.preprocess import drop_constant_columns, normalize_expression


def _model(private_incode: bool = False):
    rng = np.random.default_rng(0)
    latent = rng.standard_normal((30, 2))
    rows = tuple(f"r{i}" for i in range(30))
    mods = {
        "gex": Modality("gex", latent @ rng.standard_normal((2, 8)), rows, tuple(f"g{i}" for i in range(8))),
        "spot": Modality("spot", latent @ rng.standard_normal((2, 10)), rows, tuple(f"f{i}" for i in range(10))),
    }
    tag = "private" if private_incode else "all"
    topo = JoinTopology(tags={m: {"incode": tag} for m in mods})
    return fit(mods, topo, ModelConfig(k_dim=2)), mods


@pytest.mark.parametrize("private_incode", [False, True])
def test_model_save_load_round_trip(tmp_path: Path, private_incode: bool):
    model, mods = _model(private_incode)
    path = save_model(tmp_path / "model.npz", model)
    loaded = load_model(path)
    assert loaded.modalities == model.modalities
    assert loaded.row_labels == model.row_labels
    assert loaded.col_labels == model.col_labels
    assert loaded.assignment == model.assignment
    assert loaded.converged == model.converged
    assert loaded.objective == model.objective
    for key, arr in model.sample_codes.items():
        np.testing.assert_array_equal(loaded.sample_codes[key], arr)
    for key, arr in model.couplings.items():
        np.testing.assert_array_equal(loaded.couplings[key], arr)
    x = mods["spot"].matrix[:5]
    np.testing.assert_array_equal(
        transform(loaded, "spot", "gex", x), transform(model, "spot", "gex", x)
    )
    assert not loaded.feature_code("gex").flags.writeable


def test_load_model_rejects_foreign_archive(tmp_path: Path):
    path = tmp_path / "other.npz"
    np.savez_compressed(path, a=np.zeros(3))
    with pytest.raises(ValueError, match="not a stjoint model"):
        load_model(path)
    with pytest.raises(FileNotFoundError):
        load_model(tmp_path / "missing.npz")


def test_read_coordinates_by_column_index(tmp_path: Path):
    path = tmp_path / "coords.tsv"
    path.write_text("10.0\tfoo\ts1\t20.0\n11.5\tbar\ts2\t21.0\n", encoding="utf-8")
    options = ReadOptions(sep="\t", header=False, columns=CoordinateColumns(label=2, x=0, y=3))
    coords = read_coordinates(path, options)
    assert list(coords.columns) == ["label", "x", "y"]
    assert list(coords["label"]) == ["s1", "s2"]
    np.testing.assert_allclose(coords["y"], [20.0, 21.0])


def test_read_expression(tmp_path: Path):
    path = tmp_path / "counts.csv"
    path.write_text("spot,A,B\ns1,1,2\ns2,3,4\n", encoding="utf-8")
    expr = read_expression(path)
    assert list(expr.index) == ["s1", "s2"]
    assert list(expr.columns) == ["A", "B"]
    assert expr.dtypes.eq(np.float64).all()
    dup = tmp_path / "dup.csv"
    dup.write_text("spot,A\ns1,1\ns1,2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="duplicate"):
        read_expression(dup)


def test_read_image_modes(tmp_path: Path):
    rgb = np.zeros((6, 8, 3), dtype=np.uint8)
    rgb[2, 3] = [10, 20, 30]
    Image.fromarray(rgb).save(tmp_path / "rgb.png")
    arr = read_image(tmp_path / "rgb.png")
    assert arr.shape == (6, 8, 3)
    assert arr.dtype == np.float64
    np.testing.assert_array_equal(arr[2, 3], [10.0, 20.0, 30.0])

    Image.fromarray(np.full((5, 5), 7, dtype=np.uint8)).save(tmp_path / "gray.png")
    gray = read_image(tmp_path / "gray.png")
    assert gray.shape == (5, 5, 1)

    Image.fromarray(np.zeros((4, 4, 4), dtype=np.uint8)).save(tmp_path / "rgba.png")
    assert read_image(tmp_path / "rgba.png").shape == (4, 4, 3)

    Image.fromarray(rgb).convert("P").save(tmp_path / "palette.png")
    assert read_image(tmp_path / "palette.png").shape == (6, 8, 3)


def test_read_image_keeps_16_bit_intensities(tmp_path: Path):
    deep = np.array([[0, 300], [4095, 60000]], dtype=np.uint16)
    Image.fromarray(deep).save(tmp_path / "deep.png")
    arr = read_image(tmp_path / "deep.png")
    assert arr.shape == (2, 2, 1)
    np.testing.assert_array_equal(arr[:, :, 0], deep.astype(np.float64))


def test_feature_matrix_and_h5ad_outputs(tmp_path: Path):
    frame = pd.DataFrame([[1.0, 2.0], [3.0, 4.0]], index=["s1", "s2"], columns=["px_0_0_c0", "px_0_1_c0"])
    path = write_feature_matrix(tmp_path / "feat" / "m.csv", frame)
    back = read_feature_matrix(path)
    pd.testing.assert_frame_equal(back, frame)

    out = write_predictions_h5ad(tmp_path / "pred.h5ad", frame, uns={"source": "spot"})
    adata = ad.read_h5ad(out)
    assert list(adata.obs_names) == ["s1", "s2"]
    assert list(adata.var_names) == ["px_0_0_c0", "px_0_1_c0"]
    assert adata.uns["source"] == "spot"


def test_setup_logger_writes_file(tmp_path: Path):
    log_path = tmp_path / "logs" / "run.log"
    logger = setup_logger(log_path, "stjoint.test_io")
    logger.info("hello run")
    for handler in logger.handlers:
        handler.flush()
    text = log_path.read_text(encoding="utf-8")
    assert "| INFO | hello run" in text
    assert len(logger.handlers) == 2
    setup_logger(log_path, "stjoint.test_io")
    assert len(logging.getLogger("stjoint.test_io").handlers) == 2


def test_write_json(tmp_path: Path):
    write_json(tmp_path / "a" / "b.json", {"z": 1, "a": [1, 2]})
    assert (tmp_path / "a" / "b.json").read_text(encoding="utf-8").startswith("{\n  \"a\"")


def test_normalize_and_drop_constant():
    counts = pd.DataFrame(
        [[1.0, 3.0, 5.0], [2.0, 2.0, 5.0], [0.0, 4.0, 5.0]],
        index=["a", "b", "c"],
        columns=["g1", "g2", "g3"],
    )
    norm = normalize_expression(counts)
    expected = np.log1p(counts.to_numpy() / counts.sum(axis=1).to_numpy()[:, None] * 1e4)
    np.testing.assert_allclose(norm.to_numpy(), expected, rtol=1e-5)
    assert list(norm.index) == ["a", "b", "c"]
    kept = drop_constant_columns(counts, name="gex")
    assert list(kept.columns) == ["g1", "g2"]
    with pytest.raises(ValueError, match="non-negative"):
        normalize_expression(-counts)
    with pytest.raises(ValueError, match="every column"):
        drop_constant_columns(counts[["g3"]])
