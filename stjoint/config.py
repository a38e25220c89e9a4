"""Configuration loading utilities for stjoint runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from stjoint.core.topology import JoinTopology
from stjoint.core.types import (
    CoordinateColumns,
    ExtractionConfig,
    ModelConfig,
    SpotGeometry,
    ValidationConfig,
)
from stjoint.errors import ConfigError, StJointError

TOP_LEVEL_KEYS: tuple[str, ...] = (
    "samples",
    "read",
    "extraction",
    "transform",
    "model",
    "topology",
    "preprocess",
    "split",
    "validation",
    "outdir",
)


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a run config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


@dataclass(frozen=True)
class ReadOptions:
    """Delimited-text parsing options shared by coordinate and expression tables."""

    sep: str = ","
    header: bool = True
    quotechar: str = '"'
    columns: CoordinateColumns = CoordinateColumns()


@dataclass(frozen=True)
class SampleFiles:
    name: str
    coordinates: Path
    expression: Path
    image: Path


@dataclass(frozen=True)
class TransformConfig:
    source: str = "spot"
    target: str = "gex"

    def __post_init__(self) -> None:
        if not self.source or not self.target:
            raise ConfigError("transform 'from' and 'to' must be non-empty modality names.")


@dataclass(frozen=True)
class PreprocessConfig:
    normalize_total: bool = True
    log1p: bool = True
    target_sum: float = 1e4
    drop_constant: bool = True

    def __post_init__(self) -> None:
        if not float(self.target_sum) > 0.0:
            raise ConfigError("preprocess.target_sum must be positive.")


@dataclass(frozen=True)
class SplitConfig:
    test_fraction: float = 0.25
    seed: int = 0

    def __post_init__(self) -> None:
        if not 0.0 < float(self.test_fraction) < 1.0:
            raise ConfigError("split.test_fraction must lie in (0, 1).")


@dataclass(frozen=True)
class RunConfig:
    """Fully-resolved run configuration."""

    samples: tuple[SampleFiles, ...]
    read: ReadOptions = ReadOptions()
    geometry: SpotGeometry = SpotGeometry()
    extraction: ExtractionConfig = ExtractionConfig()
    transform: TransformConfig = TransformConfig()
    model: ModelConfig = ModelConfig()
    topology: JoinTopology | None = None
    preprocess: PreprocessConfig = PreprocessConfig()
    split: SplitConfig = SplitConfig()
    validation: ValidationConfig = ValidationConfig()
    outdir: Path = Path("stjoint_out")
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def resolved_topology(self) -> JoinTopology:
        if self.topology is not None:
            return self.topology
        return JoinTopology.shared_codes([self.transform.target, self.transform.source])


def _section(doc: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = doc.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"config section {key!r} must be an object, got {type(value).__name__}.")
    return dict(value)


def _take(section: dict[str, Any], name: str, allowed: tuple[str, ...]) -> dict[str, Any]:
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ConfigError(f"unknown keys in config section {name!r}: {unknown}")
    return {k: section[k] for k in allowed if k in section}


def _resolve_path(value: Any, base: Path | None) -> Path:
    p = Path(str(value))
    if base is not None and not p.is_absolute():
        p = base / p
    return p


def _samples(raw: Any, base: Path | None) -> tuple[SampleFiles, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("config 'samples' must be a non-empty list.")
    out: list[SampleFiles] = []
    for i, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ConfigError(f"samples[{i}] must be an object.")
        entry = _take(dict(item), f"samples[{i}]", ("name", "coordinates", "expression", "image"))
        missing = [k for k in ("coordinates", "expression", "image") if k not in entry]
        if missing:
            raise ConfigError(f"samples[{i}] is missing {missing}.")
        out.append(
            SampleFiles(
                name=str(entry.get("name", f"sample{i}")),
                coordinates=_resolve_path(entry["coordinates"], base),
                expression=_resolve_path(entry["expression"], base),
                image=_resolve_path(entry["image"], base),
            )
        )
    names = [s.name for s in out]
    if len(set(names)) != len(names):
        raise ConfigError(f"sample names must be unique, got {names}.")
    return tuple(out)


def build_run_config(doc: Mapping[str, Any], base_dir: str | Path | None = None) -> RunConfig:
    """Map a config document onto typed run settings.

    Relative sample paths are resolved against `base_dir` when given.
    Type and range problems surface as ``ConfigError``.
    """
    unknown = sorted(set(doc) - set(TOP_LEVEL_KEYS))
    if unknown:
        raise ConfigError(f"unknown top-level config keys: {unknown}")
    base = Path(base_dir) if base_dir is not None else None

    try:
        read = _take(_section(doc, "read"), "read", ("sep", "header", "quotechar", "coordinate_columns"))
        cols = _take(dict(read.pop("coordinate_columns", {}) or {}), "read.coordinate_columns", ("label", "x", "y"))
        read_opts = ReadOptions(
            sep=str(read.get("sep", ",")),
            header=bool(read.get("header", True)),
            quotechar=str(read.get("quotechar", '"')),
            columns=CoordinateColumns(**{k: int(v) for k, v in cols.items()}),
        )

        ext = _take(
            _section(doc, "extraction"),
            "extraction",
            (
                "spot_size", "rotation", "displacement_x", "displacement_y",
                "bounds", "shape", "pooling", "grayscale", "interpolation_order", "n_jobs",
            ),
        )
        geometry = SpotGeometry(
            spot_size=int(ext.pop("spot_size", 16)),
            rotation=float(ext.pop("rotation", 0.0)),
            displacement_x=float(ext.pop("displacement_x", 0.0)),
            displacement_y=float(ext.pop("displacement_y", 0.0)),
        )
        extraction = ExtractionConfig(**ext)

        tr = _take(_section(doc, "transform"), "transform", ("from", "to"))
        transform = TransformConfig(source=str(tr.get("from", "spot")), target=str(tr.get("to", "gex")))

        model_doc = _take(
            _section(doc, "model"),
            "model",
            ("k_dim", "i_dim", "j_dim", "init", "default_init", "max_iter", "tol", "ridge", "seed", "weights"),
        )
        model = ModelConfig(**model_doc)

        topo_doc = _section(doc, "topology")
        topology = JoinTopology.from_dict(topo_doc) if topo_doc else None
        if topology is not None:
            for role, name in (("from", transform.source), ("to", transform.target)):
                if name not in topology.modalities:
                    raise ConfigError(f"transform.{role}={name!r} is not declared in the topology.")

        pre = PreprocessConfig(
            **_take(_section(doc, "preprocess"), "preprocess",
                    ("normalize_total", "log1p", "target_sum", "drop_constant"))
        )
        split = SplitConfig(**_take(_section(doc, "split"), "split", ("test_fraction", "seed")))

        val = _take(
            _section(doc, "validation"),
            "validation",
            (
                "rotations", "displacements", "off_axis_shift", "sweep", "sweep_axis",
                "alpha", "test", "spline_degree", "spline_smoothing", "n_jobs",
            ),
        )
        for key in ("rotations", "displacements", "sweep"):
            if key in val:
                val[key] = tuple(float(v) for v in val[key])
        validation = ValidationConfig(**val)
    except ConfigError:
        raise
    except StJointError as exc:
        raise ConfigError(str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid config value: {exc}") from exc

    return RunConfig(
        samples=_samples(doc.get("samples"), base),
        read=read_opts,
        geometry=geometry,
        extraction=extraction,
        transform=transform,
        model=model,
        topology=topology,
        preprocess=pre,
        split=split,
        validation=validation,
        outdir=_resolve_path(doc.get("outdir", "stjoint_out"), base),
        raw=dict(doc),
    )


def load_run_config(path: str | Path) -> RunConfig:
    """``load_json_config`` + ``build_run_config`` with paths relative to the file."""
    config_path = Path(path)
    return build_run_config(load_json_config(config_path), base_dir=config_path.parent)
