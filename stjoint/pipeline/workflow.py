"""End-to-end training and validation runs driven by a ``RunConfig``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

import pandas as pd

from stjoint.config import RunConfig
from stjoint.core.align import align, align_columns, align_rows
from stjoint.core.extraction import extract_spots
from stjoint.core.factorization import fit
from stjoint.core.types import CoordinateColumns, FittedModel, Modality, SpotGeometry
from stjoint.errors import AlignmentError, ConfigError
from stjoint.pipeline.io import (
    ensure_dir,
    save_model,
    write_feature_matrix,
    write_json,
)
from stjoint.pipeline.preprocess import drop_constant_columns, normalize_expression
from stjoint.pipeline.samples import TissueSample, split_samples
from stjoint.plotting.styles import apply_plot_style, plot_style_dict
from stjoint.plotting.validation import plot_comparisons, plot_smoothness
from stjoint.validation import ValidationHarness, ValidationReport

logger = logging.getLogger(__name__)

EXPRESSION_GENES_KEY = "expression_genes"


@dataclass(frozen=True)
class TrainingResult:
    model: FittedModel
    train: tuple[str, ...]
    test: tuple[str, ...]
    paths: dict[str, Path] = field(default_factory=dict)


def _check_two_modalities(run_config: RunConfig) -> None:
    topo = run_config.resolved_topology()
    expected = {run_config.transform.source, run_config.transform.target}
    if set(topo.modalities) != expected:
        raise ConfigError(
            f"pipeline runs join the image modality {run_config.transform.source!r} with the "
            f"expression modality {run_config.transform.target!r}; topology declares "
            f"{sorted(topo.modalities)}."
        )


def load_samples(run_config: RunConfig) -> list[TissueSample]:
    return [TissueSample.from_files(files, run_config.read) for files in run_config.samples]


def shared_expression_genes(
    samples: Sequence[TissueSample],
    run_config: RunConfig,
) -> tuple[str, ...]:
    """Genes profiled on every slide, sorted.

    Slides may come from different gene panels; held-out slides take part so
    the fitted vocabulary is present on each of them.
    """
    target = run_config.transform.target
    aligned = align_columns([Modality.from_frame(target, s.expression) for s in samples])
    genes = aligned[0].col_labels
    for sample in samples:
        n_lost = sample.expression.shape[1] - len(genes)
        if n_lost:
            logger.info(
                "Panel alignment drops %d of %d genes from %s",
                n_lost,
                sample.expression.shape[1],
                sample.name,
            )
    return genes


def sample_expression(
    sample: TissueSample,
    run_config: RunConfig,
    genes: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Normalized expression for one sample, restricted to `genes` first when given."""
    frame = sample.expression
    if genes is not None:
        missing = sorted(set(genes) - set(frame.columns))
        if missing:
            raise AlignmentError(
                f"sample {sample.name!r} lacks {len(missing)} shared genes "
                f"(first: {missing[:5]}); shape {frame.shape}."
            )
        frame = frame.loc[:, list(genes)]
    return normalize_expression(frame, run_config.preprocess)


def load_sample_modalities(
    sample: TissueSample,
    run_config: RunConfig,
    geometry: SpotGeometry | None = None,
    genes: Sequence[str] | None = None,
) -> dict[str, Modality]:
    """Expression + extracted image features for one sample, rows aligned."""
    geometry = run_config.geometry if geometry is None else geometry
    source = run_config.transform.source
    target = run_config.transform.target
    features = extract_spots(
        sample.image,
        sample.coordinates,
        geometry,
        run_config.extraction,
        CoordinateColumns(),
    )
    mods = {
        target: Modality.from_frame(target, sample_expression(sample, run_config, genes)),
        source: Modality.from_frame(source, features),
    }
    return align_rows(mods)


def build_modalities(
    samples: Sequence[TissueSample],
    run_config: RunConfig,
    genes: Sequence[str] | None = None,
) -> dict[str, Modality]:
    """Align columns across samples, stack rows (``sample:spot``) and drop constant columns."""
    per_modality: dict[str, list[Modality]] = {}
    for sample in samples:
        for name, mod in load_sample_modalities(sample, run_config, genes=genes).items():
            per_modality.setdefault(name, []).append(mod)
    merged = align(per_modality, prefixes=[s.name for s in samples])
    if not run_config.preprocess.drop_constant:
        return merged
    out: dict[str, Modality] = {}
    for name, mod in merged.items():
        out[name] = Modality.from_frame(name, drop_constant_columns(mod.to_frame(), name=name))
    return out


def run_training(
    run_config: RunConfig,
    samples: Sequence[TissueSample] | None = None,
) -> TrainingResult:
    """Split samples, fit on the training side and persist model + held-out matrices.

    Held-out matrices carry exactly the fitted columns of each modality.
    """
    _check_two_modalities(run_config)
    samples = load_samples(run_config) if samples is None else list(samples)
    genes = shared_expression_genes(samples, run_config)
    train, test = split_samples(samples, run_config.split.test_fraction, run_config.split.seed)
    modalities = build_modalities(train, run_config, genes=genes)
    model = fit(modalities, run_config.resolved_topology(), run_config.model)
    model = replace(model, metadata={**model.metadata, EXPRESSION_GENES_KEY: list(genes)})

    outdir = Path(run_config.outdir)
    ensure_dir(outdir)
    paths: dict[str, Path] = {"model": save_model(outdir / "model.npz", model)}
    for sample in test:
        mods = load_sample_modalities(sample, run_config, genes=genes)
        for name in (run_config.transform.source, run_config.transform.target):
            frame = mods[name].select(cols=model.col_labels[name]).to_frame()
            paths[f"{sample.name}:{name}"] = write_feature_matrix(
                outdir / "test" / f"{sample.name}_{name}.csv", frame
            )

    metrics = {
        "train_samples": [s.name for s in train],
        "test_samples": [s.name for s in test],
        "n_train_spots": len(model.row_labels),
        "n_shared_genes": len(genes),
        "rmse": dict(model.rmse),
        "r2": dict(model.r2),
        "n_iter": model.n_iter,
        "converged": model.converged,
        "final_objective": model.objective[-1],
    }
    paths["metrics"] = outdir / "metrics.json"
    write_json(paths["metrics"], metrics)
    logger.info("Training finished: %s", metrics)
    return TrainingResult(
        model=model,
        train=tuple(s.name for s in train),
        test=tuple(s.name for s in test),
        paths=paths,
    )


def validate_sample(
    sample: TissueSample,
    model: FittedModel,
    run_config: RunConfig,
) -> ValidationReport:
    """Run the harness on one slide, normalizing over the gene panel the model was trained on."""
    genes = model.metadata.get(EXPRESSION_GENES_KEY)
    harness = ValidationHarness(
        model,
        sample.image,
        sample.coordinates,
        sample_expression(sample, run_config, genes),
        source=run_config.transform.source,
        target=run_config.transform.target,
        geometry=run_config.geometry,
        extraction=run_config.extraction,
        columns=CoordinateColumns(),
        config=run_config.validation,
    )
    return harness.run()


def run_validation(
    run_config: RunConfig,
    model: FittedModel,
    samples: Sequence[TissueSample] | None = None,
) -> dict[str, ValidationReport]:
    """Validate ``model`` on the held-out samples and write tables and figures.

    When `samples` is omitted every configured sample is loaded and the same
    deterministic split as ``run_training`` selects the held-out ones.
    """
    if samples is None:
        _, samples = split_samples(
            load_samples(run_config), run_config.split.test_fraction, run_config.split.seed
        )
    reports: dict[str, ValidationReport] = {}
    root = Path(run_config.outdir) / "validation"
    apply_plot_style()
    write_json(
        root / "manifest.json",
        {
            "samples": [s.name for s in samples],
            "source": run_config.transform.source,
            "target": run_config.transform.target,
            "expression_genes": model.metadata.get(EXPRESSION_GENES_KEY),
            "plot_style": plot_style_dict(),
        },
    )
    for sample in samples:
        report = validate_sample(sample, model, run_config)
        outdir = root / sample.name
        ensure_dir(outdir)
        for table in ("rotation", "displacement", "off_axis", "smoothness"):
            getattr(report, table).to_csv(outdir / f"{table}.csv", index=False)
        report.sweep_curves.to_csv(outdir / "sweep_curves.csv")
        write_json(outdir / "summary.json", {**report.summary(), **report.metadata})
        plot_comparisons(report, outdir / "comparisons.png", alpha=run_config.validation.alpha)
        plot_smoothness(report.sweep_curves, report.smoothness, outdir / "smoothness.png")
        reports[sample.name] = report
    return reports
