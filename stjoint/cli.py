"""Command-line interface for stjoint runs."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable

from stjoint.config import ReadOptions, load_run_config
from stjoint.core.extraction import extract_spots
from stjoint.core.transform import transform_frame
from stjoint.core.types import CoordinateColumns, ExtractionConfig, SpotGeometry
from stjoint.pipeline.io import (
    load_model,
    read_coordinates,
    read_feature_matrix,
    read_image,
    setup_logger,
    write_feature_matrix,
    write_predictions_h5ad,
)


def _log_path(outdir: Path) -> Path:
    return Path(outdir) / "logs" / "stjoint.log"


def extract_main(argv: Iterable[str] | None = None) -> int:
    """Write the spot feature matrix of one image.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="Extract spot features from an image")
    parser.add_argument("--image", required=True, help="Histology image file")
    parser.add_argument("--coordinates", required=True, help="Delimited coordinate table")
    parser.add_argument("--out", required=True, help="Output CSV (spots x features)")
    parser.add_argument("--spot-size", type=int, default=16)
    parser.add_argument("--rotation", type=float, default=0.0, help="Degrees, counterclockwise")
    parser.add_argument("--dx", type=float, default=0.0, help="Displacement along x (columns)")
    parser.add_argument("--dy", type=float, default=0.0, help="Displacement along y (rows)")
    parser.add_argument("--bounds", default="drop", choices=["drop", "reflect", "clamp"])
    parser.add_argument("--shape", default="square", choices=["square", "circle"])
    parser.add_argument("--pooling", default="flatten", choices=["flatten", "channel_stats"])
    parser.add_argument("--grayscale", action="store_true")
    parser.add_argument("--sep", default=",")
    parser.add_argument("--no-header", action="store_true", help="Coordinate table has no header")
    parser.add_argument("--label-col", type=int, default=0)
    parser.add_argument("--x-col", type=int, default=1)
    parser.add_argument("--y-col", type=int, default=2)
    parser.add_argument("--n-jobs", type=int, default=1)
    args = parser.parse_args(list(argv) if argv is not None else None)

    options = ReadOptions(
        sep=args.sep,
        header=not args.no_header,
        columns=CoordinateColumns(label=args.label_col, x=args.x_col, y=args.y_col),
    )
    out = Path(args.out)
    logger = setup_logger(_log_path(out.parent), "stjoint")
    features = extract_spots(
        read_image(args.image),
        read_coordinates(args.coordinates, options),
        SpotGeometry(
            spot_size=args.spot_size,
            rotation=args.rotation,
            displacement_x=args.dx,
            displacement_y=args.dy,
        ),
        ExtractionConfig(
            bounds=args.bounds,
            shape=args.shape,
            pooling=args.pooling,
            grayscale=args.grayscale,
            n_jobs=args.n_jobs,
        ),
    )
    write_feature_matrix(out, features)
    logger.info("Wrote %d spots x %d features to %s", features.shape[0], features.shape[1], out)
    print(f"spots={features.shape[0]}")
    print(f"features={features.shape[1]}")
    return 0


def fit_main(argv: Iterable[str] | None = None) -> int:
    """Fit a joint model from a JSON run config."""
    parser = argparse.ArgumentParser(description="Fit a joint model")
    parser.add_argument("--config", required=True, help="JSON run config")
    parser.add_argument("--outdir", default=None, help="Override the config's outdir")
    args = parser.parse_args(list(argv) if argv is not None else None)

    from stjoint.pipeline.workflow import run_training

    run_config = load_run_config(args.config)
    if args.outdir is not None:
        run_config = _with_outdir(run_config, args.outdir)
    setup_logger(_log_path(run_config.outdir), "stjoint")
    result = run_training(run_config)
    print(f"model={result.paths['model']}")
    print(f"converged={result.model.converged}")
    for name in result.model.modalities:
        print(f"r2[{name}]={result.model.r2[name]:.4f}")
    return 0


def transform_main(argv: Iterable[str] | None = None) -> int:
    """Apply a saved model to a feature matrix."""
    parser = argparse.ArgumentParser(description="Cross-modal transform with a saved model")
    parser.add_argument("--model", required=True, help="Saved model (.npz)")
    parser.add_argument("--input", required=True, help="Source modality CSV (rows x features)")
    parser.add_argument("--from", dest="source", default="spot")
    parser.add_argument("--to", dest="target", default="gex")
    parser.add_argument("--out", required=True, help="Output .csv or .h5ad")
    args = parser.parse_args(list(argv) if argv is not None else None)

    out = Path(args.out)
    logger = setup_logger(_log_path(out.parent), "stjoint")
    model = load_model(args.model)
    pred = transform_frame(model, args.source, args.target, read_feature_matrix(args.input))
    if out.suffix.lower() == ".h5ad":
        write_predictions_h5ad(out, pred, uns={"source": args.source, "target": args.target})
    else:
        write_feature_matrix(out, pred)
    logger.info("Predicted %s for %d rows -> %s", args.target, len(pred), out)
    print(f"rows={len(pred)}")
    return 0


def validate_main(argv: Iterable[str] | None = None) -> int:
    """Run the validation protocol for a saved model on the held-out samples."""
    parser = argparse.ArgumentParser(description="Validate a saved model")
    parser.add_argument("--config", required=True, help="JSON run config")
    parser.add_argument("--model", default=None, help="Saved model (default: <outdir>/model.npz)")
    parser.add_argument("--outdir", default=None, help="Override the config's outdir")
    args = parser.parse_args(list(argv) if argv is not None else None)

    from stjoint.pipeline.workflow import run_validation

    run_config = load_run_config(args.config)
    if args.outdir is not None:
        run_config = _with_outdir(run_config, args.outdir)
    setup_logger(_log_path(run_config.outdir), "stjoint")
    model_path = Path(args.model) if args.model else Path(run_config.outdir) / "model.npz"
    reports = run_validation(run_config, load_model(model_path))
    for name, report in reports.items():
        summary = report.summary()
        print(
            f"sample={name} rotation_ok={summary['rotation_all_nonsignificant']} "
            f"displacement_monotonic={summary['displacement_monotonic']} "
            f"smoothness_adj_r2={summary['smoothness_median_adj_r2']:.3f}"
        )
    return 0


def _with_outdir(run_config, outdir: str):
    from dataclasses import replace

    return replace(run_config, outdir=Path(outdir))


def main(argv: Iterable[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(description="stjoint CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("extract", help="Extract spot features from an image")
    sub.add_parser("fit", help="Fit a joint model from a run config")
    sub.add_parser("transform", help="Apply a saved model to a feature matrix")
    sub.add_parser("validate", help="Run the validation protocol")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "extract":
        return extract_main(remainder)
    if args.command == "fit":
        return fit_main(remainder)
    if args.command == "transform":
        return transform_main(remainder)
    if args.command == "validate":
        return validate_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
