#!/usr/bin/env python3
"""Fit a joint model and run the validation protocol in one go."""

from __future__ import annotations

import argparse

from stjoint.config import load_run_config
from stjoint.pipeline.io import setup_logger
from stjoint.pipeline.workflow import run_training, run_validation


def main() -> int:
    """Train on the configured split, then validate on the held-out samples.

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="stjoint fit + validate")
    parser.add_argument(
        "--config",
        default="configs/example.json",
        help="Path to run config",
    )
    args = parser.parse_args()

    run_config = load_run_config(args.config)
    logger = setup_logger(run_config.outdir / "logs" / "stjoint.log", "stjoint")
    result = run_training(run_config)
    reports = run_validation(run_config, result.model)
    for name, report in reports.items():
        logger.info("%s: %s", name, report.summary())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
