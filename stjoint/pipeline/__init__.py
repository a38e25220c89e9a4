"""Sample loading, preprocessing and end-to-end run entrypoints."""


def run_training(*args, **kwargs):
    from stjoint.pipeline.workflow import run_training as _run_training

    return _run_training(*args, **kwargs)


def run_validation(*args, **kwargs):
    from stjoint.pipeline.workflow import run_validation as _run_validation

    return _run_validation(*args, **kwargs)


__all__ = ["run_training", "run_validation"]
