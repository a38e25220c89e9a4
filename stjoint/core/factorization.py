"""Joint low-rank factorization of aligned modalities by alternating ridge least squares.

Each modality ``m`` is standardized (column-centred, divided by its RMS) and
approximated as ``X_m ~ A_m C_m B_m^T`` where the sample code ``A``, feature
code ``B`` and coupling ``C`` are either shared within a join group or private
to the modality (see ``JoinTopology``). The minimized objective is

    sum_m w_m ||X_m - A_m C_m B_m^T||^2
        + ridge * (sum ||A||^2 + sum ||B||^2 + sum ||C - I||^2)

Every block update is an exact ridge solve, so the objective never increases.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
import pandas as pd
import scipy.linalg
from scipy.sparse.linalg import svds

from stjoint.core.align import align_rows
from stjoint.core.topology import IDENTITY, JoinTopology
from stjoint.core.types import FittedModel, Modality, ModelConfig
from stjoint.core.utils import finite_2d, sign_normalize
from stjoint.errors import AlignmentError, DimensionalityError, FitNotConverged, TopologyError

logger = logging.getLogger(__name__)


@dataclass
class _Block:
    """Working state for one modality during the fit."""

    name: str
    work: np.ndarray
    weight: float
    const: float
    alpha: str
    beta: str
    incode: str


def partial_svd(
    x: np.ndarray,
    k: int,
    rng: np.random.Generator,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Top-``k`` singular triplets ``(u, s, v)``, descending and sign-normalized.

    Uses ARPACK with a seeded start vector for large matrices and a dense SVD
    when ``k`` is a large fraction of the smaller dimension.
    """
    arr = np.asarray(x, dtype=np.float64)
    r = min(arr.shape)
    k_i = int(k)
    if k_i <= 0 or k_i > r:
        raise DimensionalityError(f"partial_svd: k={k_i} must lie in [1, {r}] for shape {arr.shape}.")
    if k_i >= r // 2:
        u, s, vt = scipy.linalg.svd(arr, full_matrices=False)
        u, s, vt = u[:, :k_i], s[:k_i], vt[:k_i]
    else:
        v0 = rng.uniform(-1.0, 1.0, size=r)
        u, s, vt = svds(arr, k=k_i, v0=v0)
        order = np.argsort(s)[::-1]
        u, s, vt = u[:, order], s[order], vt[order]
    u, v = sign_normalize(np.asarray(u), np.asarray(vt).T)
    return u, np.asarray(s), v


def _ridge_right_solve(rhs: np.ndarray, gram: np.ndarray, ridge: float) -> np.ndarray:
    """Return ``rhs @ inv(gram + ridge * I)`` for symmetric ``gram``."""
    lhs = gram + float(ridge) * np.eye(gram.shape[0])
    return scipy.linalg.solve(lhs, rhs.T, assume_a="sym").T


def _check_inputs(
    modalities: Mapping[str, Modality],
    topology: JoinTopology,
    config: ModelConfig,
) -> tuple[list[str], tuple[str, ...]]:
    names = list(modalities)
    if not names:
        raise DimensionalityError("fit requires at least one modality.")
    topology.check_modalities(names)

    rows = modalities[names[0]].row_labels
    for name in names[1:]:
        if modalities[name].row_labels != rows:
            shapes = ", ".join(f"{m}{modalities[m].shape}" for m in names)
            raise AlignmentError(
                f"Modalities must share identical ordered row labels before fitting ({shapes}); "
                "run align_rows first."
            )

    k = int(config.k_dim)
    n = len(rows)
    if n < k:
        raise DimensionalityError(f"{n} aligned samples is fewer than k_dim={k}.")
    for name in names:
        mod = modalities[name]
        mat = finite_2d(f"modality {name!r}", mod.matrix)
        p = mat.shape[1]
        if p < k:
            raise DimensionalityError(f"modality {name!r} has {p} features, fewer than k_dim={k}.")
        flat = np.flatnonzero(np.ptp(mat, axis=0) == 0.0)
        if flat.size:
            head = ", ".join(mod.col_labels[i] for i in flat[:5])
            raise DimensionalityError(
                f"modality {name!r} has {flat.size} zero-variance columns ({head}"
                f"{', ...' if flat.size > 5 else ''}); drop them before fitting."
            )

    assignment = topology.assignment()
    by_beta: dict[str, list[str]] = {}
    for name in names:
        by_beta.setdefault(assignment[name]["beta"], []).append(name)
    for beta_id, members in by_beta.items():
        cols = modalities[members[0]].col_labels
        for m in members[1:]:
            if modalities[m].col_labels != cols:
                raise TopologyError(
                    f"{beta_id} is shared by {members} but their feature labels differ; "
                    "shared feature codes need a common vocabulary."
                )
    return names, rows


def fit(
    modalities: Mapping[str, Modality],
    topology: JoinTopology,
    config: ModelConfig = ModelConfig(),
) -> FittedModel:
    """Fit the joint factorization and return an immutable ``FittedModel``."""
    names, rows = _check_inputs(modalities, topology, config)
    k = int(config.k_dim)
    lam = float(config.ridge)
    n = len(rows)
    rng = np.random.default_rng(int(config.seed))
    assignment = topology.assignment()

    means: dict[str, np.ndarray] = {}
    scales: dict[str, float] = {}
    standardized: dict[str, np.ndarray] = {}
    for name in names:
        mat = np.asarray(modalities[name].matrix, dtype=np.float64)
        mu = mat.mean(axis=0)
        centred = mat - mu
        scale = float(np.linalg.norm(centred) / np.sqrt(centred.size))
        means[name] = mu
        scales[name] = scale
        standardized[name] = centred / scale

    def _members(cls: str) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for name in names:
            out.setdefault(assignment[name][cls], []).append(name)
        return dict(sorted(out.items()))

    alpha_members = _members("alpha")
    beta_members = _members("beta")
    incode_members = {
        key: val for key, val in _members("incode").items() if key != IDENTITY
    }

    # Feature-space compression: one orthonormal basis per feature-code parameter.
    feature_basis: dict[str, np.ndarray | None] = {}
    for beta_id, members in beta_members.items():
        p = standardized[members[0]].shape[1]
        j = config.j_dim
        if j is None or int(j) >= p:
            feature_basis[beta_id] = None
            continue
        stacked = np.vstack([standardized[m] for m in members])
        _, _, v = partial_svd(stacked, min(int(j), min(stacked.shape)), rng)
        feature_basis[beta_id] = v

    blocks: dict[str, _Block] = {}
    for name in names:
        xs = standardized[name]
        basis = feature_basis[assignment[name]["beta"]]
        work = xs if basis is None else xs @ basis
        const = float(np.sum(xs * xs) - np.sum(work * work))
        blocks[name] = _Block(
            name=name,
            work=work,
            weight=config.weight_for(name),
            const=max(const, 0.0),
            alpha=assignment[name]["alpha"],
            beta=assignment[name]["beta"],
            incode=assignment[name]["incode"],
        )

    # Sample-space compression: one orthonormal basis per sample-code parameter.
    sample_basis: dict[str, np.ndarray | None] = {}
    for alpha_id, members in alpha_members.items():
        i = config.i_dim
        if i is None or int(i) >= n:
            sample_basis[alpha_id] = None
            continue
        pooled = np.hstack([np.sqrt(blocks[m].weight) * blocks[m].work for m in members])
        u, _, _ = partial_svd(pooled, min(int(i), min(pooled.shape)), rng)
        sample_basis[alpha_id] = u

    def _project(alpha_id: str, a: np.ndarray) -> np.ndarray:
        u = sample_basis[alpha_id]
        return a if u is None else u @ (u.T @ a)

    A: dict[str, np.ndarray] = {}
    B: dict[str, np.ndarray] = {}
    C: dict[str, np.ndarray] = {key: np.eye(k) for key in incode_members}

    def coupling(block: _Block) -> np.ndarray:
        return np.eye(k) if block.incode == IDENTITY else C[block.incode]

    def update_alpha(alpha_id: str) -> None:
        gram = np.zeros((k, k))
        rhs = np.zeros((n, k))
        for m in alpha_members[alpha_id]:
            blk = blocks[m]
            g = B[blk.beta] @ coupling(blk).T
            gram += blk.weight * (g.T @ g)
            rhs += blk.weight * (blk.work @ g)
        A[alpha_id] = _project(alpha_id, _ridge_right_solve(rhs, gram, lam))

    def update_beta(beta_id: str) -> None:
        members = beta_members[beta_id]
        width = blocks[members[0]].work.shape[1]
        gram = np.zeros((k, k))
        rhs = np.zeros((width, k))
        for m in members:
            blk = blocks[m]
            h = A[blk.alpha] @ coupling(blk)
            gram += blk.weight * (h.T @ h)
            rhs += blk.weight * (blk.work.T @ h)
        B[beta_id] = _ridge_right_solve(rhs, gram, lam)

    def update_incode(incode_id: str) -> None:
        # Column-major vec: vec(A C B^T) = (B kron A) vec(C).
        lhs = lam * np.eye(k * k)
        rhs = lam * np.eye(k).reshape(-1, order="F")
        for m in incode_members[incode_id]:
            blk = blocks[m]
            a = A[blk.alpha]
            b = B[blk.beta]
            lhs += blk.weight * np.kron(b.T @ b, a.T @ a)
            rhs += blk.weight * (a.T @ blk.work @ b).reshape(-1, order="F")
        vec = scipy.linalg.solve(lhs, rhs, assume_a="sym")
        C[incode_id] = vec.reshape(k, k, order="F")

    def objective() -> float:
        total = 0.0
        for blk in blocks.values():
            resid = blk.work - A[blk.alpha] @ coupling(blk) @ B[blk.beta].T
            total += blk.weight * (float(np.sum(resid * resid)) + blk.const)
        penalty = sum(float(np.sum(a * a)) for a in A.values())
        penalty += sum(float(np.sum(b * b)) for b in B.values())
        penalty += sum(float(np.sum((c - np.eye(k)) ** 2)) for c in C.values())
        return total + lam * penalty

    # Initialization.
    for alpha_id, members in alpha_members.items():
        svd_members = [m for m in members if config.init_for(m) == "partial-svd"]
        if svd_members:
            pooled = np.hstack(
                [np.sqrt(blocks[m].weight) * blocks[m].work for m in svd_members]
            )
            if min(pooled.shape) < k:
                raise DimensionalityError(
                    f"partial-svd init for {alpha_id} needs rank >= k_dim={k}, "
                    f"pooled working matrix has shape {pooled.shape}."
                )
            u, s, _ = partial_svd(pooled, k, rng)
            A[alpha_id] = _project(alpha_id, u * np.sqrt(s))
        else:
            A[alpha_id] = _project(alpha_id, rng.standard_normal((n, k)))
    for beta_id, members in beta_members.items():
        if any(config.init_for(m) == "partial-svd" for m in members):
            update_beta(beta_id)
        else:
            width = blocks[members[0]].work.shape[1]
            B[beta_id] = rng.standard_normal((width, k)) / np.sqrt(k)

    logger.info(
        "Fitting %d modalities (%s): n=%d k_dim=%d ridge=%g max_iter=%d",
        len(names),
        ", ".join(f"{m}:{blocks[m].work.shape[1]}" for m in names),
        n,
        k,
        lam,
        int(config.max_iter),
    )

    trace = [objective()]
    converged = False
    n_iter = 0
    for it in range(1, int(config.max_iter) + 1):
        for alpha_id in alpha_members:
            update_alpha(alpha_id)
        for beta_id in beta_members:
            update_beta(beta_id)
        for incode_id in incode_members:
            update_incode(incode_id)
        trace.append(objective())
        n_iter = it
        prev, cur = trace[-2], trace[-1]
        if (prev - cur) / max(abs(prev), np.finfo(float).tiny) < float(config.tol):
            converged = True
            break

    if converged:
        logger.info("Converged after %d iterations (objective=%.6g)", n_iter, trace[-1])
    else:
        msg = (
            f"Joint fit did not converge within max_iter={config.max_iter} "
            f"(last relative decrease {(trace[-2] - trace[-1]) / max(abs(trace[-2]), 1e-300):.3g}, "
            f"tol={config.tol:g})."
        )
        logger.warning(msg)
        warnings.warn(msg, FitNotConverged, stacklevel=2)

    feature_codes: dict[str, np.ndarray] = {}
    for beta_id, b in B.items():
        basis = feature_basis[beta_id]
        feature_codes[beta_id] = b if basis is None else basis @ b

    rmse: dict[str, float] = {}
    r2: dict[str, float] = {}
    for name in names:
        blk = blocks[name]
        recon = A[blk.alpha] @ coupling(blk) @ feature_codes[blk.beta].T
        resid = (standardized[name] - recon) * scales[name]
        rss = float(np.sum(resid * resid))
        tss = float(np.sum((standardized[name] * scales[name]) ** 2))
        rmse[name] = float(np.sqrt(rss / resid.size))
        r2[name] = 1.0 - rss / tss
        logger.info("Modality %s: rmse=%.4g r2=%.4f", name, rmse[name], r2[name])

    return FittedModel(
        modalities=tuple(names),
        row_labels=tuple(rows),
        col_labels={m: tuple(modalities[m].col_labels) for m in names},
        sample_codes=dict(A),
        feature_codes=feature_codes,
        couplings=dict(C),
        assignment=assignment,
        k_dim=k,
        ridge=lam,
        means=means,
        scales=scales,
        rmse=rmse,
        r2=r2,
        objective=tuple(float(v) for v in trace),
        n_iter=int(n_iter),
        converged=bool(converged),
        seed=int(config.seed),
        metadata={
            "i_dim": config.i_dim,
            "j_dim": config.j_dim,
            "init": {m: config.init_for(m) for m in names},
            "weights": {m: blocks[m].weight for m in names},
            "groups": [list(g) for g in topology.groups],
            "tags": {m: dict(topology.tags[m]) for m in names},
        },
    )


def fit_frames(
    frames: Mapping[str, pd.DataFrame],
    topology: JoinTopology | None = None,
    config: ModelConfig = ModelConfig(),
) -> FittedModel:
    """Convenience wrapper: align pandas frames by row label and fit."""
    mods = {name: Modality.from_frame(name, frame) for name, frame in frames.items()}
    aligned = align_rows(mods)
    topo = topology or JoinTopology.shared_codes(aligned)
    return fit(aligned, topo, config)
