"""Negative-binomial mixture clustering with fixed profiles and anchors."""

from __future__ import annotations

import logging

import numpy as np

from insitutype.core.likelihood import (
    anchored_posteriors,
    estimate_profiles,
    loglik_matrix,
    logliks_to_probs,
)
from insitutype.core.types import ClusterSpace, FitStatus, NBClustConfig, NBClustResult
from insitutype.utils import row_totals

logger = logging.getLogger(__name__)

EMPTY_WEIGHT = 1e-8


def _check_codes(name: str, codes: np.ndarray | None, n_cells: int, space: ClusterSpace) -> np.ndarray:
    if codes is None:
        return np.full(n_cells, -1, dtype=np.int64)
    arr = np.asarray(codes, dtype=np.int64).ravel()
    if arr.size != n_cells:
        raise ValueError(f"{name} length ({arr.size}) must equal the number of cells ({n_cells}).")
    if np.any(arr >= space.n_clusters) or np.any(arr < -1):
        raise ValueError(f"{name} contains codes outside the cluster space.")
    return arr


def _one_hot(codes: np.ndarray, n_clusters: int) -> np.ndarray:
    out = np.zeros((codes.size, n_clusters), dtype=float)
    ok = codes >= 0
    out[np.flatnonzero(ok), codes[ok]] = 1.0
    return out


def round_robin_clust(
    n_cells: int,
    space: ClusterSpace,
    *,
    anchors: np.ndarray | None = None,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Spread cells evenly over the new clusters, visiting cells in random order.

    Falls back to all clusters when the space has no free clusters. Anchored
    cells keep their anchor.
    """
    if space.n_clusters == 0:
        raise ValueError("Cannot assign cells to an empty cluster space.")
    targets = np.arange(space.n_fixed, space.n_clusters) if space.n_free > 0 else np.arange(space.n_clusters)
    order = rng.permutation(n_cells) if rng is not None else np.arange(n_cells)
    codes = np.empty(n_cells, dtype=np.int64)
    codes[order] = targets[np.arange(n_cells) % targets.size]
    anc = _check_codes("anchors", anchors, n_cells, space)
    return np.where(anc >= 0, anc, codes)


def choose_init_clust(
    counts,
    bg,
    fixed_profiles: np.ndarray,
    space: ClusterSpace,
    *,
    size: float = 10.0,
    thresh: float = 0.9,
    anchors: np.ndarray | None = None,
    rng: np.random.Generator | None = None,
    block_size: int = 5000,
) -> np.ndarray:
    """Seed assignments from reference profiles.

    Cells confidently matching a reference profile (posterior above
    ``thresh``) start there; the rest go round-robin over the new clusters.
    """
    n_cells = int(counts.shape[0])
    if space.n_fixed == 0:
        return round_robin_clust(n_cells, space, anchors=anchors, rng=rng)
    fixed = np.asarray(fixed_profiles, dtype=float)
    if fixed.shape[1] != space.n_fixed:
        raise ValueError("fixed_profiles columns must match the fixed clusters of the space.")
    probs = logliks_to_probs(loglik_matrix(counts, fixed, bg, size, block_size=block_size))
    best = np.argmax(probs, axis=1)
    confident = probs[np.arange(n_cells), best] > float(thresh)
    codes = round_robin_clust(n_cells, space, rng=rng)
    if space.n_free == 0:
        codes = best.astype(np.int64)
    codes = np.where(confident, best, codes).astype(np.int64)
    anc = _check_codes("anchors", anchors, n_cells, space)
    return np.where(anc >= 0, anc, codes)


def _assignment_weights(
    method: str,
    clust: np.ndarray,
    probs: np.ndarray,
) -> np.ndarray:
    """CEM and EM weight each cell wholly to its arg-max cluster; SEM uses the posteriors."""
    if method == "SEM":
        return probs.copy()
    return _one_hot(clust, probs.shape[1])


def _switch_fraction(
    prev_probs: np.ndarray,
    probs: np.ndarray,
    old: np.ndarray,
    new: np.ndarray,
    min_increase: float,
) -> float:
    """Fraction of cells that moved to a cluster whose probability rose by at least ``min_increase``."""
    rows = np.arange(new.size)
    gain = probs[rows, new] - prev_probs[rows, new]
    valid = (new != old) & (gain >= min_increase)
    return float(valid.sum()) / float(new.size)


def _has_converged(trace: list[float], pct_drop: float) -> bool:
    """Valid-switchover fraction is negligible, or unchanged from the previous iteration."""
    cur = trace[-1]
    if cur <= pct_drop:
        return True
    if len(trace) < 2:
        return False
    prev = trace[-2]
    return prev > 0 and 0.0 <= prev - cur <= pct_drop * prev


def _reseed_empty(
    weights: np.ndarray,
    clust: np.ndarray,
    empty: np.ndarray,
    fit_score: np.ndarray,
    anchored: np.ndarray,
) -> np.ndarray:
    """Move the worst-fitting unanchored cells into each empty cluster.

    Returns a boolean mask of the empty clusters that could be reseeded.
    """
    n_cells, n_clusters = weights.shape
    n_take = max(1, n_cells // (2 * n_clusters))
    order = np.argsort(fit_score, kind="mergesort")
    used = np.zeros(n_cells, dtype=bool)
    reseeded = np.zeros(n_clusters, dtype=bool)
    for k in np.flatnonzero(empty):
        sizes = weights.sum(axis=0)
        eligible = ~anchored & ~used & (sizes[np.maximum(clust, 0)] > n_take + 1)
        idx = order[eligible[order]][:n_take]
        if idx.size == 0:
            continue
        weights[idx] = 0.0
        weights[idx, k] = 1.0
        clust[idx] = k
        used[idx] = True
        reseeded[k] = True
    return reseeded


def nbclust(
    counts,
    bg,
    space: ClusterSpace,
    *,
    fixed_profiles: np.ndarray | None = None,
    init_profiles: np.ndarray | None = None,
    init_clust: np.ndarray | None = None,
    anchors: np.ndarray | None = None,
    cohort: np.ndarray | None = None,
    config: NBClustConfig | None = None,
    rng: np.random.Generator | None = None,
) -> NBClustResult:
    """Fit cluster profiles on one subset of cells.

    Seeding uses ``init_profiles`` (genes x free clusters) when given, else
    ``init_clust`` codes, else a round-robin assignment. Each iteration
    re-estimates the free profiles (fixed ones are never touched) and then
    rescores every cell; anchored cells are pinned to their anchor cluster.
    """
    cfg = config if config is not None else NBClustConfig()
    rng = rng if rng is not None else np.random.default_rng()
    n_cells, n_genes = int(counts.shape[0]), int(counts.shape[1])
    if n_cells == 0:
        raise ValueError("nbclust needs at least one cell.")
    if space.n_clusters == 0:
        raise ValueError("nbclust needs at least one cluster.")

    totals = row_totals(counts)
    if np.any(totals <= 0):
        raise ValueError("Cells with 0 counts were found. Please remove.")

    fixed = np.zeros((n_genes, 0), dtype=float)
    if space.n_fixed > 0:
        if fixed_profiles is None:
            raise ValueError("fixed_profiles are required when the cluster space has fixed clusters.")
        fixed = np.asarray(fixed_profiles, dtype=float)
        if fixed.shape != (n_genes, space.n_fixed):
            raise ValueError(
                f"fixed_profiles must have shape ({n_genes}, {space.n_fixed}), got {fixed.shape}."
            )

    anc = _check_codes("anchors", anchors, n_cells, space)
    coh = None if cohort is None else np.asarray(cohort).ravel()
    if coh is not None and coh.size != n_cells:
        raise ValueError("cohort length must equal the number of cells.")

    def _score(profiles: np.ndarray) -> np.ndarray:
        return loglik_matrix(
            counts,
            profiles,
            bg,
            cfg.nb_size,
            totals=totals,
            block_size=cfg.block_size,
            n_jobs=cfg.n_jobs,
            backend=cfg.backend,
        )

    fit_score = np.zeros(n_cells, dtype=float)
    if init_profiles is not None:
        init = np.asarray(init_profiles, dtype=float)
        if init.shape != (n_genes, space.n_free):
            raise ValueError(
                f"init_profiles must have shape ({n_genes}, {space.n_free}), got {init.shape}."
            )
        logliks = _score(np.hstack([fixed, init]))
        probs = anchored_posteriors(logliks, coh, anc)
        clust = np.argmax(probs, axis=1).astype(np.int64)
        fit_score = logliks[np.arange(n_cells), clust] / totals
    else:
        if init_clust is not None:
            clust = _check_codes("init_clust", init_clust, n_cells, space).copy()
            missing = clust < 0
            if np.any(missing):
                clust[missing] = round_robin_clust(int(missing.sum()), space, rng=rng)
            clust = np.where(anc >= 0, anc, clust)
        else:
            clust = round_robin_clust(n_cells, space, anchors=anc, rng=rng)
        probs = _one_hot(clust, space.n_clusters)
        if space.n_fixed > 0:
            fit_score = _score(fixed).max(axis=1) / totals

    anchored = anc >= 0
    empty_streak = np.zeros(space.n_clusters, dtype=np.int64)
    trace: list[float] = []
    status = FitStatus.MAX_ITERS
    logliks = np.zeros((n_cells, space.n_clusters), dtype=float)
    profiles = fixed
    n_iter = 0

    for it in range(1, int(cfg.max_iters) + 1):
        n_iter = it
        prev_probs = probs
        weights = _assignment_weights(cfg.method, clust, probs)
        free_mass = weights[:, space.n_fixed :].sum(axis=0)
        empty = np.zeros(space.n_clusters, dtype=bool)
        empty[space.n_fixed :] = free_mass < EMPTY_WEIGHT
        empty_streak = np.where(empty, empty_streak + 1, 0)

        if np.any(empty):
            prune = empty & (empty_streak > int(cfg.max_reseed_attempts))
            reseed = empty & ~prune
            if np.any(reseed):
                ok = _reseed_empty(weights, clust, reseed, fit_score, anchored)
                if np.any(ok):
                    logger.debug("iter %d: reseeded empty cluster(s) %s", it, [space.names[k] for k in np.flatnonzero(ok)])
            if np.any(prune):
                keep = ~prune
                dropped = [space.names[k] for k in np.flatnonzero(prune)]
                new_space = space.subset(keep)
                if new_space.n_clusters == 0:
                    raise RuntimeError("No usable clusters remain after removing empty clusters.")
                logger.info("Dropping empty cluster(s) %s after %d reseed attempts.", dropped, int(cfg.max_reseed_attempts))
                weights = weights[:, keep]
                probs = probs[:, keep]
                row_mass = probs.sum(axis=1, keepdims=True)
                probs = np.divide(probs, row_mass, out=np.zeros_like(probs), where=row_mass > 0)
                prev_probs = probs
                clust = space.remap(clust, new_space)
                lost = clust < 0
                if np.any(lost):
                    clust[lost] = np.argmax(weights[lost], axis=1)
                anc = space.remap(anc, new_space)
                anchored = anc >= 0
                empty_streak = empty_streak[keep]
                space = new_space

        free = estimate_profiles(counts, bg, weights[:, space.n_fixed :])
        if np.isnan(free).any():
            # clusters that could not be reseeded borrow the global mean
            global_mean = estimate_profiles(counts, bg, np.ones((n_cells, 1)))
            bad = np.isnan(free).any(axis=0)
            free[:, bad] = global_mean
        profiles = np.hstack([fixed, free])
        logliks = _score(profiles)
        probs = anchored_posteriors(logliks, coh, anc)
        new_clust = np.argmax(probs, axis=1).astype(np.int64)
        pct = _switch_fraction(prev_probs, probs, clust, new_clust, float(cfg.min_prob_increase))
        trace.append(pct)
        logger.debug("iter %d: %.4f of cells changed cluster", it, pct)

        clust = new_clust
        fit_score = logliks[np.arange(n_cells), clust] / totals
        if _has_converged(trace, float(cfg.pct_drop)):
            status = FitStatus.CONVERGED
            break

    return NBClustResult(
        profiles=profiles,
        space=space,
        clust=clust,
        probs=probs,
        logliks=logliks,
        pct_changed=np.asarray(trace, dtype=float),
        n_iter=n_iter,
        status=status,
    )
