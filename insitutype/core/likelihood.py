"""Negative-binomial likelihoods, posteriors and profile estimates.

All routines take counts as cells x genes (dense or scipy.sparse) and profiles
as genes x clusters. Under a profile ``x`` the expected count of cell ``i`` is
``s_i * x + bg_i`` where ``s_i = total_i / sum(x)``.
"""

from __future__ import annotations

import warnings

import numpy as np
from scipy.special import gammaln, xlogy

from insitutype.parallel import run_indexed
from insitutype.utils import dense_rows, row_totals

MU_FLOOR = 1e-10
DEFAULT_BG = 0.01


def _as_profiles(profiles: np.ndarray, n_genes: int) -> np.ndarray:
    arr = np.asarray(profiles, dtype=float)
    if arr.ndim == 1:
        arr = arr[:, None]
    if arr.ndim != 2 or arr.shape[0] != n_genes:
        raise ValueError(
            f"profiles must have shape (n_genes={n_genes}, n_clusters), got {arr.shape}."
        )
    if not np.isfinite(arr).all() or np.any(arr < 0):
        raise ValueError("profiles must be finite and non-negative.")
    sums = arr.sum(axis=0)
    if np.any(sums <= 0):
        raise ValueError("every profile must have a positive sum.")
    return arr


def _as_cell_vector(name: str, values, n_cells: int) -> np.ndarray:
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 1:
        arr = np.full(n_cells, float(arr[0]))
    if arr.size != n_cells:
        raise ValueError(f"{name} length ({arr.size}) must equal the number of cells ({n_cells}).")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name} must be finite.")
    return arr


def _nb_terms(y: np.ndarray, mu: np.ndarray, size: float) -> np.ndarray:
    """Per-cell sum of the mean-dependent part of the NB log-pmf."""
    r = float(size)
    mu = np.maximum(mu, MU_FLOOR)
    return np.sum(r * np.log(r) - (r + y) * np.log(r + mu) + xlogy(y, mu), axis=1)


def _nb_const(y: np.ndarray, size: float) -> np.ndarray:
    r = float(size)
    return np.sum(gammaln(y + r) - gammaln(y + 1.0), axis=1) - y.shape[1] * gammaln(r)


def _block_bounds(n_cells: int, block_size: int) -> list[tuple[int, int]]:
    step = max(1, int(block_size))
    return [(start, min(start + step, n_cells)) for start in range(0, n_cells, step)]


def loglik_matrix(
    counts,
    profiles: np.ndarray,
    bg,
    size: float = 10.0,
    *,
    totals: np.ndarray | None = None,
    block_size: int = 5000,
    n_jobs: int | None = 1,
    backend: str = "threading",
) -> np.ndarray:
    """Log-likelihood of every cell under every profile (cells x clusters).

    Cells are scored in row blocks so that only one dense block per worker is
    materialized at a time.
    """
    n_cells, n_genes = int(counts.shape[0]), int(counts.shape[1])
    prof = _as_profiles(profiles, n_genes)
    bg_arr = _as_cell_vector("bg", bg, n_cells)
    tot = row_totals(counts) if totals is None else _as_cell_vector("totals", totals, n_cells)
    prof_sums = prof.sum(axis=0)

    def _score_block(bounds: tuple[int, int]) -> np.ndarray:
        start, stop = bounds
        y = dense_rows(counts, start, stop)
        const = _nb_const(y, size)
        out = np.empty((stop - start, prof.shape[1]), dtype=float)
        for k in range(prof.shape[1]):
            s = tot[start:stop] / prof_sums[k]
            mu = s[:, None] * prof[:, k][None, :] + bg_arr[start:stop, None]
            out[:, k] = const + _nb_terms(y, mu, size)
        return out

    blocks = run_indexed(_score_block, _block_bounds(n_cells, block_size), n_jobs=n_jobs, backend=backend)
    if not blocks:
        return np.zeros((0, prof.shape[1]), dtype=float)
    return np.vstack(blocks)


def nb_loglik(
    profile: np.ndarray,
    counts,
    bg,
    size: float = 10.0,
    *,
    totals: np.ndarray | None = None,
    block_size: int = 5000,
) -> np.ndarray:
    """Per-cell NB log-likelihood of ``counts`` under a single profile."""
    prof = np.asarray(profile, dtype=float).ravel()
    return loglik_matrix(counts, prof[:, None], bg, size, totals=totals, block_size=block_size)[:, 0]


def background_loglik(counts, bg, size: float = 10.0, *, block_size: int = 5000) -> np.ndarray:
    """Per-cell NB log-likelihood when every gene is expected at background level."""
    n_cells = int(counts.shape[0])
    bg_arr = _as_cell_vector("bg", bg, n_cells)
    out = np.empty(n_cells, dtype=float)
    for start, stop in _block_bounds(n_cells, block_size):
        y = dense_rows(counts, start, stop)
        mu = np.broadcast_to(bg_arr[start:stop, None], y.shape)
        out[start:stop] = _nb_const(y, size) + _nb_terms(y, mu, size)
    return out


def logliks_to_probs(logliks: np.ndarray) -> np.ndarray:
    """Row-normalized posteriors from a log-likelihood matrix (log-sum-exp)."""
    arr = np.asarray(logliks, dtype=float)
    if arr.ndim != 2 or arr.shape[1] == 0:
        raise ValueError(f"logliks must be a non-empty 2D matrix, got shape {arr.shape}.")
    if np.isnan(arr).any():
        raise ValueError("logliks contain NaN values.")
    row_max = arr.max(axis=1)
    bad = ~np.isfinite(row_max)
    if np.any(bad):
        raise ValueError(
            f"{int(bad.sum())} cell(s) have no finite log-likelihood under any cluster; "
            "posterior probabilities are undefined."
        )
    liks = np.exp(arr - row_max[:, None])
    return liks / liks.sum(axis=1, keepdims=True)


def cohort_adjust_logliks(
    logliks: np.ndarray,
    cohort: np.ndarray | None,
    *,
    min_freq: float = 1e-4,
    n_baseline_cells: int = 100,
) -> np.ndarray:
    """Add log cluster frequencies estimated within each cohort.

    Frequencies come from the posterior column sums within the cohort plus
    ``n_baseline_cells`` pseudo-cells at the global frequencies.
    """
    arr = np.asarray(logliks, dtype=float)
    if cohort is None:
        return arr
    coh = np.asarray(cohort).ravel()
    if coh.size != arr.shape[0]:
        raise ValueError("cohort length must equal the number of cells.")
    levels = np.unique(coh)
    if levels.size <= 1:
        return arr
    probs = logliks_to_probs(arr)
    global_freq = probs.sum(axis=0) / max(1, probs.shape[0])
    out = arr.copy()
    for level in levels:
        use = coh == level
        freq = probs[use].sum(axis=0) + float(n_baseline_cells) * global_freq
        freq = freq / freq.sum()
        freq = np.maximum(freq, float(min_freq))
        out[use] += np.log(freq)[None, :]
    return out


def anchored_posteriors(
    logliks: np.ndarray,
    cohort: np.ndarray | None = None,
    anchors: np.ndarray | None = None,
) -> np.ndarray:
    """Posteriors after cohort adjustment, with anchored rows pinned to their anchor."""
    probs = logliks_to_probs(cohort_adjust_logliks(logliks, cohort))
    if anchors is None:
        return probs
    codes = np.asarray(anchors, dtype=np.int64).ravel()
    if codes.size != probs.shape[0]:
        raise ValueError("anchors length must equal the number of cells.")
    anchored = np.flatnonzero(codes >= 0)
    if anchored.size:
        probs[anchored] = 0.0
        probs[anchored, codes[anchored]] = 1.0
    return probs


def estimate_profiles(counts, bg, weights: np.ndarray) -> np.ndarray:
    """Weighted mean expression above background, one column per weight column.

    Columns with zero total weight come back as NaN; the caller decides how
    to handle empty clusters.
    """
    n_cells = int(counts.shape[0])
    w = np.asarray(weights, dtype=float)
    if w.ndim != 2 or w.shape[0] != n_cells:
        raise ValueError("weights must have shape (n_cells, n_clusters).")
    bg_arr = _as_cell_vector("bg", bg, n_cells)
    wsum = w.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        means = np.asarray(counts.T @ w, dtype=float) / wsum[None, :]
        bg_mean = (bg_arr @ w) / wsum
    profiles = np.maximum(means - bg_mean[None, :], 0.0)
    # a cluster entirely at background keeps its raw mean
    flat = np.isfinite(wsum) & (wsum > 0) & (profiles.sum(axis=0) <= 0)
    profiles[:, flat] = means[:, flat]
    profiles[:, wsum <= 0] = np.nan
    return profiles


def infer_background(counts, neg=None, bg=None, *, totals: np.ndarray | None = None) -> np.ndarray:
    """Per-cell expected background.

    ``bg`` wins when given (scalars are broadcast). Otherwise ``neg`` is
    regressed without intercept on per-cell mean counts and the fitted values
    are used.
    """
    n_cells, n_genes = int(counts.shape[0]), int(counts.shape[1])
    if bg is not None:
        arr = _as_cell_vector("bg", bg, n_cells)
        if np.any(arr < 0):
            raise ValueError("bg must be non-negative.")
        return arr
    if neg is None:
        warnings.warn(
            f"Neither bg nor neg supplied; assuming a constant background of {DEFAULT_BG}.",
            RuntimeWarning,
            stacklevel=2,
        )
        return np.full(n_cells, DEFAULT_BG, dtype=float)
    neg_arr = _as_cell_vector("neg", neg, n_cells)
    tot = row_totals(counts) if totals is None else np.asarray(totals, dtype=float)
    s = tot / float(n_genes)
    denom = float(np.dot(s, s))
    if denom <= 0:
        raise ValueError("Cannot infer background from all-zero counts.")
    coef = float(np.dot(neg_arr, s)) / denom
    return np.maximum(coef * s, 0.0)
