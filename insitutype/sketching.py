"""Geometric sketching: representative subsampling over a binned embedding.

Cells are binned on a regular grid ("plaid") laid over a low-dimensional
embedding, with the grid resolution tuned so the number of occupied bins is
close to the smallest subsample a run needs. Subsamples then draw as evenly as
possible across occupied bins, so rare populations survive small subsets.
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp
from sklearn.decomposition import PCA, TruncatedSVD

from insitutype.core.types import Plaid
from insitutype.utils import row_totals

logger = logging.getLogger(__name__)

MAX_RESOLUTION = 1e6


def prep_data_for_sketching(counts, n_components: int = 20, seed: int | None = None) -> np.ndarray:
    """Leading principal components of depth-normalized, log-transformed counts."""
    n_cells, n_genes = int(counts.shape[0]), int(counts.shape[1])
    totals = row_totals(counts)
    if np.any(totals <= 0):
        raise ValueError("Cells with 0 counts were found. Please remove.")
    scale = float(np.mean(totals)) / totals
    if sp.issparse(counts):
        norm = sp.csr_matrix(sp.diags(scale) @ counts)
        norm.data = np.log1p(norm.data)
        k = min(int(n_components), n_genes - 1, n_cells - 1)
        if k < 1:
            return norm.toarray()
        return TruncatedSVD(n_components=k, random_state=seed).fit_transform(norm)
    norm = np.log1p(np.asarray(counts, dtype=float) * scale[:, None])
    k = min(int(n_components), n_genes, n_cells)
    if k < 1 or n_cells < 2:
        return norm
    return PCA(n_components=k, random_state=seed).fit_transform(norm)


def _scale_unit(X: np.ndarray) -> np.ndarray:
    lo = X.min(axis=0)
    span = X.max(axis=0) - lo
    span = np.where(span > 0, span, 1.0)
    return np.minimum((X - lo) / span, 1.0 - 1e-12)


def _bin_cells(scaled: np.ndarray, resolution: float) -> tuple[np.ndarray, int]:
    grid = np.floor(scaled * float(resolution)).astype(np.int64)
    _, inverse = np.unique(grid, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    return inverse, int(inverse.max()) + 1 if inverse.size else 0


def compute_plaid(
    embedding: np.ndarray,
    n_bins: int,
    *,
    alpha: float = 0.1,
    max_iter: int = 200,
) -> Plaid:
    """Bin cells so that about ``n_bins`` grid cells are occupied.

    The grid resolution is searched (doubling, then bisection) until the
    number of occupied bins lies within ``n_bins * (1 +/- alpha)``. The result
    depends only on the embedding.
    """
    X = np.asarray(embedding, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    if X.ndim != 2 or X.shape[0] == 0:
        raise ValueError(f"embedding must be a non-empty 2D matrix, got shape {X.shape}.")
    if not np.isfinite(X).all():
        raise ValueError("embedding contains NaN/inf values.")
    target = max(1, min(int(n_bins), X.shape[0]))
    lower, upper = target * (1.0 - float(alpha)), target * (1.0 + float(alpha))
    scaled = _scale_unit(X)

    best_res = 1.0
    best_bins, best_n = _bin_cells(scaled, best_res)
    if lower <= best_n <= upper:
        return Plaid(bin_id=best_bins, n_bins=best_n, resolution=best_res)

    def _consider(res: float) -> int:
        nonlocal best_res, best_bins, best_n
        bins, n_occ = _bin_cells(scaled, res)
        if abs(n_occ - target) < abs(best_n - target):
            best_res, best_bins, best_n = res, bins, n_occ
        return n_occ

    lo, hi = 1.0, 2.0
    n_hi = _consider(hi)
    while n_hi < lower and hi < MAX_RESOLUTION:
        lo, hi = hi, hi * 2.0
        n_hi = _consider(hi)

    for _ in range(int(max_iter)):
        if lower <= best_n <= upper:
            break
        mid = 0.5 * (lo + hi)
        n_mid = _consider(mid)
        if n_mid < lower:
            lo = mid
        elif n_mid > upper:
            hi = mid
        else:
            break
        if hi - lo < 1e-9:
            break

    logger.debug("plaid: %d occupied bins (target %d) at resolution %.4g", best_n, target, best_res)
    return Plaid(bin_id=best_bins.astype(np.int64), n_bins=best_n, resolution=float(best_res))


def _bin_quota(sizes: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
    """Per-bin draw counts: an equal share per bin, capped by bin size, summing to ``n``."""
    lo, hi = 0, int(sizes.max())
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if int(np.minimum(sizes, mid).sum()) <= n:
            lo = mid
        else:
            hi = mid - 1
    alloc = np.minimum(sizes, lo)
    remainder = n - int(alloc.sum())
    if remainder > 0:
        roomy = np.flatnonzero(sizes > lo)
        alloc[rng.choice(roomy, size=remainder, replace=False)] += 1
    return alloc


def sample_from_plaid(plaid: Plaid, n: int, rng: np.random.Generator | None = None) -> np.ndarray:
    """Draw up to ``n`` distinct cell indices spread evenly across plaid bins.

    Every call is an independent draw; the plaid itself is never modified.
    """
    rng = rng if rng is not None else np.random.default_rng()
    n_cells = plaid.n_cells
    n_req = int(n)
    if n_req <= 0:
        return np.zeros(0, dtype=np.int64)
    if n_req >= n_cells:
        return np.arange(n_cells, dtype=np.int64)

    sizes = plaid.bin_sizes()
    alloc = _bin_quota(sizes, n_req, rng)

    perm = rng.permutation(n_cells)
    order = np.argsort(plaid.bin_id[perm], kind="stable")
    cells = perm[order]
    bins = plaid.bin_id[cells]
    starts = np.concatenate([[0], np.cumsum(sizes)[:-1]])
    rank = np.arange(n_cells) - starts[bins]
    return np.sort(cells[rank < alloc[bins]]).astype(np.int64)


def geo_sketch(
    plaid: Plaid,
    n: int,
    rng: np.random.Generator | None = None,
    *,
    include: np.ndarray | None = None,
) -> np.ndarray:
    """Sketch ``n`` cells and add the ``include`` cells (e.g. anchors) on top."""
    picked = sample_from_plaid(plaid, n, rng)
    if include is None or np.asarray(include).size == 0:
        return picked
    extra = np.asarray(include, dtype=np.int64).ravel()
    if np.any(extra < 0) or np.any(extra >= plaid.n_cells):
        raise ValueError("include contains indices outside the plaid.")
    return np.union1d(picked, extra).astype(np.int64)
