"""Anchor-cell selection and anchor-based reference profile updates."""

from __future__ import annotations

import logging
import warnings
from typing import Sequence

import numpy as np
import scipy.sparse as sp

from insitutype.core.likelihood import background_loglik, estimate_profiles, loglik_matrix
from insitutype.core.types import AnchorSelection
from insitutype.utils import row_totals

logger = logging.getLogger(__name__)


def cosine_similarity(counts, profiles: np.ndarray) -> np.ndarray:
    """Cosine similarity of every cell's count vector to every profile (cells x profiles)."""
    prof = np.asarray(profiles, dtype=float)
    dots = np.asarray(counts @ prof, dtype=float)
    if sp.issparse(counts):
        sq = np.asarray(counts.multiply(counts).sum(axis=1)).ravel()
    else:
        sq = np.sum(np.asarray(counts, dtype=float) ** 2, axis=1)
    denom = np.sqrt(sq)[:, None] * np.linalg.norm(prof, axis=0)[None, :]
    with np.errstate(invalid="ignore", divide="ignore"):
        cos = np.where(denom > 0, dots / denom, 0.0)
    return cos


def find_anchor_cells(
    counts,
    bg,
    profiles: np.ndarray,
    names: Sequence[str],
    *,
    size: float = 10.0,
    n_cells: int = 500,
    min_cosine: float = 0.3,
    min_scaled_llr: float = 0.01,
    insufficient_anchors_thresh: int = 20,
    block_size: int = 5000,
    n_jobs: int | None = 1,
    backend: str = "threading",
) -> AnchorSelection:
    """Pick up to ``n_cells`` confident cells per reference profile.

    A cell is a candidate for type T when T is its best-fitting profile, its
    cosine similarity to T is at least ``min_cosine``, and its log-likelihood
    ratio against the background-only model, divided by its total counts,
    is at least ``min_scaled_llr``. Strongest ratios win. Types left with
    fewer than ``insufficient_anchors_thresh`` anchors are dropped.
    """
    prof = np.asarray(profiles, dtype=float)
    type_names = tuple(str(n) for n in names)
    if prof.ndim != 2 or prof.shape[1] != len(type_names):
        raise ValueError("profiles must be genes x types with one column per name.")
    n = int(counts.shape[0])
    totals = row_totals(counts)

    logliks = loglik_matrix(
        counts, prof, bg, size, totals=totals, block_size=block_size, n_jobs=n_jobs, backend=backend
    )
    null_ll = background_loglik(counts, bg, size, block_size=block_size)
    best = np.argmax(logliks, axis=1)
    best_ll = logliks[np.arange(n), best]
    scaled_llr = (best_ll - null_ll) / totals
    cos = cosine_similarity(counts, prof)

    anchors = np.full(n, -1, dtype=np.int64)
    n_per_type: dict[str, int] = {}
    dropped: list[str] = []
    for t, name in enumerate(type_names):
        cand = np.flatnonzero(
            (best == t) & (cos[:, t] >= float(min_cosine)) & (scaled_llr >= float(min_scaled_llr))
        )
        order = cand[np.argsort(-scaled_llr[cand], kind="mergesort")]
        chosen = order[: int(n_cells)]
        if chosen.size < int(insufficient_anchors_thresh):
            dropped.append(name)
            n_per_type[name] = 0
            continue
        anchors[chosen] = t
        n_per_type[name] = int(chosen.size)

    if dropped:
        warnings.warn(
            f"Too few anchor cells for cell type(s) {', '.join(dropped)}; "
            "no anchors will be used for them.",
            RuntimeWarning,
            stacklevel=2,
        )
    logger.info("Selected %d anchor cells across %d cell types.", int((anchors >= 0).sum()), len(type_names) - len(dropped))
    return AnchorSelection(
        anchors=anchors,
        names=type_names,
        n_per_type=n_per_type,
        dropped=tuple(dropped),
        scaled_llr=scaled_llr,
        cosine=cos[np.arange(n), best],
    )


def update_reference_profiles(counts, bg, profiles: np.ndarray, anchors: np.ndarray) -> np.ndarray:
    """Replace each anchored type's profile by its anchors' mean expression above background.

    Types without anchors keep their supplied profile.
    """
    prof = np.asarray(profiles, dtype=float).copy()
    codes = np.asarray(anchors, dtype=np.int64).ravel()
    if codes.size != int(counts.shape[0]):
        raise ValueError("anchors length must equal the number of cells.")
    if np.any(codes >= prof.shape[1]):
        raise ValueError("anchors contain codes outside the reference profiles.")
    weights = np.zeros((codes.size, prof.shape[1]), dtype=float)
    ok = codes >= 0
    weights[np.flatnonzero(ok), codes[ok]] = 1.0
    has_anchors = weights.sum(axis=0) > 0
    if np.any(has_anchors):
        est = estimate_profiles(counts, bg, weights[:, has_anchors])
        prof[:, has_anchors] = est
    return prof
