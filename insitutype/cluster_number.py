"""Select the number of new clusters by penalized likelihood."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

import numpy as np
import pandas as pd

from insitutype.core.nbclust import choose_init_clust, nbclust, round_robin_clust
from insitutype.core.types import ClusterNumberSelection, ClusterSpace, NBClustConfig
from insitutype.parallel import run_indexed

logger = logging.getLogger(__name__)


def information_criteria(loglik: float, n_params: int, n_obs: int) -> tuple[float, float]:
    """Return ``(aic, bic)`` for a fitted model."""
    aic = -2.0 * float(loglik) + 2.0 * float(n_params)
    bic = -2.0 * float(loglik) + float(n_params) * np.log(max(1, int(n_obs)))
    return float(aic), float(bic)


def choose_cluster_number(
    counts,
    bg,
    n_clusts: Sequence[int],
    *,
    fixed_profiles: np.ndarray | None = None,
    fixed_names: Sequence[str] = (),
    anchor_labels: np.ndarray | None = None,
    cohort: np.ndarray | None = None,
    config: NBClustConfig | None = None,
    criterion: str = "bic",
    init_thresh: float = 0.9,
    rng: np.random.Generator | None = None,
    n_jobs: int | None = 1,
    backend: str = "threading",
) -> ClusterNumberSelection:
    """Fit every candidate cluster count on the same cells and keep the best.

    Fit is the summed best-cluster log-likelihood; the penalty counts one
    profile (``n_genes`` parameters) per new cluster.
    """
    candidates = sorted({int(k) for k in n_clusts})
    if not candidates:
        raise ValueError("n_clusts must contain at least one candidate.")
    if candidates[0] < 0:
        raise ValueError("Cluster counts must be non-negative.")
    if candidates[0] == 0 and len(fixed_names) == 0:
        raise ValueError("A cluster count of 0 requires reference profiles.")
    crit = str(criterion).lower()
    if crit not in ("aic", "bic"):
        raise ValueError("criterion must be 'aic' or 'bic'.")

    cfg = config if config is not None else NBClustConfig(max_iters=10)
    rng = rng if rng is not None else np.random.default_rng()
    n_cells, n_genes = int(counts.shape[0]), int(counts.shape[1])
    labels = np.full(n_cells, None, dtype=object) if anchor_labels is None else np.asarray(anchor_labels, dtype=object)
    extra = [lab for lab in pd.unique(labels[pd.notna(labels)]) if lab not in set(fixed_names)]
    seeds = rng.integers(0, 2**32 - 1, size=len(candidates))
    inner_cfg = replace(cfg, n_jobs=1) if int(n_jobs or 1) != 1 else cfg

    def _fit(task: tuple[int, int]) -> dict[str, float | int | bool]:
        k, seed = task
        task_rng = np.random.default_rng(seed)
        space = ClusterSpace.build(fixed_names, k, extra_names=extra)
        anchors = space.codes_from_labels(labels)
        if space.n_fixed > 0:
            init = choose_init_clust(
                counts,
                bg,
                fixed_profiles,
                space,
                size=inner_cfg.nb_size,
                thresh=init_thresh,
                anchors=anchors,
                rng=task_rng,
                block_size=inner_cfg.block_size,
            )
        else:
            init = round_robin_clust(n_cells, space, anchors=anchors, rng=task_rng)
        res = nbclust(
            counts,
            bg,
            space,
            fixed_profiles=fixed_profiles,
            init_clust=init,
            anchors=anchors,
            cohort=cohort,
            config=inner_cfg,
            rng=task_rng,
        )
        loglik = float(np.sum(np.max(res.logliks, axis=1)))
        n_params = int(res.space.n_free * n_genes)
        aic, bic = information_criteria(loglik, n_params, n_cells)
        return {
            "n_clusts": int(k),
            "n_clusters_fitted": int(res.space.n_free),
            "loglik": loglik,
            "n_params": n_params,
            "aic": aic,
            "bic": bic,
            "converged": bool(res.converged),
        }

    rows = run_indexed(_fit, list(zip(candidates, seeds.tolist())), n_jobs=n_jobs, backend=backend)
    table = pd.DataFrame(rows)
    best_row = int(np.argmin(table[crit].to_numpy()))
    best = int(table["n_clusts"].iloc[best_row])
    logger.info("Selected %d clusters by %s from candidates %s.", best, crit.upper(), candidates)
    return ClusterNumberSelection(best_clust_number=best, criterion=crit, table=table)
