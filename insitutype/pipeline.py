"""Multi-phase unsupervised and semi-supervised cell typing.

Phase layout:

1. many random starts, each fitted on a small sketched subset, compared on a
   shared benchmarking subset;
2. the best start refined on a larger subset with a loose tolerance;
3. the refined profiles finalized on the largest subset;
4. every cell classified against the final profiles.

With ``n_clusts=0`` phases 1-3 are skipped and cells are classified directly
against the reference profiles.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from insitutype.adapters import CountsData, align_anchors, align_cell_vector, align_genes, as_counts, is_missing
from insitutype.anchors import find_anchor_cells, update_reference_profiles
from insitutype.cluster_number import choose_cluster_number
from insitutype.config import resolve_config
from insitutype.core.likelihood import anchored_posteriors, infer_background, loglik_matrix
from insitutype.core.nbclust import choose_init_clust, nbclust, round_robin_clust
from insitutype.core.types import (
    ClusterNumberSelection,
    ClusterSpace,
    InsitutypeConfig,
    InsitutypeResult,
    NBClustResult,
)
from insitutype.parallel import run_indexed
from insitutype.sketching import compute_plaid, geo_sketch, prep_data_for_sketching
from insitutype.utils import resolve_logger, row_totals, setup_logger, take_rows

SEED_HIGH = 2**32 - 1


def _candidate_counts(n_clusts: Any, has_reference: bool) -> list[int]:
    if n_clusts is None:
        return [k + (0 if has_reference else 1) for k in range(1, 13)]
    if np.isscalar(n_clusts):
        values = [n_clusts]
    else:
        values = list(n_clusts)
    if not values:
        raise ValueError("n_clusts must not be empty.")
    out: list[int] = []
    for v in values:
        if isinstance(v, bool) or int(v) != v:
            raise ValueError(f"n_clusts must contain integers, got {v!r}.")
        if int(v) < 0:
            raise ValueError("n_clusts must be non-negative.")
        out.append(int(v))
    return sorted(set(out))


def _unique_labels(labels: np.ndarray, exclude: Sequence[str] = ()) -> list[str]:
    skip = set(exclude)
    out: list[str] = []
    for lab in labels:
        if lab is None:
            continue
        key = str(lab)
        if key not in skip and key not in out:
            out.append(key)
    return out


def _labels_or_none(values: np.ndarray | None) -> np.ndarray | None:
    if values is None:
        return None
    return np.array([None if is_missing(v) else str(v) for v in values], dtype=object)


def _check_nonzero_cells(data: CountsData, context: str = "") -> np.ndarray:
    totals = row_totals(data.matrix)
    zero = np.flatnonzero(totals <= 0)
    if zero.size:
        where = f" {context}" if context else ""
        raise ValueError(
            f"Cells with 0 counts{where} were found ({zero.size} cell(s), e.g. "
            f"{', '.join(map(str, data.cell_ids[zero[:5]]))}). Please remove."
        )
    return totals


def _build_result(
    data: CountsData,
    space: ClusterSpace,
    logliks: np.ndarray,
    probs: np.ndarray,
    profiles: pd.DataFrame,
    anchor_labels: np.ndarray,
    **extra: Any,
) -> InsitutypeResult:
    names = list(space.names)
    best = np.argmax(probs, axis=1)
    clust = pd.Series(np.asarray(space.names, dtype=object)[best], index=data.cell_ids, name="clust")
    prob = pd.Series(probs[np.arange(best.size), best], index=data.cell_ids, name="prob")
    anchored = np.array([lab is not None for lab in anchor_labels], dtype=bool)
    anchors = pd.Series(anchor_labels[anchored], index=data.cell_ids[anchored], name="anchor", dtype=object)
    return InsitutypeResult(
        clust=clust,
        prob=prob,
        probs=pd.DataFrame(probs, index=data.cell_ids, columns=names),
        logliks=pd.DataFrame(logliks, index=data.cell_ids, columns=names),
        profiles=profiles,
        anchors=anchors,
        **extra,
    )


def _classify(
    data: CountsData,
    profiles: np.ndarray,
    space: ClusterSpace,
    bg: np.ndarray,
    cohort: np.ndarray | None,
    anchor_labels: np.ndarray,
    cfg: InsitutypeConfig,
) -> tuple[np.ndarray, np.ndarray]:
    logliks = loglik_matrix(
        data.matrix,
        profiles,
        bg,
        cfg.nb_size,
        block_size=cfg.block_size,
        n_jobs=cfg.n_jobs,
        backend=cfg.backend,
    )
    probs = anchored_posteriors(logliks, cohort, space.codes_from_labels(anchor_labels))
    return logliks, probs


def _benchmark_score(
    counts,
    bg: np.ndarray,
    fit: NBClustResult,
    cfg: InsitutypeConfig,
) -> float:
    """Summed best-cluster log-likelihood of a start's profiles on the benchmark cells."""
    ll = loglik_matrix(counts, fit.profiles, bg, cfg.nb_size, block_size=cfg.block_size)
    return float(np.sum(np.max(ll, axis=1)))


def insitutype(
    counts: Any,
    *,
    neg: Any = None,
    bg: Any = None,
    anchors: Any = None,
    cohort: Any = None,
    n_clusts: int | Sequence[int] | None = None,
    reference_profiles: pd.DataFrame | None = None,
    sketching_data: Any = None,
    init_clust: Any = None,
    config: InsitutypeConfig | str | Path | None = None,
    params: Mapping[str, Any] | None = None,
    seed: int | None = None,
    cell_ids: Any = None,
    genes: Any = None,
    layer: str | None = None,
    logger: logging.Logger | None = None,
    log_file: str | Path | None = None,
) -> InsitutypeResult:
    """Assign every cell to a cluster with a negative-binomial mixture model.

    Args:
        counts: cells x genes counts (DataFrame, array, sparse matrix or AnnData).
        neg: per-cell mean negative-probe counts, used to infer ``bg``.
        bg: per-cell (or scalar) expected background.
        anchors: cell id -> fixed label mapping, or a full-length label vector.
        cohort: per-cell cohort labels.
        n_clusts: new clusters on top of the reference profiles; a sequence
            selects the best count; 0 runs purely supervised classification.
        reference_profiles: genes x cell types DataFrame of fixed profiles.
        sketching_data: cells x dims embedding for geometric sketching.
        init_clust: per-cell initial labels; overrules ``n_clusts`` and skips
            phase 1.
        config: run configuration, or the path of a JSON file holding one;
            ``params`` overrides individual fields.
        seed: seed for every random draw of the run.
        log_file: also write the run log to this file (ignored when
            ``logger`` is given).

    Returns:
        `InsitutypeResult` indexed by cell id.
    """
    cfg = resolve_config(config, params)
    if logger is None and log_file is not None:
        logger = setup_logger(log_file)
    log = resolve_logger(logger)
    rng = np.random.default_rng(seed)

    data = as_counts(counts, cell_ids=cell_ids, genes=genes, layer=layer)
    _check_nonzero_cells(data)
    n_cells = data.n_cells

    neg_arr = align_cell_vector("neg", neg, data.cell_ids)
    bg_in = align_cell_vector("bg", bg, data.cell_ids)
    coh = align_cell_vector("cohort", cohort, data.cell_ids)
    anchor_labels = align_anchors(anchors, data.cell_ids)
    init_labels = _labels_or_none(align_cell_vector("init_clust", init_clust, data.cell_ids))
    bg_vec = infer_background(
        data.matrix,
        None if neg_arr is None else neg_arr.astype(float),
        None if bg_in is None else bg_in.astype(float),
    )

    candidates = None if init_labels is not None else _candidate_counts(n_clusts, reference_profiles is not None)
    supervised = candidates is not None and candidates == [0]

    ref: pd.DataFrame | None = None
    fixed: np.ndarray | None = None
    fixed_names: tuple[str, ...] = ()
    if reference_profiles is not None:
        data, ref, _ = align_genes(data, reference_profiles, align=cfg.align_genes)
        _check_nonzero_cells(data, "in the genes shared with reference_profiles")
        fixed = ref.to_numpy(dtype=float)
        fixed_names = tuple(ref.columns)
        if not np.isfinite(fixed).all() or np.any(fixed < 0):
            raise ValueError("reference_profiles must be finite and non-negative.")

    if supervised:
        if ref is None:
            raise ValueError(
                "Either set n_clusts > 0 to perform unsupervised clustering or supply "
                "reference_profiles for supervised classification."
            )
        log.info("Classifying %d cells against %d reference profiles.", n_cells, len(fixed_names))
        space = ClusterSpace(names=fixed_names, n_fixed=len(fixed_names))
        unknown = set(_unique_labels(anchor_labels)) - set(fixed_names)
        if unknown:
            raise ValueError(f"anchors name cell types absent from reference_profiles: {sorted(unknown)}.")
        logliks, probs = _classify(data, fixed, space, bg_vec, coh, anchor_labels, cfg)
        return _build_result(data, space, logliks, probs, ref, anchor_labels)

    # anchors and reference updates
    if fixed is not None:
        auto_anchors = not any(lab is not None for lab in anchor_labels)
        if auto_anchors:
            log.info("Automatically selecting anchor cells with the best fits to reference profiles.")
            anchor_labels = _select_anchors(data, bg_vec, fixed, fixed_names, cfg)
        if cfg.update_reference_profiles:
            ref_space = ClusterSpace(names=fixed_names, n_fixed=len(fixed_names))
            ref_codes = ref_space.codes_from_labels(
                [lab if lab in fixed_names else None for lab in anchor_labels]
            )
            fixed = update_reference_profiles(data.matrix, bg_vec, fixed, ref_codes)
            ref = pd.DataFrame(fixed, index=ref.index, columns=ref.columns)
            log.info("Updated reference profiles from %d anchor cells.", int((ref_codes >= 0).sum()))
            if auto_anchors:
                anchor_labels = _select_anchors(data, bg_vec, fixed, fixed_names, cfg)
    anchored_idx = np.flatnonzero([lab is not None for lab in anchor_labels])

    # sketching scaffold
    if sketching_data is not None:
        sketch = np.asarray(sketching_data, dtype=float)
        if sketch.ndim != 2 or sketch.shape[0] != n_cells:
            warnings.warn(
                "counts and sketching_data have different numbers of rows. Discarding sketching_data.",
                RuntimeWarning,
                stacklevel=2,
            )
            sketch = None
    else:
        sketch = None
    if sketch is None:
        sketch = prep_data_for_sketching(
            data.matrix, cfg.n_sketch_components, seed=int(rng.integers(0, 2**31 - 1))
        )

    n_phase1 = min(cfg.n_phase1, n_cells)
    n_phase2 = min(cfg.n_phase2, n_cells)
    n_phase3 = min(cfg.n_phase3, n_cells)
    n_bench = min(cfg.n_benchmark_cells, n_cells)
    n_choose = min(cfg.n_chooseclusternumber, n_cells)

    anchor_extra = _unique_labels(anchor_labels, exclude=fixed_names)
    if init_labels is not None:
        init_new = _unique_labels(init_labels, exclude=fixed_names)
        if n_clusts is not None:
            warnings.warn(
                "init_clust was specified; this will overrule the n_clusts argument.",
                RuntimeWarning,
                stacklevel=2,
            )
        candidates = [len([lab for lab in init_new if lab not in anchor_extra])]

    sizes = [n_phase2, n_phase3]
    if init_labels is None:
        sizes += [n_phase1, n_bench]
    if len(candidates) > 1:
        sizes.append(n_choose)
    plaid = compute_plaid(sketch, min(sizes), alpha=cfg.sketch_alpha, max_iter=cfg.sketch_max_iter)
    log.info("Sketching plaid: %d bins over %d cells.", plaid.n_bins, n_cells)

    def _subset(n: int, with_anchors: bool = True) -> np.ndarray:
        return geo_sketch(plaid, n, rng, include=anchored_idx if with_anchors else None)

    # number of clusters
    selection: ClusterNumberSelection | None = None
    if len(candidates) > 1:
        log.info("Selecting optimal number of clusters from a range of %d - %d", candidates[0], candidates[-1])
        idx = _subset(n_choose)
        selection = choose_cluster_number(
            take_rows(data.matrix, idx),
            bg_vec[idx],
            candidates,
            fixed_profiles=fixed,
            fixed_names=fixed_names,
            anchor_labels=anchor_labels[idx],
            cohort=None if coh is None else coh[idx],
            config=cfg.engine_config(max_iters=cfg.choose_cluster_max_iters),
            criterion=cfg.cluster_criterion,
            init_thresh=cfg.init_clust_thresh,
            rng=rng,
            n_jobs=cfg.n_jobs,
            backend=cfg.backend,
        )
        k = selection.best_clust_number
    else:
        k = candidates[0]

    if init_labels is not None:
        space = ClusterSpace.build(
            fixed_names, 0, extra_names=anchor_extra + [lab for lab in init_new if lab not in anchor_extra]
        )
    else:
        space = ClusterSpace.build(fixed_names, k, extra_names=anchor_extra)
    if space.n_clusters == 0:
        raise ValueError("No clusters to fit: set n_clusts > 0 or supply reference_profiles.")

    traces: dict[str, np.ndarray] = {}
    bench_scores: np.ndarray | None = None
    seed_profiles: np.ndarray | None = None

    # phase 1
    if init_labels is not None:
        log.info("init_clust was provided, so phase 1 - random starts in small subsets - will be skipped.")
    else:
        log.info("phase 1: random starts in %d cell subsets", n_phase1)
        subsets = [_subset(n_phase1) for _ in range(cfg.n_starts)]
        bench_idx = _subset(n_bench, with_anchors=False)
        start_seeds = rng.integers(0, SEED_HIGH, size=cfg.n_starts).tolist()
        engine = cfg.engine_config()
        if cfg.n_jobs != 1:
            engine = replace(engine, n_jobs=1)

        def _run_start(task: tuple[np.ndarray, int]) -> NBClustResult:
            idx, start_seed = task
            start_rng = np.random.default_rng(start_seed)
            sub = take_rows(data.matrix, idx)
            sub_anchors = space.codes_from_labels(anchor_labels[idx])
            if fixed is not None:
                init = choose_init_clust(
                    sub,
                    bg_vec[idx],
                    fixed,
                    space,
                    size=cfg.nb_size,
                    thresh=cfg.init_clust_thresh,
                    anchors=sub_anchors,
                    rng=start_rng,
                    block_size=cfg.block_size,
                )
            else:
                init = round_robin_clust(idx.size, space, anchors=sub_anchors, rng=start_rng)
            return nbclust(
                sub,
                bg_vec[idx],
                space,
                fixed_profiles=fixed,
                init_clust=init,
                anchors=sub_anchors,
                cohort=None if coh is None else coh[idx],
                config=engine,
                rng=start_rng,
            )

        fits = run_indexed(_run_start, list(zip(subsets, start_seeds)), n_jobs=cfg.n_jobs, backend=cfg.backend)
        bench_counts = take_rows(data.matrix, bench_idx)
        bench_scores = np.asarray(
            run_indexed(
                lambda fit: _benchmark_score(bench_counts, bg_vec[bench_idx], fit, cfg),
                fits,
                n_jobs=cfg.n_jobs,
                backend=cfg.backend,
            ),
            dtype=float,
        )
        best_start = int(np.argmax(bench_scores))
        log.info("phase 1: start %d of %d scored best on %d benchmark cells.", best_start + 1, len(fits), bench_idx.size)
        winner = fits[best_start]
        traces["phase1"] = winner.pct_changed
        space = winner.space
        seed_profiles = winner.free_profiles

    # phase 2
    log.info("phase 2: refining best random start in a %d cell subset", n_phase2)
    idx2 = _subset(n_phase2)
    fit2 = nbclust(
        take_rows(data.matrix, idx2),
        bg_vec[idx2],
        space,
        fixed_profiles=fixed,
        init_profiles=seed_profiles,
        init_clust=None if init_labels is None else space.codes_from_labels(init_labels[idx2]),
        anchors=space.codes_from_labels(anchor_labels[idx2]),
        cohort=None if coh is None else coh[idx2],
        config=cfg.engine_config(pct_drop=cfg.pct_drop * cfg.phase2_tolerance_factor),
        rng=rng,
    )
    traces["phase2"] = fit2.pct_changed

    # phase 3
    log.info("phase 3: finalizing clusters in a %d cell subset", n_phase3)
    idx3 = _subset(n_phase3)
    fit3 = nbclust(
        take_rows(data.matrix, idx3),
        bg_vec[idx3],
        fit2.space,
        fixed_profiles=fixed,
        init_profiles=fit2.free_profiles,
        anchors=fit2.space.codes_from_labels(anchor_labels[idx3]),
        cohort=None if coh is None else coh[idx3],
        config=cfg.engine_config(),
        rng=rng,
    )
    traces["phase3"] = fit3.pct_changed

    # phase 4
    log.info("phase 4: classifying all %d cells", n_cells)
    space = fit3.space
    logliks, probs = _classify(data, fit3.profiles, space, bg_vec, coh, anchor_labels, cfg)
    col_sums = fit3.profiles.sum(axis=0)
    normalized = fit3.profiles / col_sums[None, :] * fit3.profiles.shape[0]
    profiles = pd.DataFrame(normalized, index=data.genes, columns=list(space.names))
    return _build_result(
        data,
        space,
        logliks,
        probs,
        profiles,
        anchor_labels,
        pct_changed=traces,
        benchmark_scores=bench_scores,
        cluster_number=selection,
        reference_profiles=ref,
    )


def _select_anchors(
    data: CountsData,
    bg: np.ndarray,
    fixed: np.ndarray,
    fixed_names: tuple[str, ...],
    cfg: InsitutypeConfig,
) -> np.ndarray:
    selection = find_anchor_cells(
        data.matrix,
        bg,
        fixed,
        fixed_names,
        size=cfg.nb_size,
        n_cells=cfg.n_anchor_cells,
        min_cosine=cfg.min_anchor_cosine,
        min_scaled_llr=cfg.min_anchor_llr,
        insufficient_anchors_thresh=cfg.insufficient_anchors_thresh,
        block_size=cfg.block_size,
        n_jobs=cfg.n_jobs,
        backend=cfg.backend,
    )
    space = ClusterSpace(names=selection.names, n_fixed=len(selection.names))
    return space.labels_from_codes(selection.anchors)
