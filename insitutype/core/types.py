"""Typed configuration and result containers for insitutype core operations."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Sequence

import numpy as np
import pandas as pd

METHODS: tuple[str, ...] = ("CEM", "EM", "SEM")
CRITERIA: tuple[str, ...] = ("bic", "aic")


def synthetic_names(n: int, taken: set[str] | None = None) -> list[str]:
    """Spreadsheet-style cluster names: a, b, ..., z, aa, ab, ... skipping ``taken``."""
    taken = taken or set()
    out: list[str] = []
    i = 0
    while len(out) < int(n):
        k, name = i, ""
        while True:
            name = chr(ord("a") + k % 26) + name
            k = k // 26 - 1
            if k < 0:
                break
        if name not in taken:
            out.append(name)
        i += 1
    return out


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ValueError(f"{name} must be positive, got {value!r}.")


@dataclass(frozen=True)
class NBClustConfig:
    """Knobs for one run of the mixture clustering engine."""

    method: str = "CEM"
    nb_size: float = 10.0
    pct_drop: float = 1e-4
    min_prob_increase: float = 0.05
    max_iters: int = 40
    max_reseed_attempts: int = 3
    block_size: int = 5000
    n_jobs: int = 1
    backend: str = "threading"

    def __post_init__(self) -> None:
        if str(self.method).upper() not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, got {self.method!r}.")
        object.__setattr__(self, "method", str(self.method).upper())
        _check_positive("nb_size", float(self.nb_size))
        _check_positive("max_iters", int(self.max_iters))
        _check_positive("block_size", int(self.block_size))
        if float(self.pct_drop) < 0.0:
            raise ValueError("pct_drop must be non-negative.")
        if int(self.max_reseed_attempts) < 0:
            raise ValueError("max_reseed_attempts must be non-negative.")


@dataclass(frozen=True)
class InsitutypeConfig:
    """Pipeline-level configuration.

    Subsample sizes are upper bounds; each is clamped to the number of cells
    at run time.
    """

    method: str = "CEM"
    nb_size: float = 10.0
    align_genes: bool = True
    update_reference_profiles: bool = False
    pct_drop: float = 1e-4
    min_prob_increase: float = 0.05
    max_iters: int = 40
    n_anchor_cells: int = 500
    min_anchor_cosine: float = 0.3
    min_anchor_llr: float = 0.01
    insufficient_anchors_thresh: int = 20
    n_starts: int = 10
    n_phase1: int = 5000
    n_phase2: int = 20000
    n_phase3: int = 100000
    n_benchmark_cells: int = 50000
    n_chooseclusternumber: int = 2000
    choose_cluster_max_iters: int = 10
    cluster_criterion: str = "bic"
    phase2_tolerance_factor: float = 10.0
    init_clust_thresh: float = 0.9
    n_sketch_components: int = 20
    sketch_alpha: float = 0.1
    sketch_max_iter: int = 200
    block_size: int = 5000
    n_jobs: int = 1
    backend: str = "threading"

    def __post_init__(self) -> None:
        if str(self.method).upper() not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, got {self.method!r}.")
        object.__setattr__(self, "method", str(self.method).upper())
        crit = str(self.cluster_criterion).lower()
        if crit not in CRITERIA:
            raise ValueError(f"cluster_criterion must be one of {CRITERIA}, got {self.cluster_criterion!r}.")
        object.__setattr__(self, "cluster_criterion", crit)
        for name in (
            "n_starts",
            "n_phase1",
            "n_phase2",
            "n_phase3",
            "n_benchmark_cells",
            "n_chooseclusternumber",
            "choose_cluster_max_iters",
            "max_iters",
            "n_anchor_cells",
            "n_sketch_components",
            "sketch_max_iter",
            "block_size",
        ):
            _check_positive(name, int(getattr(self, name)))
        _check_positive("nb_size", float(self.nb_size))
        if not 0.0 <= float(self.init_clust_thresh) <= 1.0:
            raise ValueError("init_clust_thresh must lie in [0, 1].")
        if not 0.0 < float(self.sketch_alpha) < 1.0:
            raise ValueError("sketch_alpha must lie in (0, 1).")
        if float(self.phase2_tolerance_factor) < 1.0:
            raise ValueError("phase2_tolerance_factor must be >= 1.")
        if int(self.insufficient_anchors_thresh) < 0:
            raise ValueError("insufficient_anchors_thresh must be non-negative.")

    def engine_config(self, *, pct_drop: float | None = None, max_iters: int | None = None) -> NBClustConfig:
        return NBClustConfig(
            method=self.method,
            nb_size=float(self.nb_size),
            pct_drop=float(self.pct_drop if pct_drop is None else pct_drop),
            min_prob_increase=float(self.min_prob_increase),
            max_iters=int(self.max_iters if max_iters is None else max_iters),
            block_size=int(self.block_size),
            n_jobs=int(self.n_jobs),
            backend=str(self.backend),
        )

    def with_overrides(self, **kwargs: Any) -> "InsitutypeConfig":
        return replace(self, **kwargs)


@dataclass(frozen=True)
class ClusterSpace:
    """Ordered cluster identities shared by profiles, posteriors and codes.

    Clusters are handled as integer codes into ``names``; the first
    ``n_fixed`` clusters hold reference profiles that are never updated.
    Code ``-1`` means "no cluster" (e.g. an unanchored cell).
    """

    names: tuple[str, ...]
    n_fixed: int = 0

    def __post_init__(self) -> None:
        names = tuple(str(n) for n in self.names)
        if len(set(names)) != len(names):
            raise ValueError("Cluster names must be unique.")
        if not 0 <= int(self.n_fixed) <= len(names):
            raise ValueError("n_fixed must lie in [0, number of clusters].")
        object.__setattr__(self, "names", names)

    @classmethod
    def build(
        cls,
        fixed_names: Sequence[str],
        n_new: int,
        extra_names: Sequence[str] = (),
    ) -> "ClusterSpace":
        """Fixed names, then ``n_new`` free clusters.

        Free clusters take their names from ``extra_names`` (e.g. anchor-only
        types) first and synthetic names after that; when ``extra_names``
        outnumber ``n_new`` every extra name is still kept.
        """
        fixed = [str(n) for n in fixed_names]
        free: list[str] = []
        for name in extra_names:
            key = str(name)
            if key not in fixed and key not in free:
                free.append(key)
        n_synthetic = max(0, int(n_new) - len(free))
        free.extend(synthetic_names(n_synthetic, taken=set(fixed) | set(free)))
        return cls(names=tuple(fixed + free), n_fixed=len(fixed))

    @property
    def n_clusters(self) -> int:
        return len(self.names)

    @property
    def n_free(self) -> int:
        return len(self.names) - int(self.n_fixed)

    @property
    def fixed_names(self) -> tuple[str, ...]:
        return self.names[: self.n_fixed]

    @property
    def free_names(self) -> tuple[str, ...]:
        return self.names[self.n_fixed :]

    def is_fixed(self) -> np.ndarray:
        out = np.zeros(self.n_clusters, dtype=bool)
        out[: self.n_fixed] = True
        return out

    def index(self, name: str) -> int:
        try:
            return self.names.index(str(name))
        except ValueError:
            raise KeyError(f"Unknown cluster '{name}'.") from None

    def codes_from_labels(self, labels: Sequence[Any]) -> np.ndarray:
        lookup = {n: i for i, n in enumerate(self.names)}
        out = np.full(len(labels), -1, dtype=np.int64)
        for i, lab in enumerate(labels):
            if lab is None or (isinstance(lab, float) and np.isnan(lab)):
                continue
            key = str(lab)
            if key not in lookup:
                raise KeyError(f"Unknown cluster '{key}'.")
            out[i] = lookup[key]
        return out

    def labels_from_codes(self, codes: np.ndarray) -> np.ndarray:
        arr = np.asarray(codes, dtype=np.int64)
        names = np.asarray(self.names + ("",), dtype=object)
        out = names[np.where(arr < 0, len(self.names), arr)]
        out[arr < 0] = None
        return out

    def subset(self, keep: np.ndarray) -> "ClusterSpace":
        keep_arr = np.asarray(keep, dtype=bool)
        if keep_arr.size != self.n_clusters:
            raise ValueError("keep mask length must equal the number of clusters.")
        names = tuple(n for n, k in zip(self.names, keep_arr) if k)
        n_fixed = int(keep_arr[: self.n_fixed].sum())
        return ClusterSpace(names=names, n_fixed=n_fixed)

    def remap(self, codes: np.ndarray, target: "ClusterSpace") -> np.ndarray:
        """Translate codes of this space into codes of ``target`` (-1 when absent)."""
        lookup = np.array(
            [target.names.index(n) if n in target.names else -1 for n in self.names] + [-1],
            dtype=np.int64,
        )
        arr = np.asarray(codes, dtype=np.int64)
        return lookup[np.where(arr < 0, self.n_clusters, arr)]


class FitStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERS = "max_iters"


@dataclass(frozen=True)
class NBClustResult:
    """Output of `nbclust` on one subset of cells.

    - `profiles`: genes x clusters, fixed clusters first.
    - `clust`: per-cell integer codes into `space`.
    - `pct_changed`: fraction of cells with a valid switchover per iteration.
    """

    profiles: np.ndarray
    space: ClusterSpace
    clust: np.ndarray
    probs: np.ndarray
    logliks: np.ndarray
    pct_changed: np.ndarray
    n_iter: int
    status: FitStatus

    @property
    def free_profiles(self) -> np.ndarray:
        return self.profiles[:, self.space.n_fixed :]

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED


@dataclass(frozen=True)
class AnchorSelection:
    """Anchor cells chosen against a set of reference profiles."""

    anchors: np.ndarray
    names: tuple[str, ...]
    n_per_type: dict[str, int]
    dropped: tuple[str, ...]
    scaled_llr: np.ndarray
    cosine: np.ndarray

    @property
    def n_anchors(self) -> int:
        return int(np.sum(np.asarray(self.anchors) >= 0))


@dataclass(frozen=True)
class Plaid:
    """Geometric partition of cells used as sampling strata."""

    bin_id: np.ndarray
    n_bins: int
    resolution: float

    @property
    def n_cells(self) -> int:
        return int(self.bin_id.size)

    def bin_sizes(self) -> np.ndarray:
        return np.bincount(self.bin_id, minlength=self.n_bins)


@dataclass(frozen=True)
class ClusterNumberSelection:
    best_clust_number: int
    criterion: str
    table: pd.DataFrame


@dataclass(frozen=True)
class InsitutypeResult:
    """Output of `insitutype`.

    - `clust`/`prob`: per-cell label and best posterior, indexed by cell id.
    - `probs`/`logliks`: cells x clusters.
    - `profiles`: genes x clusters.
    - `anchors`: labels of the anchor cells actually used.
    """

    clust: pd.Series
    prob: pd.Series
    probs: pd.DataFrame
    logliks: pd.DataFrame
    profiles: pd.DataFrame
    anchors: pd.Series
    pct_changed: dict[str, np.ndarray] = field(default_factory=dict)
    benchmark_scores: np.ndarray | None = None
    cluster_number: ClusterNumberSelection | None = None
    reference_profiles: pd.DataFrame | None = None
