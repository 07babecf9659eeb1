"""Worker-pool helpers for independent CPU-bound tasks."""

from __future__ import annotations

import os
from typing import Any, Callable, Sequence

from joblib import Parallel, delayed

BACKENDS: tuple[str, ...] = ("threading", "loky", "multiprocessing", "sequential")


def resolve_n_jobs(n_jobs: int | None) -> int:
    """Return a concrete worker count.

    ``None`` honors the ``INSITUTYPE_N_JOBS`` environment variable and falls
    back to 1. Negative values follow joblib semantics (-1 = all CPUs).
    """
    if n_jobs is None:
        raw = os.environ.get("INSITUTYPE_N_JOBS", "").strip()
        if not raw:
            return 1
        try:
            n_jobs = int(raw)
        except ValueError:
            raise ValueError(f"INSITUTYPE_N_JOBS must be an integer, got {raw!r}.") from None
    n = int(n_jobs)
    if n == 0:
        raise ValueError("n_jobs must be non-zero.")
    if n < 0:
        cpu = os.cpu_count() or 1
        return max(1, cpu + 1 + n)
    return n


def run_indexed(
    func: Callable[..., Any],
    tasks: Sequence[Any],
    *,
    n_jobs: int | None = 1,
    backend: str = "threading",
) -> list[Any]:
    """Apply ``func`` to every task; results are returned in task order."""
    if backend not in BACKENDS:
        raise ValueError(f"backend must be one of {BACKENDS}, got {backend!r}.")
    items = list(tasks)
    n = min(resolve_n_jobs(n_jobs), max(1, len(items)))
    if n == 1 or backend == "sequential" or len(items) <= 1:
        return [func(t) for t in items]
    return list(Parallel(n_jobs=n, backend=backend, verbose=0)(delayed(func)(t) for t in items))
