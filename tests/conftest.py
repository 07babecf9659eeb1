from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

HIGH = 5.0
LOW = 0.2


def _simulate(
    n_cells: int = 500,
    n_genes: int = 50,
    n_types: int = 2,
    seed: int = 0,
    size: float = 10.0,
    bg: float = 0.1,
) -> SimpleNamespace:
    rng = np.random.default_rng(seed)
    block = n_genes // n_types
    profiles = np.full((n_genes, n_types), LOW)
    for t in range(n_types):
        profiles[t * block : (t + 1) * block, t] = HIGH
    truth = rng.permutation(np.arange(n_cells) % n_types)
    mu = profiles[:, truth].T + bg
    counts = rng.negative_binomial(size, size / (size + mu)).astype(float)
    counts[counts.sum(axis=1) == 0, 0] = 1.0

    names = [f"type{t}" for t in range(n_types)]
    genes = [f"g{j}" for j in range(n_genes)]
    cells = [f"c{i}" for i in range(n_cells)]
    return SimpleNamespace(
        counts=counts,
        counts_df=pd.DataFrame(counts, index=cells, columns=genes),
        profiles=profiles,
        profiles_df=pd.DataFrame(profiles, index=genes, columns=names),
        truth=truth,
        truth_labels=np.asarray(names, dtype=object)[truth],
        names=names,
        genes=genes,
        cells=cells,
        bg=np.full(n_cells, bg),
    )


def purity(found, truth) -> float:
    """Fraction of cells that fall in the majority true type of their cluster."""
    table = pd.crosstab(pd.Series(np.asarray(found)), pd.Series(np.asarray(truth)))
    return float(table.max(axis=1).sum()) / float(len(found))


@pytest.fixture
def sim() -> SimpleNamespace:
    return _simulate()


@pytest.fixture
def make_sim():
    return _simulate


@pytest.fixture
def cluster_purity():
    return purity
