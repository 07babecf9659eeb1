from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from insitutype.core.types import Plaid
from insitutype.sketching import compute_plaid, geo_sketch, prep_data_for_sketching, sample_from_plaid


def _uniform_embedding(n: int = 2000, dims: int = 2, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).random((n, dims))


def test_prep_data_for_sketching_dense_and_sparse(sim):
    dense = prep_data_for_sketching(sim.counts, n_components=5, seed=0)
    sparse = prep_data_for_sketching(sp.csr_matrix(sim.counts), n_components=5, seed=0)
    assert dense.shape == (500, 5)
    assert sparse.shape == (500, 5)
    assert np.isfinite(dense).all() and np.isfinite(sparse).all()


def test_prep_data_for_sketching_rejects_zero_count_cells():
    counts = np.ones((5, 4))
    counts[2] = 0.0
    with pytest.raises(ValueError, match="0 counts"):
        prep_data_for_sketching(counts)


def test_compute_plaid_hits_target_bin_count():
    plaid = compute_plaid(_uniform_embedding(), 100, alpha=0.1)
    assert 90 <= plaid.n_bins <= 110
    assert plaid.n_cells == 2000
    assert plaid.bin_sizes().sum() == 2000
    assert plaid.bin_sizes().min() >= 1


def test_compute_plaid_is_deterministic():
    emb = _uniform_embedding(seed=4)
    a = compute_plaid(emb, 50)
    b = compute_plaid(emb, 50)
    np.testing.assert_array_equal(a.bin_id, b.bin_id)
    assert a.resolution == b.resolution


def test_compute_plaid_rejects_bad_embeddings():
    with pytest.raises(ValueError, match="non-empty 2D"):
        compute_plaid(np.zeros((0, 2)), 10)
    with pytest.raises(ValueError, match="NaN"):
        compute_plaid(np.array([[0.0, np.nan], [1.0, 1.0]]), 2)


def test_sample_from_plaid_returns_distinct_sorted_indices():
    plaid = compute_plaid(_uniform_embedding(), 100)
    idx = sample_from_plaid(plaid, 300, np.random.default_rng(0))
    assert idx.size == 300
    assert np.unique(idx).size == 300
    assert np.all(np.diff(idx) > 0)
    assert idx.dtype == np.int64


def test_sample_from_plaid_spreads_over_bins():
    bin_id = np.array([0] * 900 + [1] * 100, dtype=np.int64)
    plaid = Plaid(bin_id=bin_id, n_bins=2, resolution=1.0)
    idx = sample_from_plaid(plaid, 100, np.random.default_rng(1))
    assert np.bincount(bin_id[idx], minlength=2).tolist() == [50, 50]
    # a rare bin smaller than its share is taken whole
    idx = sample_from_plaid(plaid, 400, np.random.default_rng(1))
    assert np.bincount(bin_id[idx], minlength=2).tolist() == [300, 100]


def test_sample_from_plaid_edge_sizes():
    plaid = Plaid(bin_id=np.array([0, 0, 1, 1, 2], dtype=np.int64), n_bins=3, resolution=1.0)
    assert sample_from_plaid(plaid, 0).size == 0
    np.testing.assert_array_equal(sample_from_plaid(plaid, 10), np.arange(5))


def test_sample_from_plaid_is_reproducible_and_leaves_plaid_unchanged():
    plaid = compute_plaid(_uniform_embedding(), 100)
    before = plaid.bin_id.copy()
    a = sample_from_plaid(plaid, 150, np.random.default_rng(7))
    b = sample_from_plaid(plaid, 150, np.random.default_rng(7))
    c = sample_from_plaid(plaid, 150, np.random.default_rng(8))
    np.testing.assert_array_equal(a, b)
    assert not np.array_equal(a, c)
    np.testing.assert_array_equal(plaid.bin_id, before)


def test_geo_sketch_includes_requested_cells():
    plaid = compute_plaid(_uniform_embedding(), 100)
    include = np.array([0, 1, 2, 1999])
    idx = geo_sketch(plaid, 100, np.random.default_rng(0), include=include)
    assert set(include.tolist()) <= set(idx.tolist())
    assert 100 <= idx.size <= 104
    with pytest.raises(ValueError, match="outside the plaid"):
        geo_sketch(plaid, 10, np.random.default_rng(0), include=np.array([5000]))
