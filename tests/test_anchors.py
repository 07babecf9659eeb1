from __future__ import annotations

import logging

import numpy as np
import pytest

from insitutype.anchors import cosine_similarity, find_anchor_cells, update_reference_profiles


def test_cosine_similarity_of_parallel_vectors_is_one():
    counts = np.array([[2.0, 0.0, 4.0], [0.0, 3.0, 0.0]])
    profiles = np.array([[1.0], [0.0], [2.0]])
    cos = cosine_similarity(counts, profiles)
    np.testing.assert_allclose(cos[:, 0], [1.0, 0.0])


def test_find_anchor_cells_picks_matching_cells(sim, caplog):
    caplog.set_level(logging.INFO, logger="insitutype")
    sel = find_anchor_cells(sim.counts, sim.bg, sim.profiles, sim.names, n_cells=50)
    anchored = sel.anchors >= 0
    assert sel.n_anchors == int(anchored.sum())
    assert 0 < sel.n_anchors <= 100
    np.testing.assert_array_equal(sel.anchors[anchored], sim.truth[anchored])
    assert sel.n_per_type == {"type0": 50, "type1": 50}
    assert sel.dropped == ()
    assert np.all(sel.cosine[anchored] >= 0.3)
    assert np.all(sel.scaled_llr[anchored] >= 0.01)
    assert "anchor cells" in caplog.text


def test_find_anchor_cells_keeps_the_strongest_candidates(sim):
    sel = find_anchor_cells(sim.counts, sim.bg, sim.profiles, sim.names, n_cells=10)
    for t in range(2):
        chosen = np.flatnonzero(sel.anchors == t)
        rest = np.flatnonzero((sel.anchors < 0) & (sim.truth == t))
        assert sel.scaled_llr[chosen].min() >= np.max(sel.scaled_llr[rest], initial=-np.inf) - 1e-12


def test_find_anchor_cells_drops_types_with_too_few_anchors(sim):
    with pytest.warns(RuntimeWarning, match="Too few anchor cells"):
        sel = find_anchor_cells(
            sim.counts,
            sim.bg,
            sim.profiles,
            sim.names,
            insufficient_anchors_thresh=10_000,
        )
    assert sel.n_anchors == 0
    assert set(sel.dropped) == {"type0", "type1"}


def test_find_anchor_cells_cosine_threshold_filters_everything(sim):
    with pytest.warns(RuntimeWarning):
        sel = find_anchor_cells(sim.counts, sim.bg, sim.profiles, sim.names, min_cosine=1.01)
    assert sel.n_anchors == 0


def test_find_anchor_cells_single_profile_uses_background_null(sim):
    sel = find_anchor_cells(sim.counts, sim.bg, sim.profiles[:, :1], ["type0"], n_cells=500)
    anchored = sel.anchors >= 0
    assert anchored.sum() > 0
    assert np.all(sim.truth[anchored] == 0)


def test_find_anchor_cells_with_near_identical_profiles(sim):
    twin = sim.profiles[:, :1].copy()
    twin[0] *= 1.02
    profiles = np.hstack([sim.profiles[:, :1], twin])
    sel = find_anchor_cells(sim.counts, sim.bg, profiles, ["type0", "type0_twin"], insufficient_anchors_thresh=1)
    anchored = sel.anchors >= 0
    # background is the null, so a close second profile does not veto a cell
    assert anchored.sum() >= 200
    assert np.all(sim.truth[anchored] == 0)
    assert np.all(sel.scaled_llr[anchored] >= 0.01)


def test_find_anchor_cells_checks_names(sim):
    with pytest.raises(ValueError, match="one column per name"):
        find_anchor_cells(sim.counts, sim.bg, sim.profiles, ["only_one"])


def test_update_reference_profiles_moves_towards_anchor_means(sim):
    start = np.full_like(sim.profiles, 1.0)
    anchors = np.full(500, -1, dtype=np.int64)
    anchors[sim.truth == 0] = 0
    updated = update_reference_profiles(sim.counts, sim.bg, start, anchors)
    np.testing.assert_allclose(updated[:, 0], sim.profiles[:, 0], atol=0.5)
    # a type without anchors keeps its profile
    np.testing.assert_array_equal(updated[:, 1], start[:, 1])


def test_update_reference_profiles_validates_codes(sim):
    with pytest.raises(ValueError, match="anchors length"):
        update_reference_profiles(sim.counts, sim.bg, sim.profiles, np.zeros(3, dtype=np.int64))
    with pytest.raises(ValueError, match="outside the reference profiles"):
        update_reference_profiles(sim.counts, sim.bg, sim.profiles, np.full(500, 5, dtype=np.int64))
