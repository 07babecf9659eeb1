from __future__ import annotations

import numpy as np
import pytest

from insitutype.cluster_number import choose_cluster_number, information_criteria
from insitutype.core.types import NBClustConfig


def test_information_criteria():
    aic, bic = information_criteria(-100.0, 10, 100)
    assert aic == pytest.approx(220.0)
    assert bic == pytest.approx(200.0 + 10 * np.log(100))


def test_choose_cluster_number_finds_two_types(sim):
    sel = choose_cluster_number(
        sim.counts,
        sim.bg,
        [3, 1, 2],
        config=NBClustConfig(max_iters=10),
        rng=np.random.default_rng(0),
    )
    assert sel.best_clust_number == 2
    assert sel.criterion == "bic"
    assert sel.table["n_clusts"].tolist() == [1, 2, 3]
    assert set(sel.table.columns) >= {"n_clusts", "n_clusters_fitted", "loglik", "n_params", "aic", "bic", "converged"}
    assert sel.table.loc[sel.table["n_clusts"] == 2, "n_params"].item() == 2 * 50


def test_choose_cluster_number_with_references_counts_only_new_clusters(sim):
    sel = choose_cluster_number(
        sim.counts,
        sim.bg,
        [0, 1],
        fixed_profiles=sim.profiles[:, :1],
        fixed_names=["type0"],
        criterion="aic",
        rng=np.random.default_rng(0),
    )
    assert sel.best_clust_number == 1
    assert sel.table["n_params"].tolist() == [0, 50]


def test_choose_cluster_number_is_worker_independent(sim):
    kwargs = dict(config=NBClustConfig(max_iters=5), backend="threading")
    a = choose_cluster_number(sim.counts, sim.bg, [1, 2], rng=np.random.default_rng(5), n_jobs=1, **kwargs)
    b = choose_cluster_number(sim.counts, sim.bg, [1, 2], rng=np.random.default_rng(5), n_jobs=2, **kwargs)
    np.testing.assert_allclose(a.table["loglik"], b.table["loglik"])


def test_choose_cluster_number_rejects_bad_candidates(sim):
    with pytest.raises(ValueError, match="requires reference profiles"):
        choose_cluster_number(sim.counts, sim.bg, [0, 1])
    with pytest.raises(ValueError, match="non-negative"):
        choose_cluster_number(sim.counts, sim.bg, [-1, 2])
    with pytest.raises(ValueError, match="criterion"):
        choose_cluster_number(sim.counts, sim.bg, [1, 2], criterion="dic")


def test_package_exports_the_selector_directly():
    import insitutype

    assert insitutype.choose_cluster_number is choose_cluster_number
