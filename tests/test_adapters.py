from __future__ import annotations

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from insitutype.adapters import align_anchors, align_cell_vector, align_genes, as_counts


def test_as_counts_from_dataframe_keeps_ids(sim):
    data = as_counts(sim.counts_df)
    assert data.n_cells == 500 and data.n_genes == 50
    assert data.cell_ids[0] == "c0"
    assert data.genes[-1] == "g49"


def test_as_counts_from_arrays_uses_default_ids():
    data = as_counts(np.ones((3, 2)))
    assert data.cell_ids.tolist() == ["cell_0", "cell_1", "cell_2"]
    assert data.genes.tolist() == ["gene_0", "gene_1"]
    sparse = as_counts(sp.coo_matrix(np.eye(3)))
    assert sparse.matrix.format == "csr"


def test_as_counts_from_anndata_layer():
    X = np.arange(6, dtype=float).reshape(3, 2) + 1.0
    adata = ad.AnnData(X=np.zeros((3, 2)))
    adata.obs_names = ["a", "b", "c"]
    adata.var_names = ["G1", "G2"]
    adata.layers["counts"] = X
    data = as_counts(adata, layer="counts")
    np.testing.assert_array_equal(data.matrix, X)
    assert data.cell_ids.tolist() == ["a", "b", "c"]
    with pytest.raises(KeyError, match="not found"):
        as_counts(adata, layer="raw")


def test_as_counts_validates_values():
    with pytest.raises(ValueError, match="non-negative"):
        as_counts(np.array([[1.0, -1.0]]))
    with pytest.raises(ValueError, match="NaN"):
        as_counts(np.array([[1.0, np.nan]]))
    with pytest.raises(ValueError, match="2D"):
        as_counts(np.ones(4))
    with pytest.raises(ValueError, match="unique"):
        as_counts(np.ones((2, 2)), cell_ids=["x", "x"])


def test_align_cell_vector_matches_series_by_id():
    ids = pd.Index(["a", "b", "c"])
    out = align_cell_vector("bg", pd.Series([3.0, 1.0, 2.0], index=["c", "a", "b"]), ids)
    np.testing.assert_array_equal(out, [1.0, 2.0, 3.0])
    assert align_cell_vector("bg", None, ids) is None
    np.testing.assert_array_equal(align_cell_vector("bg", 0.5, ids), [0.5])
    with pytest.raises(ValueError, match="missing values"):
        align_cell_vector("bg", pd.Series([1.0], index=["a"]), ids)
    with pytest.raises(ValueError, match="must equal the number of cells"):
        align_cell_vector("neg", [1.0, 2.0], ids)


def test_align_anchors_accepts_mappings_and_vectors():
    ids = pd.Index(["a", "b", "c"])
    out = align_anchors({"c": "T", "a": None}, ids)
    assert out.tolist() == [None, None, "T"]
    out = align_anchors(["T", np.nan, ""], ids)
    assert out.tolist() == ["T", None, None]
    with pytest.raises(ValueError, match="absent from counts"):
        align_anchors({"zzz": "T"}, ids)
    with pytest.raises(ValueError, match="must have length equal"):
        align_anchors(["T"], ids)


def test_align_genes_warns_about_partial_overlap(sim):
    data = as_counts(sim.counts_df)
    refs = sim.profiles_df.iloc[:40]
    with pytest.warns(RuntimeWarning, match="missing from reference_profiles"):
        aligned, prof, lost = align_genes(data, refs)
    assert aligned.n_genes == 40
    assert prof.index.equals(aligned.genes)
    assert lost == [f"g{j}" for j in range(40, 50)]


def test_align_genes_summarizes_long_gene_lists(make_sim):
    sim = make_sim(n_cells=20, n_genes=120)
    data = as_counts(sim.counts_df)
    with pytest.warns(RuntimeWarning, match="60 genes in the count data"):
        align_genes(data, sim.profiles_df.iloc[:60])


def test_align_genes_requires_shared_genes(sim):
    data = as_counts(sim.counts_df)
    refs = pd.DataFrame(np.ones((2, 1)), index=["x", "y"], columns=["T"])
    with pytest.raises(ValueError, match="share no genes"):
        align_genes(data, refs)
    with pytest.raises(ValueError, match="align_genes=False"):
        align_genes(data, sim.profiles_df.iloc[::-1], align=False)
