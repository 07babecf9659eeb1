"""Normalize accepted inputs to the single counts-matrix contract of the core."""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Any, Mapping

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

MAX_LISTED_GENES = 50


@dataclass(frozen=True)
class CountsData:
    """Cells x genes counts with stable cell and gene identifiers."""

    matrix: Any
    cell_ids: pd.Index
    genes: pd.Index

    @property
    def n_cells(self) -> int:
        return int(self.matrix.shape[0])

    @property
    def n_genes(self) -> int:
        return int(self.matrix.shape[1])

    def subset_genes(self, genes) -> "CountsData":
        idx = self.genes.get_indexer(pd.Index(genes))
        if np.any(idx < 0):
            raise KeyError("Requested genes are not all present in the counts matrix.")
        return CountsData(matrix=self.matrix[:, idx], cell_ids=self.cell_ids, genes=self.genes[idx])


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and np.isnan(value):
        return True
    if value is pd.NA or value is pd.NaT:
        return True
    return isinstance(value, str) and value.strip() == ""


def as_counts(
    counts: Any,
    *,
    cell_ids: Any = None,
    genes: Any = None,
    layer: str | None = None,
) -> CountsData:
    """Extract a cells x genes counts matrix from a supported container.

    Accepts an `anndata.AnnData` (``X`` or a named layer), a pandas DataFrame
    (index = cells, columns = genes), a scipy sparse matrix or a numpy array.
    """
    if isinstance(counts, ad.AnnData):
        if layer is not None:
            if layer not in counts.layers:
                raise KeyError(f"adata.layers['{layer}'] not found.")
            X = counts.layers[layer]
        else:
            X = counts.X
        cell_ids = counts.obs_names if cell_ids is None else cell_ids
        genes = counts.var_names if genes is None else genes
    elif isinstance(counts, pd.DataFrame):
        X = counts.to_numpy(dtype=float)
        cell_ids = counts.index if cell_ids is None else cell_ids
        genes = counts.columns if genes is None else genes
    else:
        X = counts

    if sp.issparse(X):
        mat = sp.csr_matrix(X, dtype=float)
        values = mat.data
    else:
        mat = np.asarray(X, dtype=float)
        values = mat
    if mat.ndim != 2:
        raise ValueError(f"counts must be a 2D cells x genes matrix, got {mat.ndim} dimension(s).")
    if not np.all(np.isfinite(values)):
        raise ValueError("counts contain NaN/inf values.")
    if np.any(values < 0):
        raise ValueError("counts must be non-negative.")

    n_cells, n_genes = int(mat.shape[0]), int(mat.shape[1])
    cells = pd.Index([f"cell_{i}" for i in range(n_cells)] if cell_ids is None else cell_ids).astype(str)
    gene_idx = pd.Index([f"gene_{j}" for j in range(n_genes)] if genes is None else genes).astype(str)
    if cells.size != n_cells:
        raise ValueError(f"cell_ids length ({cells.size}) must equal the number of rows ({n_cells}).")
    if gene_idx.size != n_genes:
        raise ValueError(f"genes length ({gene_idx.size}) must equal the number of columns ({n_genes}).")
    if cells.has_duplicates:
        raise ValueError("cell identifiers must be unique.")
    if gene_idx.has_duplicates:
        raise ValueError("gene identifiers must be unique.")
    return CountsData(matrix=mat, cell_ids=cells, genes=gene_idx)


def align_cell_vector(name: str, values: Any, cell_ids: pd.Index) -> np.ndarray | None:
    """Per-cell values in counts row order; Series are matched by cell id."""
    if values is None:
        return None
    if isinstance(values, pd.Series):
        ser = values.copy()
        ser.index = ser.index.astype(str)
        missing = cell_ids.difference(ser.index)
        if missing.size:
            raise ValueError(f"{name} is missing values for {missing.size} cell(s).")
        return ser.reindex(cell_ids).to_numpy()
    arr = np.asarray(values)
    if arr.ndim == 0:
        return arr.reshape(1)
    arr = arr.ravel()
    if arr.size != cell_ids.size:
        raise ValueError(
            f"{name} length ({arr.size}) must equal the number of cells (rows) in counts ({cell_ids.size})."
        )
    return arr


def align_anchors(anchors: Any, cell_ids: pd.Index) -> np.ndarray:
    """Anchor labels per cell (``None`` for unanchored cells).

    Accepts a mapping or Series keyed by cell id (partial), or a full-length
    sequence with missing values for unanchored cells.
    """
    out = np.full(cell_ids.size, None, dtype=object)
    if anchors is None:
        return out
    if isinstance(anchors, (pd.Series, Mapping)):
        ser = pd.Series(anchors, dtype=object)
        ser.index = ser.index.astype(str)
        unknown = ser.index.difference(cell_ids)
        if unknown.size:
            raise ValueError(f"anchors reference {unknown.size} cell id(s) absent from counts.")
        pos = cell_ids.get_indexer(ser.index)
        for p, lab in zip(pos, ser.to_numpy()):
            out[p] = None if is_missing(lab) else str(lab)
        return out
    arr = np.asarray(anchors, dtype=object).ravel()
    if arr.size != cell_ids.size:
        raise ValueError("anchors must have length equal to the number of cells (rows) in counts.")
    for i, lab in enumerate(arr):
        out[i] = None if is_missing(lab) else str(lab)
    return out


def align_genes(
    counts: CountsData,
    profiles: pd.DataFrame,
    *,
    align: bool = True,
) -> tuple[CountsData, pd.DataFrame, list[str]]:
    """Restrict counts and reference profiles to their shared genes.

    Returns the aligned counts, aligned profiles and the counts genes that
    were dropped.
    """
    prof = profiles.copy()
    prof.index = prof.index.astype(str)
    prof.columns = prof.columns.astype(str)
    if not align:
        if not prof.index.equals(counts.genes):
            raise ValueError(
                "align_genes=False requires reference_profiles rows to match the counts genes exactly."
            )
        return counts, prof, []

    shared = counts.genes[counts.genes.isin(prof.index)]
    lost = [str(g) for g in counts.genes[~counts.genes.isin(prof.index)]]
    if shared.size == 0:
        raise ValueError("counts and reference_profiles share no genes.")
    if lost:
        if len(lost) <= MAX_LISTED_GENES:
            msg = (
                "The following genes in the count data are missing from reference_profiles "
                f"and will be omitted: {','.join(lost)}"
            )
        else:
            msg = f"{len(lost)} genes in the count data are missing from reference_profiles and will be omitted."
        warnings.warn(msg, RuntimeWarning, stacklevel=2)
    return counts.subset_genes(shared), prof.loc[shared], lost
