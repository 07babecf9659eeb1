"""insitutype public API."""

from insitutype._version import __version__
from insitutype.anchors import find_anchor_cells, update_reference_profiles
from insitutype.cluster_number import choose_cluster_number
from insitutype.core.nbclust import nbclust
from insitutype.core.types import InsitutypeConfig, InsitutypeResult, NBClustConfig
from insitutype.sketching import compute_plaid, geo_sketch, prep_data_for_sketching


def insitutype(*args, **kwargs):
    """Lazy wrapper to avoid importing anndata at import time."""
    from insitutype.pipeline import insitutype as _insitutype

    return _insitutype(*args, **kwargs)


__all__ = [
    "__version__",
    "insitutype",
    "nbclust",
    "choose_cluster_number",
    "find_anchor_cells",
    "update_reference_profiles",
    "compute_plaid",
    "geo_sketch",
    "prep_data_for_sketching",
    "InsitutypeConfig",
    "InsitutypeResult",
    "NBClustConfig",
]
