"""Core likelihood and clustering subpackage."""

from insitutype.core.likelihood import (
    anchored_posteriors,
    background_loglik,
    cohort_adjust_logliks,
    estimate_profiles,
    infer_background,
    loglik_matrix,
    logliks_to_probs,
    nb_loglik,
)
from insitutype.core.nbclust import choose_init_clust, nbclust, round_robin_clust
from insitutype.core.types import (
    AnchorSelection,
    ClusterNumberSelection,
    ClusterSpace,
    FitStatus,
    InsitutypeConfig,
    InsitutypeResult,
    NBClustConfig,
    NBClustResult,
    Plaid,
)

__all__ = [
    "NBClustConfig",
    "InsitutypeConfig",
    "ClusterSpace",
    "FitStatus",
    "NBClustResult",
    "AnchorSelection",
    "Plaid",
    "ClusterNumberSelection",
    "InsitutypeResult",
    "nb_loglik",
    "background_loglik",
    "loglik_matrix",
    "logliks_to_probs",
    "cohort_adjust_logliks",
    "anchored_posteriors",
    "estimate_profiles",
    "infer_background",
    "nbclust",
    "round_robin_clust",
    "choose_init_clust",
]
