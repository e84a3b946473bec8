"""
Model fitting functions for survey segmentation.

Each module contains the fitting logic for one clustering model along with
helpers specific to it.

Available Models:
- LCA (lca.py): Latent Class Analysis of categorical responses via EM
- K-modes (kmodes.py): Mode-based clustering used as a baseline
"""

from ..exceptions import ConvergenceError

# LCA exports
from .lca import (
    fit_lca,
    predict_lca,
    predict_lca_proba,
    lca_profiles_frame,
    compute_classification_entropy,
    count_lca_parameters,
)

# K-modes exports
from .kmodes import (
    fit_kmodes,
    run_kmodes_sweep,
    centroids_frame,
    kmodes_score,
)

__all__ = [
    'ConvergenceError',
    'fit_lca',
    'predict_lca',
    'predict_lca_proba',
    'lca_profiles_frame',
    'compute_classification_entropy',
    'count_lca_parameters',
    'fit_kmodes',
    'run_kmodes_sweep',
    'centroids_frame',
    'kmodes_score',
]
