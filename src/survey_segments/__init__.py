"""
Survey Segments
===============

Latent class segmentation of a consumer survey with categorical answers.

The package loads banded survey responses, fits Latent Class Analysis
models over a range of class counts, selects a class count from AIC/BIC
elbows checked against train/test stability, and compares the chosen
segmentation with a k-modes clustering baseline.

Quick Start
-----------
```python
import numpy as np
from survey_segments import fit_lca, fit_kmodes, compare_partitions

result = fit_lca(data, n_classes=3, rng=np.random.default_rng(42))
baseline = fit_kmodes(data, n_clusters=3, rng=np.random.default_rng(43))
compare_partitions(result['assignments'], baseline['labels'])['ari']
```

Package Structure
-----------------
- `config`: Settings and survey layout constants
- `preprocessing`: Loading and integer-coding of the raw export
- `models`: LCA and k-modes fitting
- `selection`: Class-count sweep, elbow rules and stability veto
- `pipeline`: End-to-end run and CSV export
- `utils`: Seeded generators, train/test split, partition comparison
"""

__version__ = "0.1.0"

# Configuration
from .config import (
    AnalysisSettings,
    get_settings,
    LEVEL_CODES,
    N_CATEGORIES,
)

from .exceptions import ConvergenceError

# Utility functions
from .utils import (
    make_rng,
    train_test_split,
    split_frame,
    class_proportions,
    compare_partitions,
)

from .preprocessing import load_survey, preprocess_survey, describe_responses

# Import subpackage for easy access
from . import models

# Commonly used model functions at top level for convenience
from .models import fit_lca, fit_kmodes

from .selection import (
    run_class_sweep,
    select_n_classes,
    elbow_by_improvement,
    elbow_by_curvature,
)

from .pipeline import run_analysis, analyze_responses

__all__ = [
    # Version
    '__version__',
    # Config
    'AnalysisSettings',
    'get_settings',
    'LEVEL_CODES',
    'N_CATEGORIES',
    'ConvergenceError',
    # Utilities
    'make_rng',
    'train_test_split',
    'split_frame',
    'class_proportions',
    'compare_partitions',
    # Preprocessing
    'load_survey',
    'preprocess_survey',
    'describe_responses',
    # Subpackages
    'models',
    # Models
    'fit_lca',
    'fit_kmodes',
    # Selection
    'run_class_sweep',
    'select_n_classes',
    'elbow_by_improvement',
    'elbow_by_curvature',
    # Pipeline
    'run_analysis',
    'analyze_responses',
]
