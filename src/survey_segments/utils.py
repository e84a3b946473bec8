"""
Utility functions for the survey segmentation package.

This module provides helpers for:
- Seeded random generators (one explicit generator per fit, no global state)
- Reproducible train/test partitioning
- Class proportions and cross-method partition comparison
- CSV export of analysis results

These utilities support the analysis pipeline by handling cross-cutting
concerns that don't belong to any specific model.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.metrics import adjusted_rand_score


logger = logging.getLogger(__name__)


# =============================================================================
# RANDOMNESS
# =============================================================================

def make_rng(seed: Union[int, Sequence[int], None]) -> np.random.Generator:
    """
    Create an independent random generator.

    A sequence seed such as ``(seed, n_classes)`` gives each fit in a sweep
    its own stream, so skipping or reordering one fit never shifts the
    random draws of another.
    """
    return np.random.default_rng(seed)


# =============================================================================
# TRAIN/TEST SPLIT
# =============================================================================

def train_test_split(n_obs: int, train_fraction: float = 0.7,
                     rng: Optional[np.random.Generator] = None,
                     seed: int = 42) -> Tuple[np.ndarray, np.ndarray]:
    """
    Partition row indices into train and test sets.

    Samples floor(n_obs * train_fraction) indices without replacement as the
    training set; every remaining index goes to the test set.

    Args:
        n_obs: Number of rows to partition
        train_fraction: Share of rows assigned to training, in (0, 1)
        rng: Generator to draw from (takes precedence over ``seed``)
        seed: Seed used when no generator is supplied

    Returns:
        Tuple of (train_idx, test_idx), both sorted ascending.
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")
    if n_obs < 0:
        raise ValueError(f"n_obs must be non-negative, got {n_obs}")

    rng = make_rng(seed) if rng is None else rng
    n_train = int(np.floor(n_obs * train_fraction))

    train_idx = np.sort(rng.choice(n_obs, size=n_train, replace=False))
    mask = np.ones(n_obs, dtype=bool)
    mask[train_idx] = False
    test_idx = np.flatnonzero(mask)

    return train_idx, test_idx


def split_frame(frame: pd.DataFrame, train_fraction: float = 0.7,
                seed: int = 42) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split a table into (train, test) frames, keeping original row labels."""
    train_idx, test_idx = train_test_split(len(frame), train_fraction, seed=seed)
    logger.info(
        f"Split {len(frame)} rows into {len(train_idx)} train / {len(test_idx)} test"
    )
    return frame.iloc[train_idx], frame.iloc[test_idx]


# =============================================================================
# CLASS SUMMARIES AND COMPARISON
# =============================================================================

def class_proportions(responsibilities: np.ndarray) -> np.ndarray:
    """Population share of each class from posterior-mean membership."""
    return responsibilities.mean(axis=0)


def cluster_sizes(labels: np.ndarray, n_clusters: int) -> np.ndarray:
    """Member count per cluster, including empty clusters."""
    return np.bincount(labels, minlength=n_clusters)


def compare_partitions(lca_labels: np.ndarray, kmodes_labels: np.ndarray) -> Dict:
    """
    Compare the LCA hard assignment with the k-modes partition.

    Labels from two unsupervised methods are arbitrary, so agreement is
    measured with the adjusted Rand index (1 = identical partitions up to
    relabelling, ~0 = chance agreement).

    Returns:
        Dictionary with:
        - 'ari': adjusted Rand index
        - 'contingency': DataFrame of row counts, LCA classes x k-modes clusters
          (both 1-indexed for display)
    """
    lca_labels = np.asarray(lca_labels)
    kmodes_labels = np.asarray(kmodes_labels)
    if lca_labels.shape != kmodes_labels.shape:
        raise ValueError(
            f"Label arrays differ in length: {lca_labels.shape[0]} vs {kmodes_labels.shape[0]}"
        )

    contingency = pd.crosstab(
        pd.Series(lca_labels + 1, name='lca_class'),
        pd.Series(kmodes_labels + 1, name='kmodes_cluster'),
    )
    return {
        'ari': float(adjusted_rand_score(lca_labels, kmodes_labels)),
        'contingency': contingency,
    }


# =============================================================================
# EXPORT
# =============================================================================

def export_tables(tables: Dict[str, pd.DataFrame], output_dir: Union[str, Path],
                  index: bool = False) -> List[Path]:
    """
    Write each named table to ``<output_dir>/<name>.csv``.

    Returns:
        Paths of the files written, in the order given.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name, table in tables.items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=index)
        written.append(path)
        logger.info(f"Saved: {path.name}")
    return written
