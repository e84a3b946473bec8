"""
K-modes Clustering for Categorical Survey Responses.

K-modes is the categorical analogue of k-means: each cluster is summarised
by a centroid holding the modal (most frequent) level of every question, and
respondents are assigned to the centroid they agree with on the most
questions.

It serves as a sanity-check baseline for the latent class model. Its fit
score is the share of (respondent, question) pairs that match the assigned
centroid, a descriptive agreement fraction in [0, 1] that is only used to
pick the best restart. It is not on the same scale as the LCA likelihood.

Ties are broken uniformly at random both when choosing a modal level and
when choosing between equally matching centroids. Those draws come from the
same seeded generator as the initial assignment, so a run is reproducible
end to end.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..exceptions import ConvergenceError
from ..utils import cluster_sizes, make_rng


logger = logging.getLogger(__name__)


# =============================================================================
# CORE STEPS
# =============================================================================

def _random_argmax(scores: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Argmax over the last axis, choosing uniformly among tied maxima."""
    is_max = scores == scores.max(axis=-1, keepdims=True)
    noise = rng.random(scores.shape)
    return np.where(is_max, noise, -1.0).argmax(axis=-1)


def compute_modes(data: np.ndarray, labels: np.ndarray, n_clusters: int,
                  n_categories: int, rng: np.random.Generator,
                  previous: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Modal level of every question within every cluster.

    An empty cluster keeps its previous centroid. On the first pass, where
    there is no previous centroid, it is seeded from a randomly chosen
    respondent.

    Args:
        data: (n_obs, n_items) integer codes 1..L
        labels: (n_obs,) cluster index per respondent
        n_clusters: Number of clusters
        n_categories: Size of the response alphabet
        rng: Generator used for tie-breaks and empty-cluster seeding
        previous: (n_clusters, n_items) centroids from the last iteration

    Returns:
        (n_clusters, n_items) centroid codes
    """
    n_obs, n_items = data.shape
    levels = np.arange(1, n_categories + 1)

    # counts[c, j, l] = members of cluster c answering level l+1 on question j
    onehot_labels = (labels[:, np.newaxis] == np.arange(n_clusters)).astype(float)
    onehot_data = (data[:, :, np.newaxis] == levels).astype(float)
    counts = np.einsum('ic,ijl->cjl', onehot_labels, onehot_data)

    centroids = levels[_random_argmax(counts, rng)]

    empty = np.flatnonzero(onehot_labels.sum(axis=0) == 0)
    for c in empty:
        if previous is not None:
            centroids[c] = previous[c]
        else:
            centroids[c] = data[rng.integers(n_obs)]

    return centroids


def count_matches(data: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """(n_obs, n_clusters) number of questions on which each respondent matches each centroid."""
    return (data[:, np.newaxis, :] == centroids[np.newaxis, :, :]).sum(axis=2)


def assign_clusters(data: np.ndarray, centroids: np.ndarray,
                    rng: np.random.Generator) -> np.ndarray:
    """Assign each respondent to its best-matching centroid, ties broken at random."""
    return _random_argmax(count_matches(data, centroids), rng)


def kmodes_score(data: np.ndarray, labels: np.ndarray, centroids: np.ndarray) -> float:
    """Share of (respondent, question) pairs matching the assigned centroid."""
    matched = (data == centroids[labels]).sum()
    return float(matched / data.size)


# =============================================================================
# MAIN FITTING FUNCTION
# =============================================================================

def _run_kmodes(data: np.ndarray, n_clusters: int, n_categories: int,
                max_iter: int, rng: np.random.Generator) -> Dict:
    """Run k-modes from one random initial assignment."""
    labels = rng.integers(n_clusters, size=data.shape[0])
    centroids = None
    prev_matched = -1
    converged = False
    n_iter = max_iter

    for iteration in range(max_iter):
        centroids = compute_modes(data, labels, n_clusters, n_categories, rng, centroids)
        labels = assign_clusters(data, centroids, rng)

        # Matched count never decreases; a plateau means only tied choices
        # are still moving, which cannot change the score.
        matched = int((data == centroids[labels]).sum())
        if matched == prev_matched:
            converged = True
            n_iter = iteration + 1
            break
        prev_matched = matched

    return {
        'centroids': centroids,
        'labels': labels,
        'score': kmodes_score(data, labels, centroids),
        'n_iter': n_iter,
        'converged': converged,
    }


def fit_kmodes(data: np.ndarray, n_clusters: int, max_iter: int = 100,
               n_init: int = 10, rng: Optional[np.random.Generator] = None,
               seed: int = 42, n_categories: Optional[int] = None) -> Dict:
    """
    Fit k-modes clustering with several random restarts.

    Each restart assigns respondents to clusters at random and then
    alternates centroid and assignment updates until the number of matched
    responses stops increasing. Restarts still improving after ``max_iter``
    iterations are excluded; the stable restart with the highest score is
    returned.

    Args:
        data: (n_respondents, n_questions) integer codes 1..L
        n_clusters: Number of clusters
        max_iter: Maximum iterations per restart. Stability is judged against
                  the previous iteration, so at least 2.
        n_init: Number of random restarts
        rng: Random generator; built from ``seed`` when omitted
        seed: Seed used only when ``rng`` is None
        n_categories: Size of the response alphabet (inferred when omitted)

    Returns:
        Dictionary with:
        - centroids: (n_clusters, n_questions) modal codes
        - labels: (n_respondents,) cluster index (0-indexed)
        - score: Matched share of responses in [0, 1]
        - cluster_sizes: (n_clusters,) member counts
        - n_iter: Iterations used by the kept restart
        - converged: Always True for a returned result
        - restart_scores, restart_converged: Per-restart outcomes
        - n_clusters: For reference

    Raises:
        ValueError: Invalid data or cluster count
        ConvergenceError: No restart stabilised within max_iter
    """
    data = np.asarray(data).astype(int)
    if data.ndim != 2:
        raise ValueError(f"Expected a 2-D response matrix, got shape {data.shape}")
    n_obs = data.shape[0]
    if not 1 <= n_clusters <= n_obs:
        raise ValueError(f"n_clusters must be in 1..{n_obs}, got {n_clusters}")
    if n_init < 1:
        raise ValueError(f"n_init must be at least 1, got {n_init}")
    if max_iter < 2:
        raise ValueError(f"max_iter must be at least 2, got {max_iter}")
    if n_categories is None:
        n_categories = int(data.max())
    if data.min() < 1 or data.max() > n_categories:
        raise ValueError(f"Response codes must lie in 1..{n_categories}")
    rng = make_rng(seed) if rng is None else rng

    best_result = None
    restart_scores = []
    restart_converged = []

    for init in range(n_init):
        run = _run_kmodes(data, n_clusters, n_categories, max_iter, rng)
        restart_scores.append(run['score'])
        restart_converged.append(run['converged'])

        if not run['converged']:
            logger.debug(
                f"K-modes K={n_clusters} restart {init + 1}/{n_init} still changing "
                f"after {max_iter} iterations"
            )
            continue

        if best_result is None or run['score'] > best_result['score']:
            best_result = run

    if best_result is None:
        raise ConvergenceError(
            f"K-modes with K={n_clusters}: none of {n_init} restarts stabilised "
            f"within {max_iter} iterations",
            n_restarts=n_init,
        )

    best_result['cluster_sizes'] = cluster_sizes(best_result['labels'], n_clusters)
    best_result['restart_scores'] = np.array(restart_scores)
    best_result['restart_converged'] = np.array(restart_converged)
    best_result['n_clusters'] = n_clusters

    n_empty = int((best_result['cluster_sizes'] == 0).sum())
    if n_empty:
        logger.warning(f"K-modes K={n_clusters}: best restart left {n_empty} cluster(s) empty")
    logger.debug(f"K-modes K={n_clusters}: score={best_result['score']:.4f}")

    return best_result


def run_kmodes_sweep(data: np.ndarray, cluster_range=range(2, 7), max_iter: int = 100,
                     n_init: int = 10, seed: int = 42) -> pd.DataFrame:
    """
    Fit k-modes for each cluster count and tabulate the fit score.

    Each cluster count gets its own generator built from (seed, K).
    A cluster count that fails to stabilise is recorded with a NaN score.

    Returns:
        DataFrame with columns n_clusters, score, mismatch (1 - score), status.
    """
    rows = []
    for k in cluster_range:
        try:
            result = fit_kmodes(data, k, max_iter=max_iter, n_init=n_init,
                                rng=make_rng((seed, k)))
        except (ValueError, ConvergenceError) as e:
            logger.warning(f"K-modes K={k} failed: {e}")
            rows.append({'n_clusters': k, 'score': np.nan, 'mismatch': np.nan,
                         'status': 'failed'})
            continue
        rows.append({'n_clusters': k, 'score': result['score'],
                     'mismatch': 1.0 - result['score'], 'status': 'ok'})
    return pd.DataFrame(rows)


def centroids_frame(result: Dict, variable_names=None, level_labels=None) -> pd.DataFrame:
    """Centroids as a table: one row per cluster (1-indexed) plus its size."""
    centroids = result['centroids']
    n_clusters, n_items = centroids.shape
    if variable_names is None:
        variable_names = [f"V{j+1}" for j in range(n_items)]

    frame = pd.DataFrame(centroids, columns=list(variable_names))
    if level_labels is not None:
        frame = frame.apply(lambda col: col.map(lambda code: level_labels[code - 1]))
    frame.insert(0, 'size', result['cluster_sizes'])
    frame.insert(0, 'cluster', np.arange(1, n_clusters + 1))
    return frame
