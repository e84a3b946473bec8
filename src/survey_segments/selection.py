"""
Class-count selection for the latent class model.

For every candidate K the model is fit on the training partition, then on
the test partition starting from the training level probabilities. The
resulting AIC/BIC curves are reduced to a single K with an elbow rule, and a
K whose class proportions differ too much between partitions is vetoed as
unstable.

Elbow rule: the curves are rescaled to the share of the total improvement
over the candidate range. The chosen K is the smallest one after which the
next step recovers less than ``threshold`` of that total. A curvature
rule (largest second difference) is available as ``elbow_by_curvature``.
"""

import logging
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import ConvergenceError
from .models.lca import fit_lca
from .utils import make_rng


logger = logging.getLogger(__name__)

SWEEP_COLUMNS = [
    'n_classes', 'aic_train', 'aic_test', 'bic_train', 'bic_test',
    'loglik_train', 'loglik_test', 'converged', 'degenerate',
    'proportion_gap', 'status', 'error',
]


# =============================================================================
# STABILITY
# =============================================================================

def class_proportion_gap(train_fit: Dict, test_fit: Dict) -> float:
    """Largest absolute difference in class share between two same-K fits."""
    return float(np.max(np.abs(
        np.asarray(train_fit['class_proportions']) - np.asarray(test_fit['class_proportions'])
    )))


# =============================================================================
# CLASS-COUNT SWEEP
# =============================================================================

def run_class_sweep(train: np.ndarray, test: np.ndarray,
                    class_range: Sequence[int] = range(2, 7),
                    max_iter: int = 1000, tol: float = 1e-6, n_init: int = 10,
                    test_n_init: int = 1, seed: int = 42,
                    n_categories: Optional[int] = None) -> Dict:
    """
    Fit LCA on both partitions for each candidate class count.

    Each K gets its own generator built from (seed, K), so a sweep is
    reproducible and one failing K never shifts the draws of another. A K
    whose fit raises is logged, recorded with ``status='failed'`` and skipped.

    Args:
        train: (n_train, n_questions) integer codes
        test: (n_test, n_questions) integer codes
        class_range: Candidate class counts
        max_iter, tol, n_init: EM settings for the training fits
        test_n_init: Restarts for the seeded test fits; the first always
                     starts from the training solution
        seed: Base seed
        n_categories: Response alphabet size (inferred from both partitions
                      when omitted)

    Returns:
        Dictionary with:
        - 'table': DataFrame with SWEEP_COLUMNS, one row per K
        - 'fits': {K: {'train': fit, 'test': fit}} for successful K
    """
    train = np.asarray(train)
    test = np.asarray(test)
    if n_categories is None:
        n_categories = int(max(train.max(), test.max()))

    rows = []
    fits = {}

    for k in class_range:
        rng = make_rng((seed, k))
        try:
            train_fit = fit_lca(train, k, max_iter=max_iter, tol=tol, n_init=n_init,
                                rng=rng, n_categories=n_categories)
            test_fit = fit_lca(test, k, max_iter=max_iter, tol=tol, n_init=test_n_init,
                               rng=rng, n_categories=n_categories,
                               initial_item_probs=train_fit['item_probs'])
        except (ValueError, ConvergenceError) as e:
            logger.warning(f"Class count K={k} failed: {e}")
            rows.append({
                'n_classes': k, 'aic_train': np.nan, 'aic_test': np.nan,
                'bic_train': np.nan, 'bic_test': np.nan,
                'loglik_train': np.nan, 'loglik_test': np.nan,
                'converged': False, 'degenerate': False,
                'proportion_gap': np.nan, 'status': 'failed', 'error': str(e),
            })
            continue

        gap = class_proportion_gap(train_fit, test_fit)
        rows.append({
            'n_classes': k,
            'aic_train': train_fit['aic'],
            'aic_test': test_fit['aic'],
            'bic_train': train_fit['bic'],
            'bic_test': test_fit['bic'],
            'loglik_train': train_fit['log_likelihood'],
            'loglik_test': test_fit['log_likelihood'],
            'converged': True,
            'degenerate': train_fit['degenerate'] or test_fit['degenerate'],
            'proportion_gap': gap,
            'status': 'ok',
            'error': None,
        })
        fits[k] = {'train': train_fit, 'test': test_fit}

        logger.info(
            f"K={k}: AIC train/test={train_fit['aic']:.1f}/{test_fit['aic']:.1f}, "
            f"BIC train/test={train_fit['bic']:.1f}/{test_fit['bic']:.1f}, "
            f"proportion gap={gap:.3f}"
        )

    return {'table': pd.DataFrame(rows, columns=SWEEP_COLUMNS), 'fits': fits}


# =============================================================================
# ELBOW DETECTION
# =============================================================================

def elbow_by_improvement(ks: Sequence[int], values: Sequence[float],
                         threshold: float = 0.10) -> int:
    """
    Smallest K after which the criterion stops improving materially.

    Each step's improvement (decrease, since lower is better) is expressed as
    a share of the total improvement from the first K to the best K. The
    elbow is the first K whose next step recovers less than ``threshold``
    of that total. If the curve never improves, the first K is returned.
    """
    ks = list(ks)
    values = np.asarray(values, dtype=float)
    if len(ks) == 0 or len(ks) != len(values):
        raise ValueError("ks and values must be non-empty and of equal length")

    total = values[0] - values.min()
    if total <= 0:
        return ks[0]

    gains = (values[:-1] - values[1:]) / total
    for k, gain in zip(ks[:-1], gains):
        if gain < threshold:
            return k
    return ks[-1]


def elbow_by_curvature(ks: Sequence[int], values: Sequence[float]) -> int:
    """
    K with the sharpest bend in the criterion curve.

    Uses the largest second difference v[i-1] - 2 v[i] + v[i+1]. With fewer
    than three points there is no bend; the K with the lowest value is
    returned instead.
    """
    ks = list(ks)
    values = np.asarray(values, dtype=float)
    if len(ks) == 0 or len(ks) != len(values):
        raise ValueError("ks and values must be non-empty and of equal length")
    if len(ks) < 3:
        return ks[int(np.argmin(values))]

    second_diff = values[:-2] - 2 * values[1:-1] + values[2:]
    return ks[int(np.argmax(second_diff)) + 1]


# =============================================================================
# SELECTION
# =============================================================================

def select_n_classes(sweep: Dict, threshold: float = 0.10,
                     max_proportion_gap: float = 0.10) -> Dict:
    """
    Choose the number of latent classes from a sweep.

    The elbow is taken on the training AIC and BIC curves and the smaller of
    the two is the first candidate. Remaining successful K follow in order of
    training BIC. A candidate is vetoed when its train/test class-proportion
    gap exceeds ``max_proportion_gap`` or when a class collapsed in either
    fit; the first candidate not vetoed is chosen.

    Returns:
        Dictionary with:
        - 'n_classes': chosen K, or None when every candidate failed or was vetoed
        - 'elbow_aic', 'elbow_bic': elbow K per criterion (None without fits)
        - 'vetoed': {K: reason}
        - 'rationale': human-readable summary
    """
    table = sweep['table']
    ok = table[table['status'] == 'ok'].sort_values('n_classes')

    if ok.empty:
        logger.warning("No class count produced a usable fit")
        return {
            'n_classes': None, 'elbow_aic': None, 'elbow_bic': None, 'vetoed': {},
            'rationale': "No class count produced a usable fit.",
        }

    ks = ok['n_classes'].astype(int).tolist()
    elbow_aic = elbow_by_improvement(ks, ok['aic_train'], threshold)
    elbow_bic = elbow_by_improvement(ks, ok['bic_train'], threshold)
    elbow = min(elbow_aic, elbow_bic)

    by_bic = ok.sort_values('bic_train')['n_classes'].astype(int).tolist()
    candidates = [elbow] + [k for k in by_bic if k != elbow]

    vetoed = {}
    chosen = None
    for k in candidates:
        row = ok[ok['n_classes'] == k].iloc[0]
        if row['degenerate']:
            vetoed[k] = "a class collapsed to fewer than one expected respondent"
        elif row['proportion_gap'] > max_proportion_gap:
            vetoed[k] = (
                f"train/test class proportions differ by {row['proportion_gap']:.3f} "
                f"(> {max_proportion_gap:.3f})"
            )
        else:
            chosen = k
            break
        logger.warning(f"K={k} vetoed: {vetoed[k]}")

    parts = [f"AIC elbow at K={elbow_aic}, BIC elbow at K={elbow_bic}."]
    failed = table.loc[table['status'] != 'ok', 'n_classes'].astype(int).tolist()
    if failed:
        parts.append(f"Excluded failed fits: K={failed}.")
    for k, reason in vetoed.items():
        parts.append(f"K={k} vetoed: {reason}.")
    if chosen is None:
        parts.append("Every candidate was vetoed; no stable class count.")
    else:
        parts.append(f"Selected K={chosen}.")

    return {
        'n_classes': chosen,
        'elbow_aic': elbow_aic,
        'elbow_bic': elbow_bic,
        'vetoed': vetoed,
        'rationale': " ".join(parts),
    }


def sweep_criteria(sweep: Dict) -> pd.DataFrame:
    """The per-K information-criterion table (class count and AIC/BIC for both partitions)."""
    return sweep['table'][['n_classes', 'aic_train', 'aic_test', 'bic_train', 'bic_test']]


def sweep_assignments(sweep: Dict, n_classes: int) -> Dict[str, np.ndarray]:
    """Hard class assignments on both partitions for one K of a sweep."""
    if n_classes not in sweep['fits']:
        raise KeyError(f"No successful fit for K={n_classes} in this sweep")
    fit = sweep['fits'][n_classes]
    return {'train': fit['train']['assignments'], 'test': fit['test']['assignments']}
