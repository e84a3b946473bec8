"""
Latent Class Analysis (LCA) for Categorical Survey Responses.

LCA identifies discrete "latent classes" or segments of respondents based on
their answer patterns. Each respondent is assumed to belong to one of K
classes, and within a class the answers to different questions are
independent, each following a class-specific categorical distribution over
the question's response levels.

The model is fit using the Expectation-Maximization (EM) algorithm:
- E-step: Compute posterior probability of class membership for each respondent
- M-step: Update class priors and per-question level probabilities given
  the posteriors

Key outputs:
- class_probs: Prior probability of each class (segment sizes)
- item_probs: P(level | class) for each class, question and level (class profiles)
- responsibilities: Posterior class membership probabilities
- assignments: Hard assignment (posterior mode) per respondent

Data are (n_respondents, n_questions) integer arrays with codes 1..L.
All randomness comes from an explicit ``numpy.random.Generator`` so a fit is
reproducible from its generator state alone.
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from ..exceptions import ConvergenceError
from ..utils import class_proportions, make_rng


logger = logging.getLogger(__name__)

# A class expected to hold fewer respondents than this is treated as collapsed
MIN_CLASS_SIZE = 1.0

# Floor applied to level probabilities before renormalising
PROB_FLOOR = 1e-10


# =============================================================================
# DATA PREPARATION
# =============================================================================

def validate_lca_data(data: np.ndarray, n_classes: int,
                      n_categories: Optional[int] = None) -> Tuple[np.ndarray, int]:
    """
    Check that a response matrix can be fit with ``n_classes`` classes.

    Args:
        data: (n_respondents, n_questions) integer codes starting at 1
        n_classes: Requested number of latent classes
        n_categories: Size of the response alphabet. Inferred from the
                      largest code present when omitted.

    Returns:
        Tuple of (data as an int array, n_categories)
    """
    data = np.asarray(data)
    if data.ndim != 2:
        raise ValueError(f"Expected a 2-D response matrix, got shape {data.shape}")
    if not np.issubdtype(data.dtype, np.integer):
        if not np.all(np.isfinite(data)) or not np.all(data == np.round(data)):
            raise ValueError("Response codes must be finite integers")
    data = data.astype(int)

    n_obs, n_items = data.shape
    if n_classes < 1:
        raise ValueError(f"n_classes must be at least 1, got {n_classes}")
    if n_classes >= n_obs:
        raise ValueError(
            f"n_classes ({n_classes}) must be smaller than the number of observations ({n_obs})"
        )

    if n_categories is None:
        n_categories = int(data.max())
    if data.min() < 1 or data.max() > n_categories:
        raise ValueError(
            f"Response codes must lie in 1..{n_categories}, "
            f"found range {data.min()}..{data.max()}"
        )

    constant = [j for j in range(n_items) if np.unique(data[:, j]).size < 2]
    if constant:
        raise ValueError(
            f"Variable(s) at column position(s) {constant} have fewer than 2 observed levels"
        )

    return data, n_categories


def encode_indicators(data: np.ndarray, n_categories: int) -> np.ndarray:
    """
    One-hot encode response codes.

    Returns:
        (n_respondents, n_questions, n_categories) float array with a single
        1 per (respondent, question) at the observed level.
    """
    levels = np.arange(1, n_categories + 1)
    return (data[:, :, np.newaxis] == levels).astype(float)


def _normalize_levels(item_probs: np.ndarray) -> np.ndarray:
    """Floor and renormalise so each (class, question) vector is a distribution."""
    item_probs = np.clip(item_probs, PROB_FLOOR, None)
    return item_probs / item_probs.sum(axis=-1, keepdims=True)


# =============================================================================
# INITIALIZATION
# =============================================================================

def initialize_lca_parameters(n_classes: int, n_items: int, n_categories: int,
                              rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    """
    Initialize LCA parameters randomly.

    Draws class priors and every (class, question) level distribution from a
    flat Dirichlet, which always yields valid probability vectors.

    Returns:
        Tuple of (class_probs, item_probs) where:
        - class_probs: (n_classes,) array of class prior probabilities
        - item_probs: (n_classes, n_items, n_categories) level probabilities
    """
    class_probs = rng.dirichlet(np.ones(n_classes))
    item_probs = rng.dirichlet(np.ones(n_categories), size=(n_classes, n_items))
    return class_probs, item_probs


def _reseed_classes(class_probs: np.ndarray, item_probs: np.ndarray,
                    collapsed: np.ndarray,
                    rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    """Give collapsed classes fresh level tables and an even share of the prior."""
    n_classes, n_items, n_categories = item_probs.shape
    item_probs = item_probs.copy()
    item_probs[collapsed] = rng.dirichlet(
        np.ones(n_categories), size=(collapsed.size, n_items)
    )
    class_probs = class_probs.copy()
    class_probs[collapsed] = 1.0 / n_classes
    return class_probs / class_probs.sum(), item_probs


def find_collapsed_classes(class_probs: np.ndarray, n_obs: int,
                           min_class_size: float = MIN_CLASS_SIZE) -> np.ndarray:
    """Indices of classes whose expected membership (prior x n_obs) is below ``min_class_size``."""
    return np.flatnonzero(np.asarray(class_probs) * n_obs < min_class_size)


# =============================================================================
# EM ALGORITHM STEPS
# =============================================================================

def lca_e_step(indicators: np.ndarray, class_probs: np.ndarray,
               item_probs: np.ndarray,
               return_log_likelihood: bool = False):
    """
    E-step: Compute posterior probability of class membership for each observation.

    Uses Bayes' theorem to compute P(class | answers) for each respondent.
    Calculations are done in log-space for numerical stability.

    Args:
        indicators: (n_obs, n_items, n_categories) one-hot responses
        class_probs: (n_classes,) prior class probabilities
        item_probs: (n_classes, n_items, n_categories) P(level | class)
        return_log_likelihood: If True, also return total log-likelihood

    Returns:
        responsibilities: (n_obs, n_classes) posterior probabilities
        If return_log_likelihood=True, returns (responsibilities, log_likelihood)
    """
    log_item_probs = np.log(item_probs + 1e-10)       # (n_classes, n_items, n_categories)
    log_class_probs = np.log(class_probs + 1e-10)     # (n_classes,)

    # sum_j log P(x_ij | c): only the observed level of each question contributes
    log_lik = np.einsum('ijl,cjl->ic', indicators, log_item_probs)

    # log P(c) + log P(x_i | c) = log P(c, x_i)
    log_joint = log_class_probs + log_lik
    log_marginal = logsumexp(log_joint, axis=1, keepdims=True)

    responsibilities = np.exp(log_joint - log_marginal)

    if return_log_likelihood:
        return responsibilities, float(log_marginal.sum())
    return responsibilities


def lca_m_step(indicators: np.ndarray,
               responsibilities: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    M-step: Update parameters given current responsibilities.

    Class priors are the average responsibility per class; level
    probabilities are posterior-weighted level frequencies within each class.

    Returns:
        Tuple of (class_probs, item_probs) with updated parameters
    """
    n_obs = indicators.shape[0]

    class_counts = responsibilities.sum(axis=0)
    class_probs = class_counts / n_obs

    weighted = np.einsum('ic,ijl->cjl', responsibilities, indicators)
    item_probs = weighted / (class_counts[:, np.newaxis, np.newaxis] + 1e-10)

    return class_probs, _normalize_levels(item_probs)


def compute_classification_entropy(responsibilities: np.ndarray) -> float:
    """
    Relative entropy of the posterior classification.

    1 means every respondent is assigned with certainty; values near 0 mean
    posteriors are close to uniform. Defined as 1 for a single class.
    """
    n_obs, n_classes = responsibilities.shape
    if n_classes == 1:
        return 1.0
    log_post = np.log(np.clip(responsibilities, 1e-15, 1.0))
    h = -np.sum(responsibilities * log_post) / n_obs
    return float(1.0 - h / np.log(n_classes))


def count_lca_parameters(n_classes: int, n_items: int, n_categories: int) -> int:
    """(K-1) class priors + K*J*(L-1) free level probabilities."""
    return (n_classes - 1) + n_classes * n_items * (n_categories - 1)


# =============================================================================
# MAIN FITTING FUNCTION
# =============================================================================

def _run_em(indicators: np.ndarray, class_probs: np.ndarray, item_probs: np.ndarray,
            max_iter: int, tol: float, rng: np.random.Generator,
            max_reseeds: int, min_class_size: float = MIN_CLASS_SIZE) -> Dict:
    """Run EM from one starting point."""
    n_obs = indicators.shape[0]
    prev_ll = -np.inf
    converged = False
    n_iter = max_iter
    n_reseeds = 0

    for iteration in range(max_iter):
        responsibilities, ll = lca_e_step(
            indicators, class_probs, item_probs, return_log_likelihood=True
        )
        class_probs, item_probs = lca_m_step(indicators, responsibilities)

        collapsed = find_collapsed_classes(class_probs, n_obs, min_class_size)
        if collapsed.size and n_reseeds < max_reseeds:
            class_probs, item_probs = _reseed_classes(class_probs, item_probs, collapsed, rng)
            n_reseeds += 1
            # The reseed moves the likelihood, so restart the convergence check
            prev_ll = -np.inf
            continue

        if abs(ll - prev_ll) < tol:
            converged = True
            n_iter = iteration + 1
            break

        prev_ll = ll

    # Posteriors consistent with the returned parameters
    responsibilities, ll = lca_e_step(
        indicators, class_probs, item_probs, return_log_likelihood=True
    )

    return {
        'class_probs': class_probs,
        'item_probs': item_probs,
        'responsibilities': responsibilities,
        'log_likelihood': ll,
        'n_iter': n_iter,
        'converged': converged,
        'n_reseeds': n_reseeds,
    }


def fit_lca(data: np.ndarray, n_classes: int, max_iter: int = 1000,
            tol: float = 1e-6, n_init: int = 10,
            rng: Optional[np.random.Generator] = None, seed: int = 42,
            n_categories: Optional[int] = None,
            initial_item_probs: Optional[np.ndarray] = None,
            max_reseeds: int = 5, min_class_size: float = MIN_CLASS_SIZE) -> Dict:
    """
    Fit Latent Class Analysis model using the EM algorithm.

    Runs multiple random initializations and returns the converged solution
    with highest log-likelihood to avoid local optima. Restarts draw from
    ``rng`` in sequence, so the first R restarts of a longer run match an
    R-restart run exactly.

    When ``initial_item_probs`` is given (typically the level probabilities
    of a model fit on another partition), the first restart starts from
    those tables with uniform class priors instead of a random draw. Priors,
    posteriors and level probabilities are still re-estimated on ``data``.

    A class expected to hold fewer than ``min_class_size`` respondents
    (prior x n_respondents) has its level tables re-seeded (up to
    ``max_reseeds`` times per restart). A class still that small after the
    reseed budget is spent marks the result as degenerate.

    Args:
        data: (n_respondents, n_questions) integer codes 1..L
        n_classes: Number of latent classes to fit
        max_iter: Maximum EM iterations per initialization. Convergence is
                  judged against the previous iteration, so at least 2.
        tol: Convergence tolerance on log-likelihood improvement
        n_init: Number of initializations to try
        rng: Random generator; built from ``seed`` when omitted
        seed: Seed used only when ``rng`` is None
        n_categories: Size of the response alphabet (inferred when omitted)
        initial_item_probs: Optional (n_classes, n_questions, n_categories)
                            starting level probabilities
        max_reseeds: Reseed budget per restart for collapsed classes
        min_class_size: Expected respondents below which a class counts as
                        collapsed

    Returns:
        Dictionary with:
        - class_probs: (n_classes,) prior class probabilities
        - item_probs: (n_classes, n_questions, n_categories) level probabilities
        - responsibilities: (n_respondents, n_classes) posterior memberships
        - assignments: (n_respondents,) posterior-mode class (0-indexed)
        - class_proportions: (n_classes,) posterior-mean class shares
        - log_likelihood: Final log-likelihood
        - bic, aic: Information criteria
        - n_params: Number of free parameters
        - n_iter: Number of iterations to convergence
        - converged, degenerate, n_reseeds: Fit diagnostics
        - entropy: Relative classification entropy
        - restart_log_likelihoods: Final log-likelihood of every restart,
          including those that hit max_iter. Only entries flagged in
          restart_converged were eligible, so the returned log_likelihood is
          at least the best of those, not necessarily of all entries.
        - restart_converged: (n_init,) bool, whether each restart converged
        - n_classes, n_categories: For reference

    Raises:
        ValueError: Invalid data or class count (see validate_lca_data)
        ConvergenceError: No restart converged within max_iter
    """
    data, n_categories = validate_lca_data(data, n_classes, n_categories)
    if n_init < 1:
        raise ValueError(f"n_init must be at least 1, got {n_init}")
    if max_iter < 2:
        raise ValueError(f"max_iter must be at least 2, got {max_iter}")
    rng = make_rng(seed) if rng is None else rng

    n_obs, n_items = data.shape
    indicators = encode_indicators(data, n_categories)

    if initial_item_probs is not None:
        initial_item_probs = np.asarray(initial_item_probs, dtype=float)
        expected = (n_classes, n_items, n_categories)
        if initial_item_probs.shape != expected:
            raise ValueError(
                f"initial_item_probs has shape {initial_item_probs.shape}, expected {expected}"
            )

    # Track best solution across initializations
    best_result = None
    restart_lls = []
    restart_converged = []

    for init in range(n_init):
        if init == 0 and initial_item_probs is not None:
            class_probs = np.full(n_classes, 1.0 / n_classes)
            item_probs = _normalize_levels(initial_item_probs.copy())
        else:
            class_probs, item_probs = initialize_lca_parameters(
                n_classes, n_items, n_categories, rng
            )

        run = _run_em(indicators, class_probs, item_probs, max_iter, tol, rng,
                      max_reseeds, min_class_size)
        restart_lls.append(run['log_likelihood'])
        restart_converged.append(run['converged'])

        if not run['converged']:
            logger.debug(
                f"LCA K={n_classes} restart {init + 1}/{n_init} did not converge "
                f"in {max_iter} iterations"
            )
            continue

        if best_result is None or run['log_likelihood'] > best_result['log_likelihood']:
            best_result = run

    if best_result is None:
        raise ConvergenceError(
            f"LCA with K={n_classes}: none of {n_init} restarts converged "
            f"within {max_iter} iterations (tol={tol})",
            n_restarts=n_init,
        )

    # Information criteria for model selection
    n_params = count_lca_parameters(n_classes, n_items, n_categories)
    ll = best_result['log_likelihood']
    best_result['bic'] = -2 * ll + n_params * np.log(n_obs)
    best_result['aic'] = -2 * ll + 2 * n_params
    best_result['n_params'] = n_params

    responsibilities = best_result['responsibilities']
    best_result['assignments'] = responsibilities.argmax(axis=1)
    best_result['class_proportions'] = class_proportions(responsibilities)
    best_result['entropy'] = compute_classification_entropy(responsibilities)
    best_result['degenerate'] = bool(
        find_collapsed_classes(best_result['class_probs'], n_obs, min_class_size).size
    )
    best_result['restart_log_likelihoods'] = np.array(restart_lls)
    best_result['restart_converged'] = np.array(restart_converged)
    best_result['n_classes'] = n_classes
    best_result['n_categories'] = n_categories

    if best_result['degenerate']:
        logger.warning(
            f"LCA K={n_classes}: at least one class holds fewer than {min_class_size:g} "
            f"expected respondent(s) after {best_result['n_reseeds']} reseed(s)"
        )
    logger.debug(
        f"LCA K={n_classes}: logL={ll:.2f}, AIC={best_result['aic']:.1f}, "
        f"BIC={best_result['bic']:.1f}, "
        f"{int(np.sum(restart_converged))}/{n_init} restarts converged"
    )

    return best_result


# =============================================================================
# POST-PROCESSING UTILITIES
# =============================================================================

def predict_lca_proba(data: np.ndarray, result: Dict) -> np.ndarray:
    """
    Posterior class membership of new respondents under a fitted model.

    Parameters are held fixed; nothing is re-estimated.
    """
    data = np.asarray(data).astype(int)
    n_categories = result['n_categories']
    if data.ndim != 2 or data.shape[1] != result['item_probs'].shape[1]:
        raise ValueError(
            f"Expected {result['item_probs'].shape[1]} response columns, got shape {data.shape}"
        )
    if data.min() < 1 or data.max() > n_categories:
        raise ValueError(f"Response codes must lie in 1..{n_categories}")

    indicators = encode_indicators(data, n_categories)
    return lca_e_step(indicators, result['class_probs'], result['item_probs'])


def predict_lca(data: np.ndarray, result: Dict) -> np.ndarray:
    """Posterior-mode class (0-indexed) for each new respondent."""
    return predict_lca_proba(data, result).argmax(axis=1)


def lca_profiles_frame(result: Dict, variable_names: Optional[Sequence[str]] = None,
                       level_labels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Per-class, per-question level probabilities as a long table.

    Args:
        result: Output of fit_lca
        variable_names: Question names (defaults to "V1".."VJ")
        level_labels: Labels for levels 1..L (defaults to the integer codes)

    Returns:
        DataFrame with columns class (1-indexed), class_share, variable,
        level, probability.
    """
    item_probs = result['item_probs']
    n_classes, n_items, n_categories = item_probs.shape

    if variable_names is None:
        variable_names = [f"V{j+1}" for j in range(n_items)]
    if level_labels is None:
        level_labels = list(range(1, n_categories + 1))
    if len(variable_names) != n_items or len(level_labels) != n_categories:
        raise ValueError("variable_names/level_labels do not match the fitted model")

    rows = []
    for c in range(n_classes):
        for j, name in enumerate(variable_names):
            for l, label in enumerate(level_labels):
                rows.append({
                    'class': c + 1,
                    'class_share': float(result['class_proportions'][c]),
                    'variable': name,
                    'level': label,
                    'probability': float(item_probs[c, j, l]),
                })
    return pd.DataFrame(rows)
