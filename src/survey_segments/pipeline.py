"""
End-to-end segmentation run.

Load -> preprocess -> split -> LCA class sweep -> selection -> k-modes
baseline at the chosen K -> comparison. Everything is a single synchronous
pass; each fit receives its own seeded generator.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from .config import AnalysisSettings, LEVEL_CODES, N_CATEGORIES, get_settings
from .exceptions import ConvergenceError
from .models.kmodes import centroids_frame, fit_kmodes, run_kmodes_sweep
from .models.lca import lca_profiles_frame
from .preprocessing import load_survey, preprocess_survey, to_observation_array
from .selection import run_class_sweep, select_n_classes, sweep_criteria
from .utils import compare_partitions, export_tables, make_rng, split_frame


logger = logging.getLogger(__name__)

LEVEL_LABELS = list(LEVEL_CODES)

# Offset mixed into the seed of the k-modes fits so they never share a
# stream with the LCA fit of the same K
KMODES_STREAM = 1


def analyze_responses(frame: pd.DataFrame,
                      settings: Optional[AnalysisSettings] = None) -> Dict:
    """
    Run the segmentation on an already preprocessed response table.

    Returns:
        Dictionary with:
        - 'responses': the input table
        - 'train_index', 'test_index': row labels of each partition
        - 'sweep': output of run_class_sweep
        - 'selection': output of select_n_classes
        - 'lca': chosen-K training fit (None when no K survived selection)
        - 'kmodes': k-modes fit at the chosen K (None when unavailable)
        - 'kmodes_sweep': k-modes score per cluster count
        - 'comparison': output of compare_partitions (None when unavailable)
    """
    settings = get_settings() if settings is None else settings

    train_frame, test_frame = split_frame(frame, settings.train_fraction, seed=settings.seed)
    train = to_observation_array(train_frame)
    test = to_observation_array(test_frame)

    sweep = run_class_sweep(
        train, test,
        class_range=settings.class_range,
        max_iter=settings.lca_max_iter,
        tol=settings.lca_tol,
        n_init=settings.lca_n_init,
        seed=settings.seed,
        n_categories=N_CATEGORIES,
    )
    selection = select_n_classes(
        sweep,
        threshold=settings.elbow_threshold,
        max_proportion_gap=settings.max_proportion_gap,
    )
    logger.info(selection['rationale'])

    kmodes_sweep = run_kmodes_sweep(
        train,
        cluster_range=settings.class_range,
        max_iter=settings.kmodes_max_iter,
        n_init=settings.kmodes_n_init,
        seed=settings.seed + KMODES_STREAM,
    )

    results = {
        'responses': frame,
        'train_index': train_frame.index,
        'test_index': test_frame.index,
        'sweep': sweep,
        'selection': selection,
        'lca': None,
        'kmodes': None,
        'kmodes_sweep': kmodes_sweep,
        'comparison': None,
    }

    k = selection['n_classes']
    if k is None:
        logger.warning("No stable class count; skipping final model and k-modes comparison")
        return results

    results['lca'] = sweep['fits'][k]['train']

    try:
        results['kmodes'] = fit_kmodes(
            train, k,
            max_iter=settings.kmodes_max_iter,
            n_init=settings.kmodes_n_init,
            rng=make_rng((settings.seed, k, KMODES_STREAM)),
            n_categories=N_CATEGORIES,
        )
    except ConvergenceError as e:
        logger.warning(f"K-modes baseline failed: {e}")
        return results

    results['comparison'] = compare_partitions(
        results['lca']['assignments'], results['kmodes']['labels']
    )
    logger.info(
        f"LCA vs k-modes at K={k}: adjusted Rand index = {results['comparison']['ari']:.3f}"
    )
    return results


def run_analysis(data_path: Union[str, Path],
                 settings: Optional[AnalysisSettings] = None) -> Dict:
    """Load a raw survey export and run the full segmentation."""
    settings = get_settings() if settings is None else settings

    raw = load_survey(data_path)
    frame = preprocess_survey(
        raw,
        id_column=settings.id_column,
        required_column=settings.required_column,
        questions=settings.questions,
        excluded_questions=settings.excluded_questions,
        max_missing_fraction=settings.max_missing_fraction,
    )
    return analyze_responses(frame, settings)


def result_tables(results: Dict) -> Dict[str, pd.DataFrame]:
    """
    Flatten analysis results into named tables.

    Always includes the information-criterion sweep and the k-modes sweep;
    model-specific tables are added only when a class count was selected.
    """
    variable_names = list(results['responses'].columns)
    tables = {
        'lca_sweep': sweep_criteria(results['sweep']),
        'kmodes_sweep': results['kmodes_sweep'],
    }

    lca = results['lca']
    if lca is not None:
        tables['lca_profiles'] = lca_profiles_frame(lca, variable_names, LEVEL_LABELS)
        tables['lca_class_shares'] = pd.DataFrame({
            'class': range(1, lca['n_classes'] + 1),
            'prior': lca['class_probs'],
            'posterior_share': lca['class_proportions'],
        })
        tables['lca_assignments'] = pd.DataFrame({
            'row': results['train_index'],
            'class': lca['assignments'] + 1,
        })

    kmodes = results['kmodes']
    if kmodes is not None:
        tables['kmodes_centroids'] = centroids_frame(kmodes, variable_names, LEVEL_LABELS)

    if results['comparison'] is not None:
        tables['lca_vs_kmodes'] = results['comparison']['contingency'].reset_index()

    return tables


def export_results(results: Dict, output_dir: Union[str, Path]) -> List[Path]:
    """Write every result table as CSV into ``output_dir``."""
    return export_tables(result_tables(results), output_dir)
