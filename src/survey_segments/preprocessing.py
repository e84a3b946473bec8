"""
Survey loading and preprocessing.

The raw export has one header row of question names followed by one row of
question-type tags, then one row per respondent. Responses are banded
strings ("1_to_2", "3_to_4", "5_to_6") or the "No ans." sentinel.

Preprocessing turns that export into a table of small integer codes that the
latent class and k-modes fitters consume directly:

1. Split off the tag row
2. Drop the respondent identifier
3. Drop respondents with no answer recorded for the required question
4. Keep the discriminating subset of questions
5. Rename each kept question to ``<question>_<tag>``
6. Map the four level strings to the codes 1..4

Any structural surprise (a missing column, an unknown level string, more
incomplete rows than tolerated) is a configuration error and raises
``ValueError`` immediately.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .config import LEVEL_CODES, EXCLUDED_QUESTIONS, SURVEY_QUESTIONS


logger = logging.getLogger(__name__)


# =============================================================================
# LOADING
# =============================================================================

def load_survey(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read the raw survey export.

    All cells are read as strings so level labels are never coerced to
    numbers; empty cells become NaN.
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"Survey file not found: {path}")
    raw = pd.read_csv(path, dtype=str, keep_default_na=True)
    logger.info(f"Loaded {len(raw)} rows x {raw.shape[1]} columns from {path.name}")
    return raw


def extract_question_tags(raw: pd.DataFrame) -> Tuple[Dict[str, str], pd.DataFrame]:
    """
    Separate the question-type tag row from the respondent rows.

    Returns:
        Tuple of (tags, responses) where tags maps column name to its tag
        (columns without a tag are omitted) and responses is the remaining
        table with a fresh RangeIndex.
    """
    if raw.empty:
        raise ValueError("Survey table is empty; expected a tag row followed by responses")

    tag_row = raw.iloc[0]
    tags = {
        col: str(tag).strip()
        for col, tag in tag_row.items()
        if isinstance(tag, str) and tag.strip()
    }
    responses = raw.iloc[1:].reset_index(drop=True)
    return tags, responses


# =============================================================================
# ENCODING
# =============================================================================

def encode_levels(frame: pd.DataFrame,
                  level_codes: Optional[Dict[str, int]] = None) -> pd.DataFrame:
    """
    Map banded level strings to integer codes.

    Missing cells stay missing (as pandas NA in a nullable integer column);
    any other unmapped string is a fatal error.
    """
    level_codes = LEVEL_CODES if level_codes is None else level_codes

    encoded = {}
    for col in frame.columns:
        values = frame[col].map(lambda v: v.strip() if isinstance(v, str) else v)
        unknown = set(values.dropna().unique()) - set(level_codes)
        if unknown:
            raise ValueError(
                f"Unexpected response level(s) in column '{col}': {sorted(unknown)}. "
                f"Expected one of {list(level_codes)}"
            )
        encoded[col] = values.map(level_codes).astype("Int64")

    return pd.DataFrame(encoded, index=frame.index)


def _require_columns(frame: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise ValueError(f"Survey is missing expected column(s): {missing}")


# =============================================================================
# FULL PREPROCESSING
# =============================================================================

def preprocess_survey(raw: pd.DataFrame,
                      id_column: str = "ID",
                      required_column: str = "Q1",
                      questions: Sequence[str] = SURVEY_QUESTIONS,
                      excluded_questions: Sequence[str] = EXCLUDED_QUESTIONS,
                      max_missing_fraction: float = 0.0,
                      level_codes: Optional[Dict[str, int]] = None) -> pd.DataFrame:
    """
    Turn a raw survey export into an integer-coded observation table.

    Args:
        raw: Table as returned by ``load_survey`` (tag row still present)
        id_column: Respondent identifier column, dropped from the output
        required_column: Question that must be answered; rows missing it are
                         dropped before anything else is checked
        questions: All question columns expected in the export
        excluded_questions: Questions left out of the analysis
        max_missing_fraction: Share of remaining rows allowed to have missing
                              answers on kept questions; those rows are
                              dropped. Above this share the data is rejected.
        level_codes: Level string to code mapping (defaults to LEVEL_CODES)

    Returns:
        DataFrame of int codes, one column per kept question named
        ``<question>_<tag>``, one row per retained respondent.
    """
    _require_columns(raw, [id_column, required_column, *questions])

    tags, responses = extract_question_tags(raw)
    n_raw = len(responses)

    responses = responses.drop(columns=[id_column])
    responses = responses[responses[required_column].notna()]
    n_dropped_required = n_raw - len(responses)
    if n_dropped_required:
        logger.info(
            f"Dropped {n_dropped_required} respondent(s) with no '{required_column}' answer"
        )

    kept = [q for q in questions if q not in set(excluded_questions)]
    if not kept:
        raise ValueError("No questions left after exclusions")
    untagged = [q for q in kept if q not in tags]
    if untagged:
        raise ValueError(f"Question(s) without a type tag: {untagged}")

    encoded = encode_levels(responses[kept], level_codes)

    incomplete = encoded.isna().any(axis=1)
    n_incomplete = int(incomplete.sum())
    if n_incomplete:
        share = n_incomplete / max(len(encoded), 1)
        if share > max_missing_fraction:
            raise ValueError(
                f"{n_incomplete} of {len(encoded)} respondents ({share:.1%}) have missing "
                f"answers, above the tolerated {max_missing_fraction:.1%}"
            )
        logger.warning(f"Dropping {n_incomplete} respondent(s) with missing answers")
        encoded = encoded[~incomplete]

    encoded = encoded.astype(int).reset_index(drop=True)
    encoded.columns = [f"{q}_{tags[q]}" for q in kept]

    logger.info(
        f"Preprocessed survey: {len(encoded)} respondents x {encoded.shape[1]} questions"
    )
    return encoded


def describe_responses(frame: pd.DataFrame,
                       level_codes: Optional[Dict[str, int]] = None) -> pd.DataFrame:
    """
    Share of respondents choosing each level, per question.

    Useful for spotting near-unanimous questions that carry little
    information for segmentation. Rows are questions, columns are level
    labels, and a ``max_share`` column gives the most common level's share.
    """
    level_codes = LEVEL_CODES if level_codes is None else level_codes
    labels = {code: label for label, code in level_codes.items()}

    shares = pd.DataFrame(
        {
            col: frame[col].value_counts(normalize=True).reindex(list(labels), fill_value=0.0)
            for col in frame.columns
        }
    ).T
    shares.columns = [labels[c] for c in shares.columns]
    shares['max_share'] = shares.max(axis=1)
    return shares


def to_observation_array(frame: pd.DataFrame) -> np.ndarray:
    """Read-only integer array view of a preprocessed table."""
    data = frame.to_numpy(dtype=int, copy=True)
    data.setflags(write=False)
    return data
