"""Shared fixtures for survey_segments tests.

Provides synthetic response matrices with a known three-class structure and
raw survey exports in the same layout as the real data (header row, tag row,
then one row per respondent).
"""

import numpy as np
import pandas as pd
import pytest

from survey_segments.config import LEVEL_CODES, SURVEY_QUESTIONS

# ── Synthetic responses ──────────────────────────────────────────────────────

N_OBS = 100
N_ITEMS = 12
N_LEVELS = 4
DOMINANT_PROB = 0.85


def make_class_responses(n_obs: int = N_OBS, n_items: int = N_ITEMS,
                         n_classes: int = 3, seed: int = 7) -> tuple[np.ndarray, np.ndarray]:
    """Responses drawn from well-separated classes.

    Class c answers question j with level ((j + c) % 4) + 1 with probability
    0.85 and spreads the rest evenly, so classes disagree on every question.
    Respondent i belongs to class i % n_classes.
    """
    rng = np.random.default_rng(seed)
    labels = np.arange(n_obs) % n_classes
    data = np.empty((n_obs, n_items), dtype=int)
    other = (1 - DOMINANT_PROB) / (N_LEVELS - 1)
    for i, c in enumerate(labels):
        for j in range(n_items):
            probs = np.full(N_LEVELS, other)
            probs[(j + c) % N_LEVELS] = DOMINANT_PROB
            data[i, j] = rng.choice(N_LEVELS, p=probs) + 1
    return data, labels


@pytest.fixture
def three_class_data() -> np.ndarray:
    """100 respondents x 12 questions, 4 levels, three latent classes."""
    data, _ = make_class_responses()
    return data


@pytest.fixture
def three_class_labels() -> np.ndarray:
    """True class of each row of three_class_data."""
    _, labels = make_class_responses()
    return labels


@pytest.fixture
def identical_data() -> np.ndarray:
    """Every respondent gives the same answer to every question."""
    return np.full((N_OBS, N_ITEMS), 2, dtype=int)


def make_two_pattern_responses(n_first: int = 50, n_second: int = 50,
                               n_items: int = N_ITEMS) -> np.ndarray:
    """Only two distinct answer rows: all level 1, then all level 2."""
    return np.vstack([
        np.full((n_first, n_items), 1, dtype=int),
        np.full((n_second, n_items), 2, dtype=int),
    ])


def collapsing_start(n_items: int = N_ITEMS) -> np.ndarray:
    """Starting level tables for K=3 on two-pattern data.

    Classes 0 and 1 favour levels 1 and 2; class 2 favours level 3, which
    nobody answers, so it loses all of its mass in the first EM step.
    """
    tables = np.full((3, n_items, N_LEVELS), 0.01)
    for c in range(3):
        tables[c, :, c] = 0.97
    return tables


# ── Raw survey exports ───────────────────────────────────────────────────────


def make_raw_survey(n_respondents: int = 30, seed: int = 3) -> pd.DataFrame:
    """Raw export: ID + Q1..Q16, a tag row, then banded string answers."""
    rng = np.random.default_rng(seed)
    levels = list(LEVEL_CODES)

    tag_row = {"ID": np.nan}
    tag_row.update({q: ("Freq" if i % 2 else "Imp") for i, q in enumerate(SURVEY_QUESTIONS)})

    rows = [tag_row]
    for r in range(n_respondents):
        row = {"ID": f"R{r:03d}"}
        row.update({q: levels[rng.integers(len(levels))] for q in SURVEY_QUESTIONS})
        rows.append(row)

    return pd.DataFrame(rows, columns=["ID", *SURVEY_QUESTIONS])


@pytest.fixture
def raw_survey() -> pd.DataFrame:
    return make_raw_survey()
