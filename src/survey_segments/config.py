"""
Configuration and constants for the survey segmentation analysis.

Uses Pydantic settings for environment-based configuration, so a run can be
re-parameterised (seed, class range, restart counts) without touching code.
Every field can be overridden with a ``SURVEY_SEGMENTS_`` prefixed
environment variable or an entry in a local ``.env`` file.
"""

from functools import lru_cache
from typing import Dict, Optional, Tuple

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# SURVEY LAYOUT
# =============================================================================

# Response bands as they appear in the raw export, mapped to integer codes.
# The last code is the "no answer" sentinel and is modelled as its own level.
LEVEL_CODES: Dict[str, int] = {
    "1_to_2": 1,
    "3_to_4": 2,
    "5_to_6": 3,
    "No ans.": 4,
}
N_CATEGORIES = len(LEVEL_CODES)

SURVEY_QUESTIONS: Tuple[str, ...] = tuple(f"Q{i}" for i in range(1, 17))

# Near-unanimous questions and questions overlapping with a kept one
EXCLUDED_QUESTIONS: Tuple[str, ...] = ("Q3", "Q8", "Q12", "Q15")


class AnalysisSettings(BaseSettings):
    """Analysis settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SURVEY_SEGMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Reproducibility
    seed: int = 42
    train_fraction: float = Field(default=0.7, gt=0.0, lt=1.0)

    # Survey layout
    id_column: str = "ID"
    required_column: str = "Q1"
    questions: Tuple[str, ...] = SURVEY_QUESTIONS
    excluded_questions: Tuple[str, ...] = EXCLUDED_QUESTIONS
    max_missing_fraction: float = Field(default=0.0, ge=0.0, le=1.0)

    # Class-count sweep
    k_min: int = Field(default=2, ge=1)
    k_max: int = Field(default=6, ge=1)

    # LCA defaults
    lca_max_iter: int = Field(default=1000, ge=2)
    lca_n_init: int = Field(default=10, ge=1)
    lca_tol: float = Field(default=1e-6, gt=0.0)

    # K-modes defaults
    kmodes_max_iter: int = Field(default=100, ge=2)
    kmodes_n_init: int = Field(default=10, ge=1)

    # Selection policy
    elbow_threshold: float = Field(default=0.10, gt=0.0, lt=1.0)
    max_proportion_gap: float = Field(default=0.10, gt=0.0, le=1.0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_class_range(self) -> "AnalysisSettings":
        if self.k_min > self.k_max:
            raise ValueError(
                f"k_min ({self.k_min}) must not exceed k_max ({self.k_max})"
            )
        return self

    @property
    def class_range(self) -> range:
        """Candidate class counts for the sweep (inclusive of k_max)."""
        return range(self.k_min, self.k_max + 1)

    @property
    def selected_questions(self) -> Tuple[str, ...]:
        """Questions kept for fitting, in survey order."""
        return tuple(q for q in self.questions if q not in self.excluded_questions)


@lru_cache
def get_settings(env_file: Optional[str] = None) -> AnalysisSettings:
    """Get cached settings instance."""
    if env_file is None:
        return AnalysisSettings()
    return AnalysisSettings(_env_file=env_file)
