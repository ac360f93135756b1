"""
Pipeline configuration.

All constants the stages rely on live in a single ``PipelineConfig`` that is
passed explicitly into every stage function.
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .exceptions import ConfigError

DEFAULT_DROP_PATTERNS = [
    r"^Non_cancer_illness_year\.age_first_occurred",
    r"^age_non_cancer_illness_diagnosed",
    r"^Non_cancer_illness_code",
    r"^cancer_code",
    r"\.0\.[1-6]",
    r"^Medication_for_.*_heartburn",
    r"^pulse_rate",
    r"^Number_of_self_reported",
]

DEFAULT_DROP_COLUMNS = [
    "number_in_household",
    "hes_data_records",
    "reason_lost_to_follow_up",
    "date_lost_to_follow_up",
    "age_dvt_diagnosed",
    "age_pulmonary_embolism_diagnosed",
    "age_stroke_diagnosed",
    "age_high_blood_pressure_diagnosed",
    "age_heart_attack_diagnosed",
    "age_angina_diagnosed",
    "age_started_hrt",
    "age_last_used_hrt",
    "ever_used_hrt",
    "former_alcohol_drinker",
    "pack_years_of_smoking_lifespan_proportion",
    "light_smokers",
    "current_tobacco_smoking",
    "past_tobacco_smoking",
    "age_when_last_used_oral_contraceptive_pill",
    "age_started_oral_contraceptive_pill",
]

DEFAULT_DATE_COLUMNS = [
    "first_hrt_prescription",
    "last_hrt_prescription",
    "date_recr",
    "date_diagnosis",
]


@dataclass
class PipelineConfig:
    """Configuration shared by every pipeline stage.

    The first six fields are the recognised top-level options; the rest are
    study constants with defaults matching the biobank extract.
    """
    drop_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_DROP_PATTERNS))
    matching_ratio: int = 2
    correlation_threshold: float = 0.8
    split_fraction: float = 0.8
    random_seed: int = 42
    imputation_draws: int = 5

    drop_columns: List[str] = field(default_factory=lambda: list(DEFAULT_DROP_COLUMNS))
    id_column: str = "eid"
    outcome_column: str = "cvd_binary"
    exposure_column: str = "exposure_hrt_status"
    female_code: int = 0
    min_age: float = 40.0
    matching_covariates: List[str] = field(
        default_factory=lambda: ["bmi", "age_at_recruitment", "menopause_status"]
    )
    categorical_matching_covariates: List[str] = field(default_factory=lambda: ["menopause_status"])
    matching_caliper: Optional[float] = None
    date_columns: List[str] = field(default_factory=lambda: list(DEFAULT_DATE_COLUMNS))
    protected_columns: List[str] = field(default_factory=list)
    bmi_source_column: str = "bmi_0_0"
    imputation_iterations: int = 5
    imputation_trees: int = 10
    imputation_seed: int = 2025
    canonical_draw: int = 0
    tracking: Dict[str, Any] = field(default_factory=lambda: {"enabled": False})

    def __post_init__(self) -> None:
        self.protected_columns = list(self.protected_columns)
        for column in (self.id_column, self.outcome_column, self.exposure_column):
            if column not in self.protected_columns:
                self.protected_columns.append(column)
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError for out-of-range options."""
        if not isinstance(self.matching_ratio, int) or self.matching_ratio < 1:
            raise ConfigError(f"matching_ratio must be a positive integer, got {self.matching_ratio!r}")
        if not 0.0 <= float(self.correlation_threshold) <= 1.0:
            raise ConfigError(f"correlation_threshold must be in [0, 1], got {self.correlation_threshold}")
        if not 0.0 < float(self.split_fraction) < 1.0:
            raise ConfigError(f"split_fraction must be in (0, 1), got {self.split_fraction}")
        if not isinstance(self.random_seed, int):
            raise ConfigError(f"random_seed must be an integer, got {self.random_seed!r}")
        if not isinstance(self.imputation_draws, int) or self.imputation_draws < 1:
            raise ConfigError(f"imputation_draws must be a positive integer, got {self.imputation_draws!r}")
        if not 0 <= self.canonical_draw < self.imputation_draws:
            raise ConfigError(
                f"canonical_draw {self.canonical_draw} outside [0, {self.imputation_draws})"
            )
        if self.imputation_iterations < 1 or self.imputation_trees < 1:
            raise ConfigError("imputation_iterations and imputation_trees must be positive")
        if self.matching_caliper is not None and self.matching_caliper <= 0:
            raise ConfigError(f"matching_caliper must be positive, got {self.matching_caliper}")
        if not self.matching_covariates:
            raise ConfigError("matching_covariates must not be empty")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from a (possibly partial) dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration options: {unknown}")
        return cls(**config)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load a config from a YAML file."""
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        return cls.from_dict(config)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_yaml(self, path: Union[str, Path]) -> None:
        Path(path).write_text(yaml.safe_dump(self.to_dict(), sort_keys=False), encoding="utf-8")
