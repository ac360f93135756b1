"""
HRT / CVD cohort preprocessing

Builds the matched, leakage-free, imputed train/test cohort used to study
whether hormone replacement therapy history predicts incident cardiovascular
disease in postmenopausal women, from a raw UK Biobank extract.
"""

__version__ = "1.0.0"

from .config import PipelineConfig
from .exceptions import (
    AlignmentError,
    CohortPipelineError,
    ConfigError,
    LeakageError,
    SchemaError,
)
from .pipeline import (
    CohortPipeline,
    FittedImputer,
    apply_imputer,
    derive_exposure_and_outcome,
    filter_columns_and_rows,
    fit_imputer,
    match_cohort,
    partition_and_redact,
)

__all__ = [
    'PipelineConfig',
    'CohortPipelineError',
    'ConfigError',
    'SchemaError',
    'AlignmentError',
    'LeakageError',
    'CohortPipeline',
    'FittedImputer',
    'filter_columns_and_rows',
    'derive_exposure_and_outcome',
    'match_cohort',
    'partition_and_redact',
    'fit_imputer',
    'apply_imputer',
]
