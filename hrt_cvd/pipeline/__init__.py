"""Cohort construction stages and the pipeline that chains them."""

from .filtering import filter_columns_and_rows, FilterResult
from .derivation import derive_exposure_and_outcome, DerivationResult
from .matching import match_cohort, MatchResult
from .partitioning import partition_and_redact, PartitionResult
from .imputation import (
    ChainedRandomForestImputer,
    FittedImputer,
    fit_imputer,
    apply_imputer,
    attach_dates,
)
from .preprocessing import (
    MissingValueHandler,
    DataValidator,
    DataScaler,
)
from .cohort_pipeline import CohortPipeline, PipelineResult

__all__ = [
    'filter_columns_and_rows',
    'FilterResult',
    'derive_exposure_and_outcome',
    'DerivationResult',
    'match_cohort',
    'MatchResult',
    'partition_and_redact',
    'PartitionResult',
    'ChainedRandomForestImputer',
    'FittedImputer',
    'fit_imputer',
    'apply_imputer',
    'attach_dates',
    'MissingValueHandler',
    'DataValidator',
    'DataScaler',
    'CohortPipeline',
    'PipelineResult',
]
