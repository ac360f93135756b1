"""
Train/test partitioning and redaction.

Splits the matched cohort stratified on the outcome, quarantines date fields
into side tables, drops columns with no observed training value and prunes
collinear numeric columns. Both decisions use training data only.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

from ..config import PipelineConfig
from ..exceptions import AlignmentError, CohortPipelineError
from .filtering import require_columns

logger = logging.getLogger(__name__)


@dataclass
class PartitionResult:
    train: pd.DataFrame
    test: pd.DataFrame
    train_dates: pd.DataFrame
    test_dates: pd.DataFrame
    dropped_columns: List[str] = field(default_factory=list)
    empty_columns: List[str] = field(default_factory=list)


def stratified_split(df: pd.DataFrame, config: PipelineConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Stratified split on the outcome; both partitions keep input row order."""
    outcome = df[config.outcome_column]
    counts = outcome.value_counts()
    if len(counts) < 2 or counts.min() < 2:
        raise CohortPipelineError(
            f"Stratified split needs at least two rows per outcome class, got {counts.to_dict()}"
        )
    positions = np.arange(len(df))
    train_pos, test_pos = train_test_split(
        positions,
        train_size=config.split_fraction,
        stratify=outcome.to_numpy(),
        random_state=config.random_seed,
    )
    train = df.iloc[np.sort(train_pos)].reset_index(drop=True)
    test = df.iloc[np.sort(test_pos)].reset_index(drop=True)
    return train, test


def quarantine_dates(df: pd.DataFrame, config: PipelineConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split date columns off into a side table keyed by participant id."""
    date_cols = [col for col in config.date_columns if col in df.columns]
    dates = df[[config.id_column] + date_cols].copy()
    return df.drop(columns=date_cols), dates


def find_empty_columns(train: pd.DataFrame, protected: List[str]) -> List[str]:
    """Columns with no observed value in the training partition."""
    return [col for col in train.columns
            if col not in protected and train[col].isna().all()]


def find_collinear_columns(train: pd.DataFrame, threshold: float,
                           protected: List[str]) -> List[str]:
    """Columns to drop so no remaining numeric pair exceeds |r| > threshold.

    Repeatedly takes the most correlated remaining pair and drops the member
    with the larger mean absolute correlation to the other remaining columns;
    equal means drop the alphabetically later name. Correlations are pairwise
    complete; undefined correlations count as zero.
    """
    numeric = [col for col in train.columns
               if col not in protected
               and pd.api.types.is_numeric_dtype(train[col])
               and not pd.api.types.is_bool_dtype(train[col])]
    if len(numeric) < 2:
        return []

    names = sorted(numeric)
    values = train[names].astype(float).corr().abs().fillna(0.0).to_numpy(copy=True)
    np.fill_diagonal(values, 0.0)
    corr = pd.DataFrame(values, index=names, columns=names)
    remaining = list(names)
    dropped = []

    while len(remaining) > 1:
        sub = corr.loc[remaining, remaining]
        rows, cols = np.triu_indices(len(remaining), k=1)
        pair_r = sub.to_numpy()[rows, cols]
        above = pair_r > threshold
        if not above.any():
            break
        # first maximal pair in name order
        best = int(np.flatnonzero(pair_r == pair_r[above].max())[0])
        a, b = remaining[rows[best]], remaining[cols[best]]
        others = [col for col in remaining if col not in (a, b)]
        mean_a = sub.loc[a, others].mean() if others else 0.0
        mean_b = sub.loc[b, others].mean() if others else 0.0
        if np.isclose(mean_a, mean_b):
            victim = max(a, b)
        else:
            victim = a if mean_a > mean_b else b
        logger.info(f"Dropping {victim!r}: |r|={sub.loc[a, b]:.3f} between {a!r} and {b!r}")
        dropped.append(victim)
        remaining.remove(victim)

    return dropped


def check_alignment(train: pd.DataFrame, test: pd.DataFrame, stage: str) -> None:
    if list(train.columns) != list(test.columns):
        only_train = sorted(set(train.columns) - set(test.columns))
        only_test = sorted(set(test.columns) - set(train.columns))
        raise AlignmentError(
            f"{stage}: train/test columns diverge (train only: {only_train}, test only: {only_test})"
        )


def partition_and_redact(matched: pd.DataFrame, config: PipelineConfig) -> PartitionResult:
    """Split, quarantine dates, drop empty columns and prune collinear ones."""
    start_time = time.time()
    require_columns(matched, [config.id_column, config.outcome_column], "partitioner")

    train, test = stratified_split(matched, config)
    train, train_dates = quarantine_dates(train, config)
    test, test_dates = quarantine_dates(test, config)

    empty = find_empty_columns(train, config.protected_columns)
    if empty:
        logger.warning(f"Dropping columns with no observed training values: {empty}")
        train = train.drop(columns=empty)
        test = test.drop(columns=empty)

    dropped = find_collinear_columns(train, config.correlation_threshold, config.protected_columns)
    train = train.drop(columns=dropped)
    test = test.drop(columns=dropped)
    check_alignment(train, test, "partitioner")

    elapsed_time = time.time() - start_time
    logger.info(f"Partitioned {len(matched)} rows into train={len(train)} / test={len(test)}, "
                f"dropped {len(dropped)} collinear columns {dropped} in {elapsed_time:.2f} seconds")
    return PartitionResult(
        train=train,
        test=test,
        train_dates=train_dates,
        test_dates=test_dates,
        dropped_columns=dropped,
        empty_columns=empty,
    )
