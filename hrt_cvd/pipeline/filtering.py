"""
Column & row filter: reduces the raw biobank extract to the eligible cohort
with canonical snake-case column names.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List

import pandas as pd

from ..config import PipelineConfig
from ..exceptions import SchemaError

logger = logging.getLogger(__name__)

INSTANCE_SUFFIX = re.compile(r"\.0\.0$")
SEPARATORS = re.compile(r"[.\s\-]+")

REQUIRED_COLUMNS = ["sex", "pregnant", "menopause_status", "age_at_recruitment"]


@dataclass
class FilterResult:
    """Eligible cohort plus the number of rows failing each predicate."""
    table: pd.DataFrame
    exclusions: Dict[str, int] = field(default_factory=dict)

    @property
    def n_excluded(self) -> int:
        return self.exclusions.get("total", 0)


def canonical_name(name: str) -> str:
    """Map a raw extract column name onto the canonical snake-case schema."""
    name = INSTANCE_SUFFIX.sub("", str(name))
    name = SEPARATORS.sub("_", name)
    name = re.sub(r"_+", "_", name).strip("_")
    return name.lower()


def drop_pattern_columns(df: pd.DataFrame, patterns: List[str]) -> pd.DataFrame:
    """Drop every column whose raw name matches one of the regex patterns."""
    compiled = [re.compile(p) for p in patterns]
    dropped = [col for col in df.columns if any(p.search(str(col)) for p in compiled)]
    if dropped:
        logger.info(f"Dropping {len(dropped)} columns matching irrelevant patterns")
    return df.drop(columns=dropped)


def rename_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename columns to canonical names, refusing collisions."""
    mapping = {col: canonical_name(col) for col in df.columns}
    seen: Dict[str, str] = {}
    for raw, canonical in mapping.items():
        if canonical in seen:
            raise SchemaError(
                f"Columns {seen[canonical]!r} and {raw!r} both map to {canonical!r}"
            )
        seen[canonical] = raw
    return df.rename(columns=mapping)


def require_columns(df: pd.DataFrame, columns: List[str], stage: str) -> None:
    """Raise SchemaError naming every required column absent from df."""
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise SchemaError(f"{stage}: required columns missing from input: {missing}")


def check_id_column(df: pd.DataFrame, id_column: str) -> None:
    """Participant ids must be present and unique."""
    ids = df[id_column]
    if ids.isna().any():
        raise SchemaError(f"{int(ids.isna().sum())} rows have a missing {id_column}")
    if ids.duplicated().any():
        raise SchemaError(f"{int(ids.duplicated().sum())} duplicated {id_column} values")


def eligibility_masks(df: pd.DataFrame, config: PipelineConfig) -> Dict[str, pd.Series]:
    """Boolean mask per cohort predicate; True means the row satisfies it."""
    sex = pd.to_numeric(df["sex"], errors="coerce")
    pregnant = pd.to_numeric(df["pregnant"], errors="coerce")
    age = pd.to_numeric(df["age_at_recruitment"], errors="coerce")
    return {
        "not_female": sex == config.female_code,
        "pregnant": pregnant == 0,
        "missing_menopause_status": df["menopause_status"].notna(),
        "under_min_age": age >= config.min_age,
    }


def filter_columns_and_rows(raw: pd.DataFrame, config: PipelineConfig) -> FilterResult:
    """Drop irrelevant columns, canonicalise names and keep eligible rows.

    A row survives only if every eligibility predicate holds. Exclusion counts
    are keyed by the predicate a row failed; a row may fail several.
    """
    start_time = time.time()
    logger.info(f"Filtering raw extract with {len(raw)} rows and {raw.shape[1]} columns")

    df = drop_pattern_columns(raw, config.drop_patterns)
    df = rename_columns(df)

    present = [col for col in config.drop_columns if col in df.columns]
    df = df.drop(columns=present)

    require_columns(df, [config.id_column] + REQUIRED_COLUMNS, "column & row filter")
    check_id_column(df, config.id_column)

    masks = eligibility_masks(df, config)
    keep = pd.Series(True, index=df.index)
    exclusions = {}
    for name, mask in masks.items():
        exclusions[name] = int((~mask).sum())
        keep &= mask

    table = df.loc[keep].reset_index(drop=True)
    exclusions["total"] = int(len(df) - len(table))

    elapsed_time = time.time() - start_time
    logger.info(f"Cohort filter kept {len(table)} of {len(df)} rows "
                f"({exclusions['total']} excluded: {exclusions}) in {elapsed_time:.2f} seconds")
    return FilterResult(table=table, exclusions=exclusions)
