"""
Exposure & outcome derivation.

Adds the HRT exposure flag, the binary CVD outcome, age-at-menopause and BMI
categories, and merges the external BMI table.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict

import numpy as np
import pandas as pd

from ..config import PipelineConfig
from ..exceptions import SchemaError
from .filtering import require_columns

logger = logging.getLogger(__name__)

MENOPAUSE_AGE_BINS = [-np.inf, 40, 45, 50, 55, 60, np.inf]
MENOPAUSE_AGE_LABELS = ["<40", "40-44", "45-49", "50-54", "55-59", "60+"]

BMI_BINS = [-np.inf, 18.5, 25, 30, np.inf]
BMI_LABELS = ["Underweight", "Normal", "Overweight", "Obese"]

REQUIRED_COLUMNS = [
    "hrt_within_5yrs",
    "first_hrt_prescription",
    "date_recr",
    "age_at_menopause",
    "incident_case",
    "prevalent_case",
]


@dataclass
class DerivationResult:
    table: pd.DataFrame
    exclusions: Dict[str, int] = field(default_factory=dict)
    # retained rows whose exposure was set to 0 rather than excluded
    reclassified: Dict[str, int] = field(default_factory=dict)


def _as_flag(series: pd.Series) -> pd.Series:
    """Interpret a yes/no field; missing stays missing."""
    if pd.api.types.is_bool_dtype(series):
        return series.astype("boolean")
    lowered = series.astype(object).map(
        lambda v: str(v).strip().lower() if pd.notna(v) else v
    )
    mapped = lowered.map({"true": True, "1": True, "1.0": True, "yes": True,
                          "false": False, "0": False, "0.0": False, "no": False})
    return mapped.astype("boolean")


def prescribed_after_recruitment(df: pd.DataFrame) -> pd.Series:
    first = pd.to_datetime(df["first_hrt_prescription"], errors="coerce")
    recruited = pd.to_datetime(df["date_recr"], errors="coerce")
    return first.notna() & ~(first <= recruited)


def derive_exposure(df: pd.DataFrame) -> pd.Series:
    """1 iff HRT within 5 years is recorded true and no prescription postdates recruitment.

    A missing first-prescription date is valid non-history, not missing data.
    """
    within_5yrs = _as_flag(df["hrt_within_5yrs"]).fillna(False).astype(bool)
    return (within_5yrs & ~prescribed_after_recruitment(df)).astype(int)


def bucket_menopause_age(age_at_menopause: pd.Series) -> pd.Series:
    """Cut age at menopause into 5-year bands; missing ages stay missing."""
    ages = pd.to_numeric(age_at_menopause, errors="coerce")
    return pd.cut(ages, bins=MENOPAUSE_AGE_BINS, labels=MENOPAUSE_AGE_LABELS, right=False)


def bucket_bmi(bmi: pd.Series) -> pd.Series:
    return pd.cut(pd.to_numeric(bmi, errors="coerce"), bins=BMI_BINS, labels=BMI_LABELS)


def merge_bmi(df: pd.DataFrame, bmi_table: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """Left-join BMI by participant id; unmatched participants get null BMI."""
    id_col = config.id_column
    require_columns(bmi_table, [id_col, config.bmi_source_column], "BMI merge")
    if "bmi" in df.columns:
        raise SchemaError("BMI merge: cohort table already holds a 'bmi' column")
    if bmi_table[id_col].duplicated().any():
        n_dup = int(bmi_table[id_col].duplicated().sum())
        raise SchemaError(f"BMI merge: {n_dup} duplicated {id_col} values in BMI table")

    bmi = bmi_table[[id_col, config.bmi_source_column]].rename(
        columns={config.bmi_source_column: "bmi"}
    )
    bmi["bmi"] = pd.to_numeric(bmi["bmi"], errors="coerce")
    merged = df.merge(bmi, on=id_col, how="left", validate="one_to_one")

    n_missing = int(merged["bmi"].isna().sum())
    if n_missing:
        logger.info(f"{n_missing} participants have no BMI after merge")
    return merged


def derive_exposure_and_outcome(cohort: pd.DataFrame, bmi_table: pd.DataFrame,
                                config: PipelineConfig) -> DerivationResult:
    """Add exposure, outcome and category columns, drop prevalent cases, merge BMI."""
    start_time = time.time()
    require_columns(cohort, [config.id_column] + REQUIRED_COLUMNS, "exposure & outcome deriver")

    df = cohort.copy()
    for col in config.date_columns:
        if col in df.columns:
            df[col] = pd.to_datetime(df[col], errors="coerce")

    df[config.exposure_column] = derive_exposure(df)
    df["age_at_meno_cat"] = bucket_menopause_age(df["age_at_menopause"])

    prevalent = pd.to_numeric(df["prevalent_case"], errors="coerce")
    incident = pd.to_numeric(df["incident_case"], errors="coerce")
    exclusions = {
        "prevalent_case": int((prevalent == 1).sum()),
        "missing_prevalent_case": int(prevalent.isna().sum()),
    }
    keep = prevalent.notna() & (prevalent != 1)
    df[config.outcome_column] = (incident == 1).astype(int)
    df = df.loc[keep].drop(columns=["incident_case", "prevalent_case"]).reset_index(drop=True)
    exclusions["total"] = exclusions["prevalent_case"] + exclusions["missing_prevalent_case"]

    reclassified = {"prescription_after_recruitment": int(prescribed_after_recruitment(df).sum())}
    if reclassified["prescription_after_recruitment"]:
        logger.info(f"{reclassified['prescription_after_recruitment']} retained participants were "
                    f"first prescribed HRT after recruitment and count as unexposed")

    df = merge_bmi(df, bmi_table, config)
    df["bmi_category"] = bucket_bmi(df["bmi"])

    elapsed_time = time.time() - start_time
    logger.info(f"Derived exposure/outcome for {len(df)} participants "
                f"(exposed: {int(df[config.exposure_column].sum())}, "
                f"cases: {int(df[config.outcome_column].sum())}, "
                f"excluded: {exclusions}) in {elapsed_time:.2f} seconds")
    return DerivationResult(table=df, exclusions=exclusions, reclassified=reclassified)
