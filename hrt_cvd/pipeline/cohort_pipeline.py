"""
Cohort preprocessing pipeline.

Runs the five stages in order (filter, derive, match, partition, impute),
holding every intermediate table as a separate value, and writes the
modelling-ready artifacts only once all stages have succeeded.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import dask.dataframe as dd
import joblib
import pandas as pd
import yaml
from dask.diagnostics.progress import ProgressBar

from ..config import PipelineConfig
from ..exceptions import LeakageError
from .derivation import derive_exposure_and_outcome
from .filtering import filter_columns_and_rows
from .imputation import (
    FittedImputer,
    apply_imputer,
    attach_dates,
    fit_imputer,
)
from .matching import MatchResult, match_cohort
from .partitioning import PartitionResult, check_alignment, partition_and_redact
from .preprocessing import DataValidator
from ..utils.experiment_tracking import setup_experiment_tracking

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Every artifact produced by one pipeline run."""
    cohort: pd.DataFrame
    match: MatchResult
    partition: PartitionResult
    imputer: FittedImputer
    train_imputed: pd.DataFrame
    test_imputed: pd.DataFrame
    train_final: pd.DataFrame
    test_final: pd.DataFrame
    summary: Dict[str, Any] = field(default_factory=dict)


class CohortPipeline:
    """HRT / incident CVD cohort construction from a raw biobank extract."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()

    # ---------- Data ----------
    def load_data(self, data_path: Union[str, Path]) -> pd.DataFrame:
        """Load a parquet file/dir or CSV with dask, falling back to pandas."""
        logger.info(f"Loading data from {data_path} using Dask")
        p = Path(data_path)

        try:
            if p.suffix.lower() == ".csv":
                ddf = dd.read_csv(p, assume_missing=True)
            else:
                ddf = dd.read_parquet(p)
            logger.info(f"Dask DataFrame partitions: {ddf.npartitions}")
            with ProgressBar():
                df = ddf.compute()
        except Exception as e:
            logger.warning(f"Dask loading failed: {e}. Falling back to pandas.")
            if p.suffix.lower() == ".csv":
                df = pd.read_csv(p)
            else:
                df = pd.read_parquet(p)

        df = df.reset_index(drop=True)
        id_col = self.config.id_column
        if id_col in df.columns:
            ids = pd.to_numeric(df[id_col], errors="coerce")
            if ids.notna().all():
                df[id_col] = ids.astype("int64")

        logger.info(f"Loaded data shape: {df.shape}")
        return df

    def validate_data(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        logger.info("Validating cohort data quality...")
        validator = DataValidator()
        validator.setup_biobank_rules()
        violations = validator.validate(df)
        if violations:
            logger.warning(f"Found {len(violations)} data quality issues: {violations}")
        else:
            logger.info("Data validation passed")
        return violations

    def check_no_leakage(self, train: pd.DataFrame, test: pd.DataFrame) -> None:
        """Refuse to fit on a training table sharing participants with the test table."""
        id_col = self.config.id_column
        shared = set(train[id_col]) & set(test[id_col])
        if shared:
            raise LeakageError(f"{len(shared)} participants appear in both train and test")

    # ---------- Orchestration ----------
    def run(self, raw: pd.DataFrame, bmi: pd.DataFrame) -> PipelineResult:
        """Run all stages in memory; raises on the first fatal error."""
        cfg = self.config
        logger.info("Starting cohort preprocessing pipeline...")

        filtered = filter_columns_and_rows(raw, cfg)
        derived = derive_exposure_and_outcome(filtered.table, bmi, cfg)
        violations = self.validate_data(derived.table)

        match = match_cohort(derived.table, cfg)
        partition = partition_and_redact(match.matched, cfg)

        self.check_no_leakage(partition.train, partition.test)
        imputer = fit_imputer(partition.train, cfg)
        train_imputed = imputer.complete()
        test_imputed = apply_imputer(imputer, partition.test)
        check_alignment(train_imputed, test_imputed, "imputer")

        train_final = attach_dates(train_imputed, partition.train_dates, cfg.id_column)
        test_final = attach_dates(test_imputed, partition.test_dates, cfg.id_column)

        summary = {
            "rows": {
                "raw": int(len(raw)),
                "eligible": int(len(filtered.table)),
                "derived": int(len(derived.table)),
                "matched": int(len(match.matched)),
                "train": int(len(partition.train)),
                "test": int(len(partition.test)),
            },
            "exclusions": {
                "eligibility": filtered.exclusions,
                "outcome": derived.exclusions,
            },
            "exposure_reclassified": derived.reclassified,
            "matching": match.summary(),
            "collinear_columns_dropped": list(partition.dropped_columns),
            "empty_columns_dropped": list(partition.empty_columns),
            "imputation": {
                "draws": len(imputer.draws),
                "train_missing_cells": int(partition.train.isna().sum().sum()),
                "test_missing_cells": int(partition.test.isna().sum().sum()),
                "modelled_columns": list(imputer.model.visit_sequence_),
            },
            "data_quality": violations,
        }
        logger.info(f"Pipeline summary: {summary}")
        return PipelineResult(
            cohort=derived.table,
            match=match,
            partition=partition,
            imputer=imputer,
            train_imputed=train_imputed,
            test_imputed=test_imputed,
            train_final=train_final,
            test_final=test_final,
            summary=summary,
        )

    def save_artifacts(self, result: PipelineResult, output_dir: Union[str, Path]) -> None:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)

        tables = {
            "matched_dataset": result.match.matched,
            "matched_pairs": result.match.pairs,
            "train_dates": result.partition.train_dates,
            "test_dates": result.partition.test_dates,
            "train_imputed": result.train_imputed,
            "test_imputed": result.test_imputed,
            "train_final": result.train_final,
            "test_final": result.test_final,
        }
        for name, table in tables.items():
            table.to_parquet(out / f"{name}.parquet", index=False)

        result.match.balance.to_csv(out / "matching_balance.csv")
        joblib.dump(result.imputer, out / "imputer_model.joblib")
        joblib.dump(result.match, out / "matching_model.joblib")

        (out / "pipeline_summary.yaml").write_text(yaml.safe_dump(result.summary), encoding="utf-8")
        self.config.to_yaml(out / "pipeline_config.yaml")
        logger.info(f"Artifacts saved to {out}")

    def run_pipeline(self, data_path: Union[str, Path], bmi_path: Union[str, Path],
                     output_dir: Union[str, Path]) -> PipelineResult:
        """Load inputs, run every stage, then persist the artifacts."""
        tracker = setup_experiment_tracking(self.config.tracking)

        raw = self.load_data(data_path)
        bmi = self.load_data(bmi_path)
        result = self.run(raw, bmi)
        self.save_artifacts(result, output_dir)

        if tracker:
            with tracker.start_run():
                tracker.log_config(self.config)
                tracker.log_pipeline_summary(result.summary)
                tracker.log_table(result.match.balance, "matching_balance.csv")
                tracker.log_artifacts(str(output_dir))

        logger.info("Pipeline completed successfully!")
        return result


# =====================
# CLI entrypoint
# =====================

def main():
    parser = argparse.ArgumentParser(description="Build the matched, imputed HRT/CVD cohort")
    parser.add_argument("--config", type=str, default=None, help="Path to pipeline configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to raw biobank extract (CSV or parquet)")
    parser.add_argument("--bmi", type=str, required=True, help="Path to BMI table (CSV or parquet)")
    parser.add_argument("--output", type=str, default="./data/processed", help="Output directory for artifacts")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()

    pipeline = CohortPipeline(config)
    pipeline.run_pipeline(args.data, args.bmi, args.output)

    print("Cohort preprocessing completed! Artifacts in:", args.output)


if __name__ == "__main__":
    main()
