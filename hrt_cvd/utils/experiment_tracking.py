"""
Experiment tracking utilities using MLflow.

A cohort build is recorded as one MLflow run: the configuration as params,
the row counts and exclusion tallies of the pipeline summary as metrics, and
the saved artifact directory.
"""

import mlflow
import logging
import time
from typing import Any, Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)

DELETED = "deleted"


def summary_metrics(summary: Dict[str, Any], prefix: str = "") -> Dict[str, float]:
    """Numeric leaves of a nested pipeline summary, keyed by dotted path."""
    metrics = {}
    for key, value in summary.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            metrics.update(summary_metrics(value, prefix=f"{name}."))
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            metrics[name] = float(value)
    return metrics


class ExperimentTracker:
    """Records cohort builds as MLflow runs."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize from the ``tracking`` section of the pipeline config."""
        self.config = config
        self.tracking_uri = config.get('tracking_uri', 'file:./mlruns')
        self.experiment_name = config.get('experiment_name', 'hrt_cvd_cohort')
        self.run_name = config.get('run_name', 'cohort_preprocessing')

        mlflow.set_tracking_uri(self.tracking_uri)
        self.experiment_id = self._resolve_experiment()
        if self.experiment_id is None:
            mlflow.set_experiment("Default")
        else:
            mlflow.set_experiment(experiment_id=self.experiment_id)

    def _resolve_experiment(self) -> Optional[str]:
        """Create the experiment, or reuse a live one of the same name.

        A deleted experiment blocks its name, so a timestamped name is used
        instead. None means fall back to MLflow's default experiment.
        """
        try:
            return mlflow.create_experiment(self.experiment_name)
        except Exception:
            existing = mlflow.get_experiment_by_name(self.experiment_name)
            if existing is not None and existing.lifecycle_stage != DELETED:
                return existing.experiment_id

        renamed = f"{self.experiment_name}_{int(time.time())}"
        try:
            experiment_id = mlflow.create_experiment(renamed)
        except Exception as e:
            logger.warning(f"Could not create experiment {renamed!r}: {e}")
            return None
        logger.info(f"Experiment {self.experiment_name!r} was deleted; logging to {renamed!r}")
        self.experiment_name = renamed
        return experiment_id

    def start_run(self, run_name: Optional[str] = None):
        return mlflow.start_run(run_name=run_name or self.run_name)

    def log_config(self, config) -> None:
        """Log a PipelineConfig as run params."""
        self.log_params(config.to_dict())

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        for key, value in self._flatten_dict(params, prefix).items():
            try:
                mlflow.log_param(key, value)
            except Exception as e:
                logger.warning(f"Failed to log param {key}: {e}")

    def log_metrics(self, metrics: Dict[str, float], step: Optional[int] = None):
        for key, value in metrics.items():
            try:
                mlflow.log_metric(key, value, step=step)
            except Exception as e:
                logger.warning(f"Failed to log metric {key}: {e}")

    def log_pipeline_summary(self, summary: Dict[str, Any]) -> None:
        """Log summary counts as metrics and the full summary as YAML."""
        self.log_metrics(summary_metrics(summary))
        try:
            mlflow.log_dict(summary, "pipeline_summary.yaml")
        except Exception as e:
            logger.warning(f"Failed to log pipeline summary: {e}")

    def log_table(self, table: pd.DataFrame, artifact_file: str) -> None:
        """Log a small table (e.g. covariate balance) as a CSV artifact."""
        try:
            mlflow.log_text(table.to_csv(), artifact_file)
        except Exception as e:
            logger.warning(f"Failed to log table {artifact_file}: {e}")

    def log_artifacts(self, artifact_path: str):
        try:
            mlflow.log_artifacts(artifact_path)
        except Exception as e:
            logger.warning(f"Failed to log artifacts: {e}")

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        """Flatten nested dictionary for parameter logging."""
        items = {}
        for key, value in d.items():
            new_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                items.update(self._flatten_dict(value, new_key))
            else:
                # MLflow params are strings
                items[new_key] = str(value)
        return items


def setup_experiment_tracking(tracking_config: Dict[str, Any]) -> Optional[ExperimentTracker]:
    """Return a tracker when tracking is enabled, else None."""
    if not tracking_config.get('enabled', False):
        logger.info("Experiment tracking disabled")
        return None
    return ExperimentTracker(tracking_config)
