"""Utility modules for the cohort pipeline."""

from .experiment_tracking import ExperimentTracker, setup_experiment_tracking, summary_metrics

__all__ = [
    'ExperimentTracker',
    'setup_experiment_tracking',
    'summary_metrics',
]
