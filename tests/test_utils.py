"""
Test suite for configuration and experiment tracking utilities.
"""

import pytest
from pathlib import Path
from unittest.mock import patch

import pandas as pd
import yaml

from hrt_cvd.config import PipelineConfig
from hrt_cvd.exceptions import ConfigError
from hrt_cvd.utils.experiment_tracking import (
    ExperimentTracker,
    setup_experiment_tracking,
    summary_metrics,
)

CONFIG_FILE = Path(__file__).resolve().parent.parent / 'config' / 'pipeline_config.yaml'

TRACKING_CONFIG = {
    'enabled': True,
    'tracking_uri': 'file:./test_mlruns',
    'experiment_name': 'test_experiment',
}


class TestPipelineConfig:
    """Test configuration loading and validation."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.matching_ratio == 2
        assert config.correlation_threshold == 0.8
        assert config.split_fraction == 0.8
        assert config.imputation_draws == 5
        for col in ['eid', 'cvd_binary', 'exposure_hrt_status']:
            assert col in config.protected_columns

    def test_protected_columns_copied(self):
        """The caller's list is left untouched."""
        protected = ['bmi']
        config = PipelineConfig(protected_columns=protected)
        assert protected == ['bmi']
        assert config.protected_columns == ['bmi', 'eid', 'cvd_binary', 'exposure_hrt_status']

    def test_shipped_config_matches_defaults(self):
        """The example YAML file loads and reproduces the defaults."""
        config = PipelineConfig.from_yaml(CONFIG_FILE)
        defaults = PipelineConfig()

        assert config.drop_patterns == defaults.drop_patterns
        assert config.matching_covariates == defaults.matching_covariates
        assert config.random_seed == defaults.random_seed
        assert config.tracking['enabled'] is False

    def test_yaml_round_trip(self, temp_directory):
        config = PipelineConfig(matching_ratio=3, random_seed=7, matching_caliper=0.2)
        path = temp_directory / 'config.yaml'
        config.to_yaml(path)

        assert PipelineConfig.from_yaml(path) == config

    def test_partial_yaml(self, temp_directory):
        path = temp_directory / 'config.yaml'
        path.write_text(yaml.safe_dump({'split_fraction': 0.7}))

        config = PipelineConfig.from_yaml(path)
        assert config.split_fraction == 0.7
        assert config.matching_ratio == 2

    def test_unknown_option(self):
        with pytest.raises(ConfigError, match='matching_ratoi'):
            PipelineConfig.from_dict({'matching_ratoi': 2})

    @pytest.mark.parametrize('options', [
        {'matching_ratio': 0},
        {'correlation_threshold': 1.5},
        {'split_fraction': 1.0},
        {'imputation_draws': 0},
        {'imputation_draws': 2, 'canonical_draw': 2},
        {'matching_caliper': -0.1},
        {'matching_covariates': []},
    ])
    def test_invalid_values(self, options):
        with pytest.raises(ConfigError):
            PipelineConfig.from_dict(options)

    def test_non_mapping_yaml(self, temp_directory):
        path = temp_directory / 'config.yaml'
        path.write_text('- just\n- a list\n')
        with pytest.raises(ConfigError):
            PipelineConfig.from_yaml(path)


class TestExperimentTracker:
    """Test experiment tracking functionality."""

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """Test ExperimentTracker initialization."""
        mock_create_exp.return_value = "test_exp_id"

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.tracking_uri == 'file:./test_mlruns'
        assert tracker.experiment_name == 'test_experiment'
        assert tracker.experiment_id == "test_exp_id"
        mock_set_uri.assert_called_once_with('file:./test_mlruns')
        mock_set_exp.assert_called_once_with(experiment_id="test_exp_id")

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_existing_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """An existing live experiment is reused."""
        mock_create_exp.side_effect = Exception("already exists")
        mock_get_exp.return_value.lifecycle_stage = "active"
        mock_get_exp.return_value.experiment_id = "42"

        ExperimentTracker(TRACKING_CONFIG)

        mock_set_exp.assert_called_once_with(experiment_id="42")

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_deleted_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """A deleted experiment's name is replaced by a timestamped one."""
        mock_create_exp.side_effect = [Exception("already exists"), "99"]
        mock_get_exp.return_value.lifecycle_stage = "deleted"

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.experiment_name.startswith('test_experiment_')
        mock_set_exp.assert_called_once_with(experiment_id="99")

    @patch('mlflow.create_experiment', side_effect=Exception("no backend"))
    @patch('mlflow.get_experiment_by_name', return_value=None)
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_falls_back_to_default(self, mock_set_uri, mock_set_exp, *_):
        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.experiment_id is None
        mock_set_exp.assert_called_once_with("Default")

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    @patch('mlflow.start_run')
    def test_start_run(self, mock_start_run, *_):
        """Runs are named from the config unless a name is given."""
        tracker = ExperimentTracker(TRACKING_CONFIG)
        tracker.start_run("test_run")
        tracker.start_run()

        mock_start_run.assert_any_call(run_name="test_run")
        mock_start_run.assert_any_call(run_name="cohort_preprocessing")

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    @patch('mlflow.log_param')
    def test_log_config(self, mock_log_param, *_):
        """Config fields are flattened and logged as strings."""
        tracker = ExperimentTracker(TRACKING_CONFIG)
        tracker.log_config(PipelineConfig(matching_ratio=3))

        mock_log_param.assert_any_call('matching_ratio', '3')
        mock_log_param.assert_any_call('tracking.enabled', 'False')
        mock_log_param.assert_any_call('matching_caliper', 'None')

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    @patch('mlflow.log_dict')
    @patch('mlflow.log_metric')
    def test_log_pipeline_summary(self, mock_log_metric, mock_log_dict, *_):
        """Numeric summary entries become metrics; the summary itself an artifact."""
        tracker = ExperimentTracker(TRACKING_CONFIG)
        summary = {
            'rows': {'matched': 390, 'train': 312},
            'collinear_columns_dropped': ['ldl_direct'],
        }
        tracker.log_pipeline_summary(summary)

        assert mock_log_metric.call_count == 2
        mock_log_metric.assert_any_call('rows.matched', 390.0, step=None)
        mock_log_metric.assert_any_call('rows.train', 312.0, step=None)
        mock_log_dict.assert_called_once_with(summary, 'pipeline_summary.yaml')

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    @patch('mlflow.log_metric', side_effect=Exception("backend down"))
    def test_log_metrics_failure_is_logged(self, mock_log_metric, *_):
        """Tracking failures never stop the pipeline."""
        tracker = ExperimentTracker(TRACKING_CONFIG)
        tracker.log_metrics({'rows.matched': 390.0})
        assert mock_log_metric.call_count == 1

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    @patch('mlflow.log_text')
    def test_log_table(self, mock_log_text, *_):
        tracker = ExperimentTracker(TRACKING_CONFIG)
        balance = pd.DataFrame({'smd_before': [0.4], 'smd_after': [0.05]}, index=['bmi'])
        tracker.log_table(balance, 'matching_balance.csv')

        text, name = mock_log_text.call_args[0]
        assert name == 'matching_balance.csv'
        assert 'smd_after' in text

    @patch('mlflow.create_experiment', return_value="1")
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_flatten_dict(self, *_):
        """Test dictionary flattening."""
        tracker = ExperimentTracker(TRACKING_CONFIG)
        nested_dict = {
            'matching': {
                'ratio': 2,
                'caliper': {'sd': 0.2}
            }
        }

        flattened = tracker._flatten_dict(nested_dict)

        assert flattened['matching.ratio'] == '2'
        assert flattened['matching.caliper.sd'] == '0.2'


def test_summary_metrics():
    """Only numeric leaves become metrics; booleans and lists are skipped."""
    summary = {
        'rows': {'raw': 600, 'matched': 390},
        'exclusions': {'eligibility': {'pregnant': 9, 'total': 50}},
        'matching': {'index_group': 1},
        'collinear_columns_dropped': ['ldl_direct'],
        'flag': True,
    }
    assert summary_metrics(summary) == {
        'rows.raw': 600.0,
        'rows.matched': 390.0,
        'exclusions.eligibility.pregnant': 9.0,
        'exclusions.eligibility.total': 50.0,
        'matching.index_group': 1.0,
    }


def test_setup_experiment_tracking():
    """Test experiment tracking setup function."""
    with patch('mlflow.set_tracking_uri'), patch('mlflow.set_experiment'), \
            patch('mlflow.create_experiment', return_value="1"):
        tracker = setup_experiment_tracking(TRACKING_CONFIG)
        assert isinstance(tracker, ExperimentTracker)

    assert setup_experiment_tracking({'enabled': False}) is None
    assert setup_experiment_tracking({}) is None


if __name__ == "__main__":
    pytest.main([__file__])
