"""
Integration tests for the cohort preprocessing pipeline.
"""
import pytest
import pandas as pd
import numpy as np
import joblib
import yaml
from unittest.mock import MagicMock, patch

from hrt_cvd.config import PipelineConfig
from hrt_cvd.data_generation.generate_biobank_data import BiobankExtractGenerator
from hrt_cvd.exceptions import AlignmentError, SchemaError
from hrt_cvd.pipeline import cohort_pipeline
from hrt_cvd.pipeline.cohort_pipeline import CohortPipeline

EXPECTED_ARTIFACTS = [
    "matched_dataset.parquet",
    "matched_pairs.parquet",
    "train_dates.parquet",
    "test_dates.parquet",
    "train_imputed.parquet",
    "test_imputed.parquet",
    "train_final.parquet",
    "test_final.parquet",
    "matching_balance.csv",
    "imputer_model.joblib",
    "matching_model.joblib",
    "pipeline_summary.yaml",
    "pipeline_config.yaml",
]


@pytest.fixture
def input_files(temp_directory):
    """Synthetic extract and BMI table written as CSV."""
    generator = BiobankExtractGenerator(seed=42)
    return generator.save(num_participants=600, output_dir=str(temp_directory / "raw"))


def test_pipeline_end_to_end(input_files, temp_directory, sample_config):
    """Test the complete pipeline from CSV files to saved artifacts."""
    data_path, bmi_path = input_files
    output_path = temp_directory / "processed"

    pipeline = CohortPipeline(sample_config)
    result = pipeline.run_pipeline(str(data_path), str(bmi_path), str(output_path))

    for name in EXPECTED_ARTIFACTS:
        assert (output_path / name).exists(), name

    train = pd.read_parquet(output_path / "train_imputed.parquet")
    test = pd.read_parquet(output_path / "test_imputed.parquet")
    assert list(train.columns) == list(test.columns)
    assert not train.isnull().any().any()
    assert not test.isnull().any().any()
    assert not set(train["eid"]) & set(test["eid"])

    for col in sample_config.date_columns:
        assert col not in train.columns
    train_final = pd.read_parquet(output_path / "train_final.parquet")
    assert "date_recr" in train_final.columns
    assert len(train_final) == len(train)

    with open(output_path / "pipeline_summary.yaml", "r") as f:
        summary = yaml.safe_load(f)
    assert summary["rows"]["train"] + summary["rows"]["test"] == summary["rows"]["matched"]
    assert summary["rows"]["matched"] <= summary["rows"]["derived"] <= summary["rows"]["eligible"]
    assert summary["imputation"]["draws"] == 2
    assert summary["exposure_reclassified"]["prescription_after_recruitment"] >= 0
    assert summary["empty_columns_dropped"] == []
    assert summary == result.summary

    saved_config = PipelineConfig.from_yaml(output_path / "pipeline_config.yaml")
    assert saved_config == sample_config

    imputer = joblib.load(output_path / "imputer_model.joblib")
    assert imputer.columns == list(result.partition.train.columns)


def test_pipeline_in_memory(synthetic_extract, sample_config):
    """Running twice on the same inputs gives identical tables."""
    raw, bmi = synthetic_extract
    first = CohortPipeline(sample_config).run(raw, bmi)
    second = CohortPipeline(sample_config).run(raw, bmi)

    pd.testing.assert_frame_equal(first.train_imputed, second.train_imputed)
    pd.testing.assert_frame_equal(first.test_imputed, second.test_imputed)
    assert first.summary["matching"] == second.summary["matching"]


def test_schema_error_writes_nothing(input_files, temp_directory, sample_config):
    """A fatal schema error stops the run before any artifact is written."""
    data_path, bmi_path = input_files
    raw = pd.read_csv(data_path).drop(columns=["pregnant.0.0"])
    broken_path = temp_directory / "broken.csv"
    raw.to_csv(broken_path, index=False)
    output_path = temp_directory / "processed"

    with pytest.raises(SchemaError):
        CohortPipeline(sample_config).run_pipeline(str(broken_path), str(bmi_path), str(output_path))

    assert not output_path.exists()


def test_misaligned_test_partition_writes_nothing(input_files, temp_directory, sample_config):
    """A held-out table missing a modelled column aborts the run."""
    data_path, bmi_path = input_files
    output_path = temp_directory / "processed"
    real_partition = cohort_pipeline.partition_and_redact

    def partition_dropping_column(matched, config):
        result = real_partition(matched, config)
        result.test = result.test.drop(columns=["glucose"])
        return result

    with patch("hrt_cvd.pipeline.cohort_pipeline.partition_and_redact", side_effect=partition_dropping_column):
        with pytest.raises(AlignmentError):
            CohortPipeline(sample_config).run_pipeline(str(data_path), str(bmi_path), str(output_path))

    assert not output_path.exists()


def test_load_data_parquet(temp_directory, sample_config):
    df = pd.DataFrame({"eid": [3.0, 1.0, 2.0], "bmi_0_0": [22.5, np.nan, 30.1]})
    path = temp_directory / "bmi.parquet"
    df.to_parquet(path, index=False)

    loaded = CohortPipeline(sample_config).load_data(path)

    assert loaded["eid"].dtype == "int64"
    assert loaded["eid"].tolist() == [3, 1, 2]
    assert loaded.index.tolist() == [0, 1, 2]


@patch("hrt_cvd.pipeline.cohort_pipeline.setup_experiment_tracking")
def test_pipeline_mlflow_integration(mock_setup, input_files, temp_directory, sample_config):
    """Test that the pipeline reports to the experiment tracker when enabled."""
    tracker = MagicMock()
    mock_setup.return_value = tracker
    data_path, bmi_path = input_files
    output_path = temp_directory / "processed"

    sample_config.tracking = {"enabled": True, "run_name": "test_run"}
    result = CohortPipeline(sample_config).run_pipeline(str(data_path), str(bmi_path), str(output_path))

    mock_setup.assert_called_once_with(sample_config.tracking)
    tracker.start_run.assert_called_once_with()
    tracker.log_config.assert_called_once_with(sample_config)
    tracker.log_pipeline_summary.assert_called_once_with(result.summary)
    tracker.log_table.assert_called_once()
    tracker.log_artifacts.assert_called_once_with(str(output_path))


if __name__ == "__main__":
    pytest.main([__file__])
