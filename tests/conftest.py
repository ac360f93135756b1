"""Test configuration and fixtures."""

import pytest
import pandas as pd
import numpy as np
import tempfile
from pathlib import Path

from hrt_cvd.config import PipelineConfig
from hrt_cvd.data_generation.generate_biobank_data import BiobankExtractGenerator


@pytest.fixture
def sample_config():
    """Small, fast configuration for testing."""
    return PipelineConfig(
        imputation_draws=2,
        imputation_iterations=2,
        imputation_trees=5,
    )


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture(scope="session")
def synthetic_extract():
    """Synthetic raw extract and BMI table (600 participants)."""
    generator = BiobankExtractGenerator(seed=42)
    return generator.generate_dataset(num_participants=600)


@pytest.fixture
def raw_extract(synthetic_extract):
    return synthetic_extract[0].copy()


@pytest.fixture
def bmi_table(synthetic_extract):
    return synthetic_extract[1].copy()


@pytest.fixture
def tiny_raw_extract():
    """Three participants in raw extract naming; the second is pregnant."""
    return pd.DataFrame({
        'eid': [1, 2, 3],
        'sex.0.0': [0, 0, 0],
        'pregnant.0.0': [0, 1, 0],
        'menopause_status.0.0': [1, 1, 2],
        'age_at_recruitment.0.0': [55, 52, 61],
        'systolic_blood_pressure.0.0': [120, 135, 140],
        'systolic_blood_pressure.0.1': [122, 131, 138],
        'cancer_code.0.0': [np.nan, 1002, np.nan],
        'number_in_household.0.0': [2, 3, 1],
    })


@pytest.fixture
def derivation_input():
    """Eligible cohort rows with the raw exposure and outcome fields."""
    return pd.DataFrame({
        'eid': [11, 12, 13, 14, 15],
        'hrt_within_5yrs': [1, 1, 1, 0, 1],
        'first_hrt_prescription': ['2015-01-01', None, '2008-06-01', None, '2005-02-01'],
        'last_hrt_prescription': ['2016-01-01', None, '2009-06-01', None, '2006-02-01'],
        'date_recr': ['2014-01-01', '2009-03-01', '2009-05-01', '2008-01-01', '2007-07-07'],
        'date_diagnosis': [None, None, '2012-01-01', '2005-01-01', None],
        'age_at_menopause': [49, 38, 52, np.nan, 60],
        'menopause_status': [1, 1, 1, 2, 1],
        'age_at_recruitment': [60, 45, 58, 50, 66],
        'incident_case': [0, 0, 1, 1, 0],
        'prevalent_case': [0, 0, 0, 1, np.nan],
    })


@pytest.fixture
def derivation_bmi():
    return pd.DataFrame({
        'eid': [11, 12, 13, 15],
        'bmi_0_0': [18.5, 25.0, 31.2, np.nan],
    })


@pytest.fixture
def imputation_table():
    """Training-like table with gaps in numeric and categorical columns."""
    rng = np.random.RandomState(7)
    n = 120
    age = rng.uniform(40, 70, size=n)
    sbp = 100 + 0.8 * age + rng.normal(0, 8, size=n)
    chol = rng.normal(5.5, 1.0, size=n)
    smoking = rng.choice(['never', 'former', 'current'], size=n)
    df = pd.DataFrame({
        'eid': np.arange(1, n + 1),
        'age_at_recruitment': age,
        'systolic_blood_pressure': sbp,
        'cholesterol': chol,
        'smoking': pd.Series(smoking, dtype=object),
        'cvd_binary': rng.choice([0, 1], size=n, p=[0.85, 0.15]),
        'exposure_hrt_status': rng.choice([0, 1], size=n),
    })
    df.loc[rng.random_sample(n) < 0.15, 'systolic_blood_pressure'] = np.nan
    df.loc[rng.random_sample(n) < 0.10, 'cholesterol'] = np.nan
    df.loc[rng.random_sample(n) < 0.10, 'smoking'] = None
    return df
