"""
Shared preprocessing transformers: initial missing-value fill, covariate
scaling and data-quality validation.
"""

import pandas as pd
import numpy as np
import logging
import time
from typing import Dict, List, Optional
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.preprocessing import StandardScaler, MinMaxScaler
from sklearn.impute import SimpleImputer
from sklearn.utils.validation import check_is_fitted

logger = logging.getLogger(__name__)

class MissingValueHandler(BaseEstimator, TransformerMixin):
    """Fill missing values from training statistics, per feature type.

    Used as the starting point of chained imputation: every column gets a
    provisional value (median for numeric, most frequent for categorical
    codes) before the conditional models refine it.
    """

    def __init__(self,
                 numeric_strategy: str = 'median',
                 categorical_strategy: str = 'most_frequent',
                 categorical_features: Optional[List[str]] = None):
        """
        Initialize missing value handler.

        Args:
            numeric_strategy: Strategy for numeric features ('mean', 'median')
            categorical_strategy: Strategy for categorical features ('most_frequent', 'constant')
            categorical_features: Columns to treat as categorical even when their
                dtype is numeric (e.g. integer-coded categories)
        """
        self.numeric_strategy = numeric_strategy
        self.categorical_strategy = categorical_strategy
        self.categorical_features = categorical_features
        self.numeric_imputer_ = None
        self.categorical_imputer_ = None
        self.numeric_features_ = []
        self.categorical_features_ = []

    def fit(self, X: pd.DataFrame, y=None):
        """Fit the missing value handler."""
        start_time = time.time()

        if self.categorical_features is not None:
            self.categorical_features_ = [col for col in X.columns if col in self.categorical_features]
        else:
            self.categorical_features_ = [col for col in X.columns
                                          if not pd.api.types.is_numeric_dtype(X[col])]
        self.numeric_features_ = [col for col in X.columns if col not in self.categorical_features_]

        if self.numeric_features_:
            self.numeric_imputer_ = SimpleImputer(strategy=self.numeric_strategy,
                                                  keep_empty_features=True)
            self.numeric_imputer_.fit(X[self.numeric_features_].astype(float))

        if self.categorical_features_:
            self.categorical_imputer_ = SimpleImputer(strategy=self.categorical_strategy,
                                                      keep_empty_features=True)
            X_cat_copy = X[self.categorical_features_].astype(object)
            X_cat_copy = X_cat_copy.where(X_cat_copy.notna(), np.nan)
            self.categorical_imputer_.fit(X_cat_copy)

        elapsed_time = time.time() - start_time
        logger.debug(f"Fitted missing value handler for {len(self.numeric_features_)} numeric "
                     f"and {len(self.categorical_features_)} categorical features in {elapsed_time:.2f} seconds")
        return self

    def fill_values(self) -> Dict[str, object]:
        """Return the fitted fill value per column."""
        values = {}
        if self.numeric_imputer_ is not None:
            values.update(zip(self.numeric_features_, self.numeric_imputer_.statistics_))
        if self.categorical_imputer_ is not None:
            values.update(zip(self.categorical_features_, self.categorical_imputer_.statistics_))
        return values

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Return a copy of X with missing values replaced by the fitted statistics."""
        X_transformed = X.copy()

        if self.numeric_features_ and self.numeric_imputer_:
            X_transformed[self.numeric_features_] = self.numeric_imputer_.transform(
                X_transformed[self.numeric_features_].astype(float))

        if self.categorical_features_ and self.categorical_imputer_:
            X_cat = X_transformed[self.categorical_features_].astype(object)
            X_cat = X_cat.where(X_cat.notna(), np.nan)
            X_transformed[self.categorical_features_] = self.categorical_imputer_.transform(X_cat)

        return X_transformed

class DataValidator:
    """Data-quality rules for the cohort table.

    Rules are reported, not enforced: ``validate`` returns the violations per
    column and leaves the table untouched.
    """

    RULE_TYPES = ('range', 'categorical', 'missing_rate')

    def __init__(self):
        self.validation_rules: Dict[str, List[Dict]] = {}

    def add_rule(self, feature: str, rule_type: str, **kwargs):
        """Add validation rule for a feature."""
        if rule_type not in self.RULE_TYPES:
            raise ValueError(f"Unknown rule type: {rule_type}")
        self.validation_rules.setdefault(feature, []).append({'type': rule_type, 'params': kwargs})

    def validate(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """Violations per column; columns absent from df are skipped."""
        violations = {}
        for feature, rules in self.validation_rules.items():
            if feature not in df.columns:
                continue
            messages = []
            for rule in rules:
                check = getattr(self, f"_check_{rule['type']}")
                messages.extend(check(df[feature], **rule['params']))
            if messages:
                violations[feature] = messages
        return violations

    @staticmethod
    def _check_range(values: pd.Series, min=None, max=None) -> List[str]:
        values = pd.to_numeric(values, errors='coerce')
        messages = []
        if min is not None:
            below = int((values < min).sum())
            if below:
                messages.append(f"{below} values below minimum {min}")
        if max is not None:
            above = int((values > max).sum())
            if above:
                messages.append(f"{above} values above maximum {max}")
        return messages

    @staticmethod
    def _check_categorical(values: pd.Series, allowed_values=()) -> List[str]:
        # missing values are the missing_rate rule's concern
        invalid = int((~values.dropna().isin(list(allowed_values))).sum())
        return [f"{invalid} invalid categorical values"] if invalid else []

    @staticmethod
    def _check_missing_rate(values: pd.Series, max_rate=0.1) -> List[str]:
        rate = values.isnull().mean()
        return [f"Missing rate {rate:.2%} exceeds {max_rate:.2%}"] if rate > max_rate else []

    def setup_biobank_rules(self):
        """Plausibility rules for the derived biobank cohort."""
        # UK Biobank recruited participants aged 37-73
        self.add_rule('age_at_recruitment', 'range', min=37, max=75)
        self.add_rule('age_at_menopause', 'range', min=15, max=70)
        self.add_rule('bmi', 'range', min=12, max=75)
        self.add_rule('systolic_blood_pressure', 'range', min=60, max=270)
        self.add_rule('diastolic_blood_pressure', 'range', min=30, max=160)

        self.add_rule('cvd_binary', 'categorical', allowed_values=[0, 1])
        self.add_rule('exposure_hrt_status', 'categorical', allowed_values=[0, 1])
        # Data-field 2724: no / yes / hysterectomy / other reason
        self.add_rule('menopause_status', 'categorical', allowed_values=[0, 1, 2, 3])

        for feature in ['eid', 'age_at_recruitment', 'menopause_status']:
            self.add_rule(feature, 'missing_rate', max_rate=0.0)
        self.add_rule('bmi', 'missing_rate', max_rate=0.1)


class DataScaler(BaseEstimator, TransformerMixin):
    """Scale the numeric columns of a design matrix.

    Columns named in ``passthrough`` (e.g. one-hot indicators) are left on
    their original scale.
    """

    SCALERS = {'standard': StandardScaler, 'minmax': MinMaxScaler}

    def __init__(self, method: str = 'standard', passthrough: Optional[List[str]] = None):
        self.method = method
        self.passthrough = passthrough

    def fit(self, X: pd.DataFrame, y=None):
        if self.method not in self.SCALERS:
            raise ValueError(f"Unknown scaling method: {self.method}")
        skip = set(self.passthrough or [])
        self.numeric_features_ = [col for col in X.select_dtypes(include=[np.number]).columns
                                  if col not in skip]
        self.scaler_ = self.SCALERS[self.method]()
        if self.numeric_features_:
            self.scaler_.fit(X[self.numeric_features_])
        logger.debug(f"Fitted {self.method} scaler for {len(self.numeric_features_)} columns")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        check_is_fitted(self, 'scaler_')
        X_transformed = X.copy()
        if self.numeric_features_:
            X_transformed[self.numeric_features_] = self.scaler_.transform(X[self.numeric_features_])
        return X_transformed
