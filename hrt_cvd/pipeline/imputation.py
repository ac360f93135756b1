"""
Multiple imputation by chained equations with random-forest conditional
models.

Imputation is two-phase. ``fit_imputer`` runs the chained equations on the
training partition only and keeps the fitted conditional models;
``apply_imputer`` replays those models on another table without refitting
anything. Imputed values are donor values: observed training values sharing a
leaf with the incomplete row in a randomly chosen tree.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.utils.validation import check_is_fitted
from tqdm import tqdm

from ..config import PipelineConfig
from ..exceptions import AlignmentError, SchemaError
from .filtering import require_columns
from .preprocessing import MissingValueHandler

logger = logging.getLogger(__name__)

Forest = Union[RandomForestRegressor, RandomForestClassifier]


@dataclass
class ConditionalModel:
    """Random forest predicting one column from the others, with its donor pool."""
    column: str
    predictors: List[str]
    estimator: Forest
    leaf_ids: np.ndarray
    donor_values: np.ndarray

    @classmethod
    def fit(cls, column: str, predictors: List[str], X: np.ndarray, y: np.ndarray,
            categorical: bool, n_estimators: int, random_state: int) -> "ConditionalModel":
        forest_cls = RandomForestClassifier if categorical else RandomForestRegressor
        estimator = forest_cls(n_estimators=n_estimators, random_state=random_state, n_jobs=1)
        estimator.fit(X, y)

        # per tree: observed rows sorted by leaf, for range lookups at draw time
        leaves = estimator.apply(X)
        order = np.argsort(leaves, axis=0, kind="stable")
        leaf_ids = np.take_along_axis(leaves, order, axis=0).T
        donor_values = y[order].T
        return cls(column=column, predictors=list(predictors), estimator=estimator,
                   leaf_ids=leaf_ids, donor_values=donor_values)

    def draw(self, X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """One donor value per row of X."""
        leaves = self.estimator.apply(X)
        n_rows, n_trees = leaves.shape
        trees = rng.integers(n_trees, size=n_rows)
        u = rng.random(n_rows)
        out = np.empty(n_rows, dtype=float)
        empty = np.zeros(n_rows, dtype=bool)

        for t in np.unique(trees):
            rows = np.flatnonzero(trees == t)
            sorted_leaves = self.leaf_ids[t]
            lo = np.searchsorted(sorted_leaves, leaves[rows, t], side="left")
            hi = np.searchsorted(sorted_leaves, leaves[rows, t], side="right")
            size = hi - lo
            has_donor = size > 0
            pick = lo[has_donor] + np.floor(u[rows[has_donor]] * size[has_donor]).astype(int)
            out[rows[has_donor]] = self.donor_values[t, pick]
            empty[rows[~has_donor]] = True

        if empty.any():
            out[empty] = self.estimator.predict(X[empty])
        return out


class ChainedRandomForestImputer(BaseEstimator, TransformerMixin):
    """Chained-equations imputer with random-forest conditional models.

    Categorical columns are coded against the categories seen in training.
    After an initial median / most-frequent fill, every column with missing
    training values is re-imputed ``max_iter`` times from all other non-id
    columns. The last pass's models are kept and replayed by ``transform``.
    """

    def __init__(self,
                 max_iter: int = 5,
                 n_estimators: int = 10,
                 random_state: Optional[int] = None,
                 id_column: str = "eid",
                 numeric_strategy: str = "median"):
        self.max_iter = max_iter
        self.n_estimators = n_estimators
        self.random_state = random_state
        self.id_column = id_column
        self.numeric_strategy = numeric_strategy

    def fit(self, X: pd.DataFrame, y=None):
        self.fit_transform(X)
        return self

    def fit_transform(self, X: pd.DataFrame, y=None) -> pd.DataFrame:
        """Fit the conditional models on X and return the completed X."""
        start_time = time.time()
        self._check_input(X)

        self.columns_ = list(X.columns)
        self.feature_columns_ = [col for col in X.columns if col != self.id_column]
        self.categorical_columns_ = [col for col in self.feature_columns_
                                     if not pd.api.types.is_numeric_dtype(X[col])]
        self.categories_ = {col: sorted(pd.unique(X[col].dropna()), key=str)
                            for col in self.categorical_columns_}

        empty = [col for col in self.feature_columns_ if X[col].isna().all()]
        if empty:
            raise SchemaError(f"Columns with no observed training values cannot be imputed: {empty}")

        encoded = self._encode(X)
        missing = encoded.isna()
        self.n_missing_ = {col: int(missing[col].sum())
                           for col in self.feature_columns_ if missing[col].any()}

        self.fill_handler_ = MissingValueHandler(
            numeric_strategy=self.numeric_strategy,
            categorical_features=self.categorical_columns_,
        ).fit(encoded)
        filled = self.fill_handler_.transform(encoded).astype(float)

        self.visit_sequence_ = [col for col in self.feature_columns_
                                if missing[col].any() and (~missing[col]).any()
                                and len(self.feature_columns_) > 1]
        for col in self.n_missing_:
            if col not in self.visit_sequence_:
                logger.warning(f"Column {col!r} cannot be modelled; keeping its fill value")

        rng = np.random.default_rng(self.random_state)
        self.models_: Dict[str, ConditionalModel] = {}
        for iteration in range(self.max_iter):
            for col in self.visit_sequence_:
                predictors = [c for c in self.feature_columns_ if c != col]
                observed = ~missing[col].to_numpy()
                model = ConditionalModel.fit(
                    col, predictors,
                    filled.loc[observed, predictors].to_numpy(),
                    filled.loc[observed, col].to_numpy(),
                    categorical=col in self.categorical_columns_,
                    n_estimators=self.n_estimators,
                    random_state=int(rng.integers(2**31 - 1)),
                )
                filled.loc[~observed, col] = model.draw(filled.loc[~observed, predictors].to_numpy(), rng)
                self.models_[col] = model
            logger.debug(f"Chained imputation pass {iteration + 1}/{self.max_iter} done")

        elapsed_time = time.time() - start_time
        logger.info(f"Fitted {len(self.models_)} conditional models over {self.max_iter} passes "
                    f"in {elapsed_time:.2f} seconds")
        return self._decode(filled, X, missing)

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Impute X with the fitted models; nothing is refitted."""
        check_is_fitted(self, "models_")
        self._check_input(X)
        X = align_columns(X, self.columns_)

        encoded = self._encode(X)
        missing = encoded.isna()
        filled = self.fill_handler_.transform(encoded).astype(float)

        rng = np.random.default_rng(self.random_state)
        for col in self.visit_sequence_:
            rows = missing[col].to_numpy()
            if rows.any():
                model = self.models_[col]
                filled.loc[rows, col] = model.draw(filled.loc[rows, model.predictors].to_numpy(), rng)

        unmodelled = [col for col in self.feature_columns_
                      if missing[col].any() and col not in self.models_]
        if unmodelled:
            logger.warning(f"No conditional model for {unmodelled}; using training fill values")
        return self._decode(filled, X, missing)

    def _check_input(self, X: pd.DataFrame) -> None:
        require_columns(X, [self.id_column], "imputer")
        dates = [col for col in X.columns if pd.api.types.is_datetime64_any_dtype(X[col])]
        if dates:
            raise SchemaError(f"Date columns must be quarantined before imputation: {dates}")

    def _encode(self, X: pd.DataFrame) -> pd.DataFrame:
        encoded = {}
        for col in self.feature_columns_:
            if col in self.categorical_columns_:
                known = X[col].isin(self.categories_[col])
                unseen = int((~known & X[col].notna()).sum())
                codes = pd.Categorical(X[col].where(known), categories=self.categories_[col]).codes
                if unseen:
                    logger.warning(f"{unseen} unseen categories in {col!r} treated as missing")
                encoded[col] = np.where(codes == -1, np.nan, codes).astype(float)
            else:
                encoded[col] = pd.to_numeric(X[col], errors="coerce").astype(float).to_numpy()
        return pd.DataFrame(encoded, index=X.index, columns=self.feature_columns_)

    def _decode(self, filled: pd.DataFrame, X: pd.DataFrame, missing: pd.DataFrame) -> pd.DataFrame:
        out = X.copy()
        for col in self.feature_columns_:
            rows = missing[col].to_numpy()
            if not rows.any():
                continue
            values = filled.loc[rows, col].to_numpy()
            if col in self.categorical_columns_:
                categories = np.asarray(self.categories_[col], dtype=object)
                values = categories[np.rint(values).astype(int)]
                if isinstance(out[col].dtype, pd.CategoricalDtype):
                    out[col] = out[col].cat.set_categories(
                        out[col].cat.categories.union(pd.Index(self.categories_[col]), sort=False))
                elif out[col].dtype != object:
                    out[col] = out[col].astype(object)
            elif not pd.api.types.is_float_dtype(out[col]):
                out[col] = pd.to_numeric(out[col], errors="coerce").astype(float)
            out.loc[rows, col] = values
        return out


@dataclass
class FittedImputer:
    """Training-only imputation state: the fitted draws and their completed tables."""
    columns: List[str]
    id_column: str
    draws: List[ChainedRandomForestImputer]
    completed: List[pd.DataFrame] = field(default_factory=list)
    canonical_draw: int = 0

    @property
    def model(self) -> ChainedRandomForestImputer:
        return self.draws[self.canonical_draw]

    def complete(self, draw: Optional[int] = None) -> pd.DataFrame:
        """Completed training table for one draw (the canonical one by default)."""
        return self.completed[self.canonical_draw if draw is None else draw].copy()


def align_columns(table: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """Reorder table to the expected columns; any difference is fatal."""
    absent = [col for col in columns if col not in table.columns]
    extra = [col for col in table.columns if col not in columns]
    if absent or extra:
        raise AlignmentError(
            f"Table does not match the imputation model schema (missing: {absent}, unexpected: {extra})"
        )
    return table[list(columns)]


def missingness_summary(df: pd.DataFrame) -> pd.DataFrame:
    """Missing count and percentage for every column with gaps."""
    summary = pd.DataFrame({
        "missing_count": df.isna().sum(),
        "percentage": df.isna().mean() * 100,
    })
    return summary[summary["missing_count"] > 0]


def fit_imputer(train: pd.DataFrame, config: PipelineConfig) -> FittedImputer:
    """Fit ``imputation_draws`` chained imputers on the training table."""
    start_time = time.time()
    require_columns(train, [config.id_column], "imputer")
    summary = missingness_summary(train)
    logger.info(f"Missingness before imputation:\n{summary}")

    draws = []
    completed = []
    for d in tqdm(range(config.imputation_draws), desc="Imputation draws",
                  disable=config.imputation_draws == 1):
        imputer = ChainedRandomForestImputer(
            max_iter=config.imputation_iterations,
            n_estimators=config.imputation_trees,
            random_state=config.imputation_seed + d,
            id_column=config.id_column,
        )
        completed.append(imputer.fit_transform(train))
        draws.append(imputer)

    elapsed_time = time.time() - start_time
    logger.info(f"Fitted {len(draws)} imputation draws on {len(train)} training rows "
                f"in {elapsed_time:.2f} seconds")
    return FittedImputer(
        columns=list(train.columns),
        id_column=config.id_column,
        draws=draws,
        completed=completed,
        canonical_draw=config.canonical_draw,
    )


def apply_imputer(fitted: FittedImputer, table: pd.DataFrame) -> pd.DataFrame:
    """Impute a held-out table with the fitted canonical draw."""
    aligned = align_columns(table, fitted.columns)
    imputed = fitted.model.transform(aligned)
    logger.info(f"Imputed {int(aligned.isna().sum().sum())} cells in {len(aligned)} held-out rows")
    return imputed


def attach_dates(table: pd.DataFrame, dates: pd.DataFrame, id_column: str) -> pd.DataFrame:
    """Left-join the quarantined date side table back onto a table."""
    return table.merge(dates, on=id_column, how="left", validate="one_to_one")
