"""
Cohort matching.

Greedy 1:k nearest-neighbour matching without replacement on a logistic
propensity score estimated from the matching covariates. The scarcer exposure
group is the index group; each index unit receives up to ``k`` controls.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression

from ..config import PipelineConfig
from ..exceptions import CohortPipelineError
from .filtering import require_columns
from .preprocessing import DataScaler

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Matched cohort plus everything needed to audit the matching."""
    matched: pd.DataFrame
    pairs: pd.DataFrame
    propensity_model: LogisticRegression
    scaler: DataScaler
    design_columns: List[str]
    index_value: int
    n_index: int
    n_unmatched: int
    n_filled_covariates: int
    balance: pd.DataFrame = field(default_factory=pd.DataFrame)

    def match_sets(self, id_column: str = "eid") -> pd.Series:
        """Matched-set number for every retained participant."""
        index_units = self.pairs[["match_set", "index_id"]].drop_duplicates()
        index_units = index_units.rename(columns={"index_id": id_column})
        controls = self.pairs[["match_set", "control_id"]].rename(columns={"control_id": id_column})
        sets = pd.concat([index_units, controls], ignore_index=True)
        return sets.set_index(id_column)["match_set"]

    def summary(self) -> Dict[str, int]:
        return {
            "index_group": int(self.index_value),
            "index_units": int(self.n_index),
            "matched_index_units": int(self.n_index - self.n_unmatched),
            "unmatched_index_units": int(self.n_unmatched),
            "matched_controls": int(len(self.pairs)),
            "matched_rows": int(len(self.matched)),
        }


def build_covariate_matrix(df: pd.DataFrame, config: PipelineConfig) -> Tuple[pd.DataFrame, int]:
    """Numeric covariates plus one-hot categorical covariates, gaps filled for scoring only."""
    covariates = df[config.matching_covariates]
    categorical = [col for col in covariates.columns
                   if col in config.categorical_matching_covariates
                   or not pd.api.types.is_numeric_dtype(covariates[col])]
    numeric = [col for col in covariates.columns if col not in categorical]

    n_filled = int(covariates.isna().sum().sum())

    X_num = covariates[numeric].apply(pd.to_numeric, errors="coerce")
    X_num = X_num.fillna(X_num.median()).fillna(0.0)

    X_cat = covariates[categorical].astype(object)
    for col in categorical:
        mode = X_cat[col].mode(dropna=True)
        if not mode.empty:
            X_cat[col] = X_cat[col].where(X_cat[col].notna(), mode.iloc[0])
    X_cat = X_cat.astype(str)
    dummies = pd.get_dummies(X_cat, columns=categorical, dtype=float)

    X = pd.concat([X_num.astype(float), dummies], axis=1)
    return X, n_filled


def standardized_mean_differences(X: pd.DataFrame, treated: np.ndarray) -> pd.Series:
    """SMD of every design column between the index group and controls."""
    smd = {}
    for col in X.columns:
        a = X.loc[treated, col]
        b = X.loc[~treated, col]
        if len(a) < 2 or len(b) < 2:
            smd[col] = np.nan
            continue
        den = np.sqrt((a.var(ddof=1) + b.var(ddof=1)) / 2.0)
        smd[col] = float((a.mean() - b.mean()) / den) if den > 0 else 0.0
    return pd.Series(smd)


def greedy_nearest_neighbours(scores: np.ndarray, is_index: np.ndarray, ratio: int,
                              caliper: Optional[float] = None) -> List[Tuple[int, int, float, int]]:
    """Assign controls to index units without replacement.

    Index units are visited in descending score order (stable on row position)
    once per round; each takes the nearest still-available control, ties going
    to the lowest row position. Returns (index_pos, control_pos, distance, round).
    """
    index_pos = np.flatnonzero(is_index)
    control_pos = np.flatnonzero(~is_index)
    order = index_pos[np.argsort(-scores[index_pos], kind="stable")]
    available = np.ones(len(control_pos), dtype=bool)
    n_assigned = {int(i): 0 for i in order}

    assignments = []
    for round_no in range(1, ratio + 1):
        for i in order:
            if round_no > 1 and n_assigned[int(i)] == 0:
                continue
            candidates = np.flatnonzero(available)
            if candidates.size == 0:
                return assignments
            distances = np.abs(scores[control_pos[candidates]] - scores[i])
            if caliper is not None:
                within = distances <= caliper
                if not within.any():
                    continue
                candidates = candidates[within]
                distances = distances[within]
            best = int(np.argmin(distances))
            chosen = candidates[best]
            available[chosen] = False
            n_assigned[int(i)] += 1
            assignments.append((int(i), int(control_pos[chosen]), float(distances[best]), round_no))
    return assignments


def match_cohort(df: pd.DataFrame, config: PipelineConfig) -> MatchResult:
    """Match the scarcer exposure group 1:k to the other on propensity score.

    Index units with no eligible control are dropped and counted in
    ``n_unmatched``; this is not an error.
    """
    start_time = time.time()
    id_col = config.id_column
    exposure_col = config.exposure_column
    require_columns(df, [id_col, exposure_col] + list(config.matching_covariates), "cohort matcher")

    table = df.reset_index(drop=True)
    exposure = pd.to_numeric(table[exposure_col], errors="coerce")
    n_exposed = int((exposure == 1).sum())
    n_unexposed = int((exposure == 0).sum())
    if n_exposed == 0 or n_unexposed == 0:
        raise CohortPipelineError(
            f"Matching needs both exposure groups (exposed={n_exposed}, unexposed={n_unexposed})"
        )
    index_value = 1 if n_exposed <= n_unexposed else 0
    logger.info(f"Matching {min(n_exposed, n_unexposed)} index units "
                f"(exposure={index_value}) 1:{config.matching_ratio} "
                f"against {max(n_exposed, n_unexposed)} candidates")

    X, n_filled = build_covariate_matrix(table, config)
    if n_filled:
        logger.info(f"Filled {n_filled} missing covariate values for propensity scoring only")

    indicators = [col for col in X.columns if col not in config.matching_covariates]
    scaler = DataScaler(method="standard", passthrough=indicators).fit(X)
    X_scaled = scaler.transform(X)
    model = LogisticRegression(max_iter=1000, random_state=config.random_seed)
    model.fit(X_scaled.to_numpy(), (exposure == 1).astype(int).to_numpy())
    scores = model.predict_proba(X_scaled.to_numpy())[:, 1]

    caliper = None
    if config.matching_caliper is not None:
        caliper = float(config.matching_caliper) * float(np.std(scores, ddof=1))

    is_index = (exposure == index_value).to_numpy()
    assignments = greedy_nearest_neighbours(scores, is_index, config.matching_ratio, caliper)

    matched_index_order = list(dict.fromkeys(a[0] for a in assignments))
    set_ids = {pos: n for n, pos in enumerate(matched_index_order, start=1)}
    ids = table[id_col].to_numpy()
    pairs = pd.DataFrame(
        [{
            "match_set": set_ids[i],
            "index_id": ids[i],
            "control_id": ids[j],
            "index_score": float(scores[i]),
            "control_score": float(scores[j]),
            "distance": d,
            "round": r,
        } for i, j, d, r in assignments],
        columns=["match_set", "index_id", "control_id", "index_score",
                 "control_score", "distance", "round"],
    ).sort_values(["match_set", "round"], kind="stable").reset_index(drop=True)

    keep = np.zeros(len(table), dtype=bool)
    for i, j, _, _ in assignments:
        keep[i] = True
        keep[j] = True
    matched = table.loc[keep].reset_index(drop=True)

    n_index = int(is_index.sum())
    n_unmatched = n_index - len(matched_index_order)
    if n_unmatched:
        logger.info(f"{n_unmatched} index units had no eligible control and were dropped")

    balance = pd.DataFrame({
        "smd_before": standardized_mean_differences(X, is_index),
        "smd_after": standardized_mean_differences(X.loc[keep].reset_index(drop=True), is_index[keep]),
    })

    elapsed_time = time.time() - start_time
    logger.info(f"Matched cohort has {len(matched)} rows "
                f"({len(matched_index_order)} index units, {len(pairs)} controls) "
                f"in {elapsed_time:.2f} seconds")
    return MatchResult(
        matched=matched,
        pairs=pairs,
        propensity_model=model,
        scaler=scaler,
        design_columns=list(X.columns),
        index_value=index_value,
        n_index=n_index,
        n_unmatched=n_unmatched,
        n_filled_covariates=n_filled,
        balance=balance,
    )
