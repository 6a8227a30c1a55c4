"""Stratum labelling for time-to-event VPCs.

Combines up to two user stratification variables (plus the RTTE occurrence
index) into one composite categorical label per record, and summarizes
the records in each stratum.

Functions:
    check_stratification_columns: Fail fast on missing stratification columns
    add_stratification: Add the composite 'strat' label to a table
    split_stratum_labels: Split composite labels back into their parts
    compute_strata_summary: Counts of subjects, events and censorings per stratum
"""
from __future__ import annotations
from typing import List, Sequence

import numpy as np
import pandas as pd

from survival_vpc.exceptions import ColumnNotFoundError

SINGLE_STRATUM = "all"
SEPARATOR = ", "


def check_stratification_columns(
    df: pd.DataFrame,
    columns: Sequence[str],
    dataset: str
) -> None:
    """Check that every stratification column exists in a dataset.

    Raises:
        ColumnNotFoundError: Naming the first missing column and the dataset
    """
    if df is None:
        return
    for col in columns:
        if col not in df.columns:
            raise ColumnNotFoundError(
                col,
                dataset,
                message=f"Stratification column '{col}' not found in {dataset} data.",
            )


def _format_value(value) -> str:
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


def stratum_labels(df: pd.DataFrame, stratify: Sequence[str]) -> pd.Series:
    """Build composite labels like "sex=1, drug=2" without modifying df.

    A variable named 'strat' is read from the 'strat_orig' copy when present.

    Returns:
        Categorical Series named 'strat' whose categories follow first appearance

    Example:
        >>> df = pd.DataFrame({"sex": ["M", "F"], "drug": [1, 2]})
        >>> stratum_labels(df, ["sex", "drug"]).tolist()
        ['sex=M, drug=1', 'sex=F, drug=2']
    """
    if not stratify:
        labels = pd.Series(SINGLE_STRATUM, index=df.index)
    else:
        parts: List[pd.Series] = []
        for var in stratify:
            source = "strat_orig" if var == "strat" and "strat_orig" in df.columns else var
            parts.append(var + "=" + df[source].map(_format_value))
        labels = parts[0]
        for part in parts[1:]:
            labels = labels + SEPARATOR + part

    return pd.Series(
        pd.Categorical(labels, categories=pd.unique(labels)),
        index=df.index,
        name="strat",
    )


def add_stratification(df: pd.DataFrame, stratify: Sequence[str]) -> pd.DataFrame:
    """Return a copy of df with the composite 'strat' column.

    Args:
        df: Canonical event table
        stratify: Stratification variables, RTTE 'rtte' factor last if used

    Returns:
        New DataFrame; df itself is unchanged
    """
    out = df.copy()
    out["strat"] = stratum_labels(df, list(stratify))
    return out


def split_stratum_labels(labels: pd.Series, n_parts: int = 2) -> pd.DataFrame:
    """Split composite labels into strat1..strat{n_parts} columns.

    Example:
        >>> split_stratum_labels(pd.Series(["sex=M, drug=1"])).iloc[0].tolist()
        ['sex=M', 'drug=1']
    """
    if n_parts == 1:
        return pd.DataFrame({"strat1": labels.astype(str)}, index=labels.index)
    split = labels.astype(str).str.split(SEPARATOR, n=n_parts - 1, expand=True)
    split = split.reindex(columns=range(n_parts))
    split.columns = [f"strat{i + 1}" for i in range(n_parts)]
    split.index = labels.index
    return split


def compute_strata_summary(df: pd.DataFrame, subject_cols: Sequence[str] = ("id",)) -> pd.DataFrame:
    """Compute descriptive statistics by stratum.

    Args:
        df: Stratified canonical table (columns strat, time, dv and subject_cols)
        subject_cols: Columns identifying a subject, e.g. ("sim", "id")

    Returns:
        DataFrame with columns:
        - strat: Composite stratum label
        - n_records: Number of records in stratum
        - n_subjects: Number of distinct subjects
        - n_events: Number of events
        - n_censored: Number of censoring records
        - event_rate: Proportion of records that are events
        - min_time, max_time: Observed time range

    Example:
        >>> summary = compute_strata_summary(obs)
        >>> summary[["strat", "n_subjects", "event_rate"]]
    """
    work = df.copy()
    work["_subject"] = work[list(subject_cols)].astype(str).agg("_".join, axis=1)

    summary = work.groupby("strat", observed=True, sort=True).agg(
        n_records=("dv", "count"),
        n_subjects=("_subject", "nunique"),
        n_events=("dv", "sum"),
        min_time=("time", "min"),
        max_time=("time", "max"),
    ).reset_index()

    summary["n_events"] = summary["n_events"].astype(int)
    summary["n_censored"] = summary["n_records"] - summary["n_events"]
    summary["event_rate"] = summary["n_events"] / summary["n_records"]

    cols_order = [
        "strat", "n_records", "n_subjects", "n_events", "n_censored",
        "event_rate", "min_time", "max_time",
    ]
    return summary[cols_order]
