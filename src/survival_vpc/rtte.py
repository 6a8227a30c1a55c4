"""Repeated time-to-event (RTTE) preprocessing.

Converts a per-subject chronological series of events into RTTE form:
an occurrence index per record (1 for the first, 2 for the second, ...)
and, optionally, times relative to the previous event of the same subject.
"""
from __future__ import annotations
import re
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

RTTE_COL = "rtte"
_RTTE_PATTERN = re.compile(r"(?:^|, )rtte=(\d+)")


def _chronological(df: pd.DataFrame, group_cols: Sequence[str]) -> pd.DataFrame:
    return df.sort_values(list(group_cols) + ["time"], kind="mergesort")


def add_event_index(df: pd.DataFrame, group_cols: Sequence[str] = ("id",)) -> pd.DataFrame:
    """Number each subject's records 1..n in chronological order.

    The index counts records, not events: a terminal censoring record gets
    the next index after the subject's last event.

    Args:
        df: Table with a unique index, a 'time' column and the group columns
        group_cols: Columns identifying a subject, e.g. ("sim", "id")

    Returns:
        Copy of df with an integer 'rtte' column

    Example:
        >>> df = pd.DataFrame({"id": [1, 1, 1], "time": [2.0, 5.0, 9.0], "dv": [1, 1, 1]})
        >>> add_event_index(df)["rtte"].tolist()
        [1, 2, 3]
    """
    ordered = _chronological(df, group_cols)
    index = ordered.groupby(list(group_cols), sort=False).cumcount() + 1
    out = df.copy()
    out[RTTE_COL] = index.reindex(df.index).astype(int)
    return out


def relative_times(df: pd.DataFrame, group_cols: Sequence[str] = ("id",)) -> pd.DataFrame:
    """Express time as time since the subject's previous record.

    The first record of each subject keeps its absolute time.

    Example:
        >>> df = pd.DataFrame({"id": [1, 1, 1], "time": [2.0, 5.0, 9.0]})
        >>> relative_times(df)["time"].tolist()
        [2.0, 3.0, 4.0]
    """
    ordered = _chronological(df, group_cols)
    delta = ordered.groupby(list(group_cols), sort=False)["time"].diff()
    delta = delta.fillna(ordered["time"])
    out = df.copy()
    out["time"] = delta.reindex(df.index).to_numpy(dtype=float)
    return out


def prepare_rtte(
    df: pd.DataFrame,
    group_cols: Sequence[str] = ("id",),
    calc_diff: bool = True
) -> pd.DataFrame:
    """Add the occurrence index and, if requested, relative times."""
    out = add_event_index(df, group_cols)
    if calc_diff:
        out = relative_times(out, group_cols)
    return out


def extract_event_index(labels: Iterable[str]) -> np.ndarray:
    """Parse the occurrence index out of composite stratum labels.

    Example:
        >>> extract_event_index(["drug=1, rtte=2", "drug=2, rtte=10"]).tolist()
        [2, 10]
    """
    out = []
    for label in labels:
        match = _RTTE_PATTERN.search(str(label))
        if match is None:
            raise ValueError(f"Stratum label '{label}' has no rtte component")
        out.append(int(match.group(1)))
    return np.asarray(out, dtype=int)


def filter_events(table: pd.DataFrame, events: Iterable[int] | None) -> pd.DataFrame:
    """Keep only the requested occurrence indices.

    The 'strat' categories are re-tightened to the remaining labels, in
    order of first appearance, so no empty strata are carried downstream.
    """
    if events is None or table is None or table.empty:
        return table
    keep = table[RTTE_COL].isin(list(events))
    out = table.loc[keep].copy()
    if "strat" in out.columns:
        labels = out["strat"].astype(str)
        out["strat"] = pd.Categorical(labels, categories=pd.unique(labels))
    return out.reset_index(drop=True)
