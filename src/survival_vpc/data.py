"""Formatting of observed and simulated event tables into canonical form.

Every function here returns a new DataFrame or Series; caller-owned
tables are never modified. The canonical columns produced are:

- id: subject identifier
- time: event or censoring time (float)
- dv: event indicator, 1 = event, 0 = censored
- sim: replicate index, 1-based (simulated data only)
"""
from __future__ import annotations
import logging
import warnings
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from survival_vpc.config import VPCConfig
from survival_vpc.exceptions import ColumnNotFoundError, DataShapeWarning

logger = logging.getLogger(__name__)

OBSERVATION = "observation"
SIMULATION = "simulation"


def coerce_event_indicator(dv: pd.Series) -> pd.Series:
    """Coerce a dependent variable to a 0/1 event indicator.

    Heuristic for event codes outside {0, 1}, kept as the default because
    it matches the encoding of common pharmacometric tools:

    - max(dv) == 2: 2 is the censoring code, every value != 1 becomes 0
    - max(dv) > 2: dv holds event times or counts, every value > 1 becomes 1
    - values strictly between 0 and 1 become 0

    Args:
        dv: Numeric dependent variable

    Returns:
        New Series with values in {0, 1}

    Warns:
        DataShapeWarning: When any value was changed

    Example:
        >>> coerce_event_indicator(pd.Series([0, 1, 2])).tolist()
        [0.0, 1.0, 0.0]
    """
    out = dv.astype(float).copy()
    if len(out) == 0:
        return out

    max_dv = out.max()
    if max_dv > 1:
        if max_dv == 2:
            out[out != 1] = 0.0
            warnings.warn(
                "Expected the dependent variable to contain only 0 (censored, or no event "
                "observed) or 1 (event observed). Treating 2 as censored: setting all "
                "values != 1 to 0.",
                DataShapeWarning,
                stacklevel=2,
            )
        else:
            out[out > 1] = 1.0
            warnings.warn(
                "Expected the dependent variable to contain only 0 (censored, or no event "
                "observed) or 1 (event observed). Setting all values > 1 to 1.",
                DataShapeWarning,
                stacklevel=2,
            )

    fractional = (out > 0) & (out < 1)
    if fractional.any():
        out[fractional] = 0.0
        warnings.warn(
            f"Dependent variable has {int(fractional.sum())} values between 0 and 1; "
            "setting them to 0.",
            DataShapeWarning,
            stacklevel=2,
        )
    return out


def find_censoring_column(df: pd.DataFrame) -> Optional[str]:
    """Return the name of a column called 'cens' (any case), if present."""
    for col in df.columns:
        if str(col).lower() == "cens":
            return col
    return None


def apply_censoring_column(df: pd.DataFrame, dataset: str = OBSERVATION) -> pd.DataFrame:
    """Zero the event indicator wherever a 'cens' column equals 1.

    Assumes 1 = censored record, 0 = observed event.
    """
    cens_col = find_censoring_column(df)
    if cens_col is None:
        return df

    warnings.warn(
        f"Detected column '{cens_col}' with censoring information in {dataset} data, "
        "assuming 1=censored event, 0=observed event.",
        DataShapeWarning,
        stacklevel=2,
    )
    out = df.copy()
    out.loc[out[cens_col] == 1, "dv"] = 0.0
    return out


def filter_records(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Drop rows where any of the given record-type columns is non-zero.

    Columns that are absent are ignored.

    Example:
        >>> filter_records(nm_table, ("EVID", "MDV"))  # keeps observation rows only
    """
    mask = pd.Series(True, index=df.index)
    for col in columns:
        if col in df.columns:
            mask &= df[col] == 0
    n_dropped = int((~mask).sum())
    if n_dropped:
        logger.debug(f"Dropped {n_dropped:,} non-observation records")
    return df.loc[mask]


def add_sim_index_number(df: pd.DataFrame, id_col: str = "id", sim_col: str = "sim") -> pd.Series:
    """Return a 1-based replicate index for each row.

    An existing replicate column is returned as is. Otherwise replicates
    are inferred from the subject id sequence restarting: a boundary lies
    between row i and row i+1 wherever id[i] is the dataset's last subject
    id and id[i+1] is its first subject id.

    Example:
        >>> sim = pd.DataFrame({"id": [1, 1, 2, 1, 2, 2]})
        >>> add_sim_index_number(sim).tolist()
        [1, 1, 1, 2, 2, 2]
    """
    if sim_col in df.columns:
        return df[sim_col].rename("sim")

    ids = df[id_col].to_numpy()
    if len(ids) == 0:
        return pd.Series([], index=df.index, dtype=int, name="sim")

    unique_ids = pd.unique(ids)
    first_id, last_id = unique_ids[0], unique_ids[-1]
    starts = np.zeros(len(ids), dtype=int)
    starts[1:] = (ids[:-1] == last_id) & (ids[1:] == first_id)
    return pd.Series(np.cumsum(starts) + 1, index=df.index, name="sim")


def reduce_to_terminal_records(
    df: pd.DataFrame,
    group_cols: Sequence[str],
    single_event: bool = True
) -> pd.DataFrame:
    """Keep the qualifying records of each subject.

    Events are kept; a censoring record is kept only if it is the subject's
    last record. With single_event=True only the first remaining record per
    subject survives (time to first event, or the terminal censoring).

    Args:
        df: Canonical table sorted chronologically within each subject
        group_cols: Columns identifying a subject, e.g. ["sim", "id"]
        single_event: Reduce to one record per subject

    Returns:
        Filtered copy of df
    """
    group_cols = list(group_cols)
    is_last = ~df.duplicated(subset=group_cols, keep="last")
    keep = (df["dv"] == 1) | (is_last & (df["dv"] == 0))
    out = df.loc[keep]
    if single_event:
        out = out.loc[~out.duplicated(subset=group_cols, keep="first")]
    return out.copy()


def check_columns(df: pd.DataFrame, columns: Iterable[str], dataset: str) -> None:
    """Raise ColumnNotFoundError for the first column absent from df."""
    for col in columns:
        if col is not None and col not in df.columns:
            raise ColumnNotFoundError(col, dataset)


def required_columns(config: VPCConfig, dataset: str) -> List[str]:
    """All columns a dataset must provide under the given configuration."""
    cols = config.columns(dataset)
    required = [cols.id, cols.idv, cols.dv]
    required.extend(config.stratify_all)
    if config.kmmc is not None:
        required.append(config.kmmc)
    return required


def _canonical_frame(df: pd.DataFrame, config: VPCConfig, dataset: str) -> pd.DataFrame:
    cols = config.columns(dataset)
    out = df.copy()
    if "strat" in config.stratify_all:
        out["strat_orig"] = out["strat"]

    out["id"] = df[cols.id].to_numpy()
    out["time"] = pd.to_numeric(df[cols.idv], errors="coerce").to_numpy(dtype=float)
    out["dv"] = pd.to_numeric(df[cols.dv], errors="coerce").to_numpy(dtype=float)

    missing = out["time"].isna() | out["dv"].isna()
    if missing.any():
        warnings.warn(
            f"Dropping {int(missing.sum())} {dataset} records with missing time or "
            "dependent variable.",
            DataShapeWarning,
            stacklevel=3,
        )
        out = out.loc[~missing].copy()
    return out


def _finish(out: pd.DataFrame, config: VPCConfig, dataset: str) -> pd.DataFrame:
    if config.dv_coercion is not None:
        out["dv"] = config.dv_coercion(out["dv"]).to_numpy()
    out = apply_censoring_column(out, dataset)
    return out


def prepare_observed(obs: pd.DataFrame, config: VPCConfig) -> pd.DataFrame:
    """Build the canonical observed table.

    Drops platform record types, coerces the event indicator, applies a
    censoring column, sorts chronologically per subject and keeps the
    qualifying records (first event or terminal censoring for single-event
    data; every event plus a terminal censoring for RTTE).

    Raises:
        ColumnNotFoundError: If a required column is absent
    """
    check_columns(obs, required_columns(config, OBSERVATION), OBSERVATION)
    profile = config.profile

    out = filter_records(obs, profile.record_filter_columns)
    out = _canonical_frame(out, config, OBSERVATION)
    out = _finish(out, config, OBSERVATION)
    out = out.sort_values(["id", "time"], kind="mergesort")
    out = reduce_to_terminal_records(out, ["id"], single_event=not config.rtte)
    return out.reset_index(drop=True)


def prepare_simulated(sim: pd.DataFrame, config: VPCConfig) -> pd.DataFrame:
    """Build the canonical simulated table with a 1-based replicate index.

    The replicate index is assigned on the raw row order, before any
    filtering, so that restart detection sees the full id sequence.

    Raises:
        ColumnNotFoundError: If a required column is absent
    """
    check_columns(sim, required_columns(config, SIMULATION), SIMULATION)
    cols = config.columns(SIMULATION)
    profile = config.profile

    out = sim.copy()
    out["sim"] = add_sim_index_number(sim, id_col=cols.id, sim_col=cols.sim).to_numpy()
    out = filter_records(out, profile.record_filter_columns)
    out = _canonical_frame(out, config, SIMULATION)
    if profile.drop_sim_time_zero_events:
        out = out.loc[~((out["time"] == 0) & (out["dv"] == 1))].copy()
    out = _finish(out, config, SIMULATION)
    out = out.sort_values(["sim", "id", "time"], kind="mergesort")
    out = reduce_to_terminal_records(out, ["sim", "id"], single_event=not config.rtte)
    return out.reset_index(drop=True)
