"""Cross-replicate aggregation of simulated survival curves.

Map: for every replicate independently, stratify, estimate one curve per
stratum, and carry each curve forward onto the shared bin grid.
Reduce: group all replicate values by (stratum, bin) and take empirical
quantiles. The map step only reads its own replicate and the frozen
BinGrid, so it can run sequentially or through joblib without change.
"""
from __future__ import annotations
import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from survival_vpc.binning import BinGrid
from survival_vpc.config import ExecutionConfig
from survival_vpc.kaplan_meier import compute_kaplan, compute_kmmc
from survival_vpc.logging_config import ProgressLogger, log_performance
from survival_vpc.stratification import add_stratification
from survival_vpc.timing import Timer

logger = logging.getLogger(__name__)

QUANTILE_COLUMNS = ("q_low", "q_median", "q_high")


def resample_locf(curve: pd.DataFrame, grid_times, initial: float = 1.0) -> np.ndarray:
    """Carry a step curve forward onto grid times.

    Each grid time takes the value of the last curve point at or before it
    (right-continuous). Grid times before the first curve point take
    `initial`. Only 'surv' is resampled; confidence bounds are not.

    Example:
        >>> curve = pd.DataFrame({"time": [0.0, 3.0, 7.0], "surv": [1.0, 0.75, 0.5]})
        >>> resample_locf(curve, [1, 3, 5, 7, 9]).tolist()
        [1.0, 0.75, 0.75, 0.5, 0.5]
    """
    times = curve["time"].to_numpy(dtype=float)
    values = curve["surv"].to_numpy(dtype=float)
    grid = np.asarray(grid_times, dtype=float)
    pos = np.searchsorted(times, grid, side="right") - 1
    return np.where(pos >= 0, values[np.clip(pos, 0, None)], initial)


def summarize_replicate(
    replicate: pd.DataFrame,
    grid: BinGrid,
    stratify: Sequence[str] = (),
    kmmc: Optional[str] = None,
    reverse_prob: bool = False,
    replicate_id=None
) -> pd.DataFrame:
    """Per-bin curve values of one simulated replicate.

    Args:
        replicate: Canonical records of a single replicate
        grid: Shared bin grid
        stratify: Stratification variables ('rtte' last for RTTE)
        kmmc: Covariate for a KMMC curve instead of survival
        reverse_prob: Report 1 - survival
        replicate_id: Value stored in the 'sim' column

    Returns:
        DataFrame with sim, strat, bin, bin_min, bin_max, bin_mid, surv;
        one row per (stratum present in the replicate, bin)
    """
    stratified = add_stratification(replicate, stratify)
    if kmmc is not None:
        curves = compute_kmmc(stratified, kmmc)
        initial = np.nan
    else:
        curves = compute_kaplan(stratified, reverse_prob=reverse_prob)
        initial = 0.0 if reverse_prob else 1.0

    bins = grid.table()
    upper = grid.upper_edges
    pieces = []
    for strat in curves["strat"].cat.categories:
        curve = curves.loc[curves["strat"] == strat]
        piece = bins.copy()
        piece.insert(0, "strat", strat)
        piece["surv"] = resample_locf(curve, upper, initial=initial)
        pieces.append(piece)

    if not pieces:
        return pd.DataFrame(columns=["sim", "strat", "bin", "bin_min", "bin_max", "bin_mid", "surv"])
    out = pd.concat(pieces, ignore_index=True)
    out.insert(0, "sim", replicate_id)
    return out


def map_replicates(
    sim: pd.DataFrame,
    grid: BinGrid,
    stratify: Sequence[str] = (),
    kmmc: Optional[str] = None,
    reverse_prob: bool = False,
    execution: Optional[ExecutionConfig] = None
) -> pd.DataFrame:
    """Run summarize_replicate for every replicate and stack the results.

    Replicates are processed in-process or with joblib depending on the
    (resolved) execution config. Output order follows replicate order.
    """
    groups = list(sim.groupby("sim", sort=True))
    execution = (execution or ExecutionConfig()).resolve(len(groups))
    logger.info(f"Aggregating {len(groups)} replicates ({execution})")

    with Timer(logger, f"Replicate map ({len(groups)} replicates)"):
        if execution.is_parallel():
            results = Parallel(
                n_jobs=execution.n_jobs,
                verbose=execution.verbose,
                backend=execution.backend
            )(
                delayed(summarize_replicate)(
                    rep, grid, stratify, kmmc=kmmc, reverse_prob=reverse_prob, replicate_id=rep_id
                )
                for rep_id, rep in groups
            )
        else:
            progress = ProgressLogger(
                logger, total=len(groups), desc="Replicates",
                log_interval=max(len(groups) // 10, 1)
            )
            results = []
            for rep_id, rep in groups:
                results.append(summarize_replicate(
                    rep, grid, stratify, kmmc=kmmc, reverse_prob=reverse_prob, replicate_id=rep_id
                ))
                progress.update(1)

    results = [r for r in results if len(r)]
    if not results:
        return pd.DataFrame(columns=["sim", "strat", "bin", "bin_min", "bin_max", "bin_mid", "surv"])
    stacked = pd.concat(results, ignore_index=True)
    labels = stacked["strat"].astype(str)
    stacked["strat"] = pd.Categorical(labels, categories=pd.unique(labels))
    return stacked


def summarize_quantiles(
    replicate_values: pd.DataFrame,
    quantiles: Sequence[float] = (0.05, 0.5, 0.95)
) -> pd.DataFrame:
    """Empirical quantiles of the replicate values per (stratum, bin).

    Quantiles interpolate linearly between order statistics (R type 7).

    Returns:
        DataFrame with strat, bin, bin_mid, bin_min, bin_max, q_low,
        q_median, q_high, sorted by stratum order then bin
    """
    quantiles = [float(q) for q in quantiles]
    if len(quantiles) != 3 or not (0 <= quantiles[0] <= quantiles[1] <= quantiles[2] <= 1):
        raise ValueError(f"quantiles must be three ordered values in [0, 1], got {quantiles}")

    keys = ["strat", "bin"]
    columns = keys + ["bin_mid", "bin_min", "bin_max", *QUANTILE_COLUMNS, "n_replicates"]
    if replicate_values.empty:
        return pd.DataFrame(columns=columns)

    replicate_values = replicate_values.astype({"surv": float})
    grouped = replicate_values.groupby(keys, observed=True, sort=True)
    bounds = grouped[["bin_mid", "bin_min", "bin_max"]].first()
    q = grouped["surv"].quantile(quantiles).unstack()
    q.columns = list(QUANTILE_COLUMNS)

    out = bounds.join(q).reset_index()
    out["n_replicates"] = grouped["surv"].count().to_numpy()
    return out[columns]


def aggregate_replicates(
    sim: pd.DataFrame,
    grid: BinGrid,
    stratify: Sequence[str] = (),
    quantiles: Sequence[float] = (0.05, 0.5, 0.95),
    kmmc: Optional[str] = None,
    reverse_prob: bool = False,
    execution: Optional[ExecutionConfig] = None,
    return_values: bool = False
):
    """Map over replicates, then reduce to per-bin quantiles.

    Returns:
        The quantile table, or (quantile table, replicate values) when
        return_values is True

    Example:
        >>> grid = compute_bin_grid(sim["time"], BinningConfig())
        >>> sim_km = aggregate_replicates(sim, grid, stratify=["drug"])
        >>> sim_km[["strat", "bin", "q_low", "q_median", "q_high"]].head()
    """
    values = map_replicates(
        sim, grid, stratify, kmmc=kmmc, reverse_prob=reverse_prob, execution=execution
    )
    sim_km = summarize_quantiles(values, quantiles)
    log_performance(
        logger, "Replicate aggregation completed",
        n_replicates=int(sim["sim"].nunique()),
        n_strata=int(sim_km["strat"].nunique()),
        n_bins=grid.n_bins,
    )
    if return_values:
        return sim_km, values
    return sim_km
