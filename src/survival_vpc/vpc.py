"""Time-to-event visual predictive check.

Orchestrates the pipeline from raw observed/simulated tables to the
curve tables a plot is drawn from:

    format -> RTTE preprocessing -> stratify -> observed KM
           -> bin grid -> replicate aggregation -> VPCResult

Example:
    >>> from survival_vpc.vpc import vpc_tte
    >>> from survival_vpc.config import VPCConfig, BinningConfig
    >>> config = VPCConfig(stratify=("dose",), binning=BinningConfig(policy="time", n_bins=8))
    >>> result = vpc_tte(obs=obs, sim=sim, config=config)
    >>> result.sim_km[["strat", "bin_mid", "q_low", "q_median", "q_high"]]
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd

from survival_vpc.aggregate import aggregate_replicates
from survival_vpc.binning import BinGrid, compute_bin_grid
from survival_vpc.config import VPCConfig
from survival_vpc.data import (
    OBSERVATION,
    SIMULATION,
    check_columns,
    prepare_observed,
    prepare_simulated,
    required_columns,
)
from survival_vpc.exceptions import ConfigurationError
from survival_vpc.kaplan_meier import compute_kaplan, compute_kmmc
from survival_vpc.logging_config import capture_warnings
from survival_vpc.rtte import RTTE_COL, extract_event_index, filter_events, prepare_rtte
from survival_vpc.stratification import (
    add_stratification,
    check_stratification_columns,
    compute_strata_summary,
    split_stratum_labels,
)
from survival_vpc.timing import Timer, log_execution_time
from survival_vpc.tracking import track_vpc_run
from survival_vpc.utils import save_tables

logger = logging.getLogger(__name__)

Renderer = Callable[["VPCResult"], Any]


@dataclass(frozen=True)
class VPCResult:
    """Everything needed to draw a time-to-event VPC.

    Attributes:
        obs: Canonical, stratified observed records (None without obs)
        sim: Canonical simulated records (None without sim)
        obs_km: Observed curve per stratum (time, surv, optional lower/upper)
        sim_km: Per-bin quantiles of the simulated curves
        cens_dat: Censoring markers placed on the observed curve
        bins: Shared bin grid
        replicates: Per-replicate, per-bin curve values before reduction
        strata_summary: Record/subject/event counts per observed stratum
        stratify: Stratification variables including the color variable
            and, for RTTE, the occurrence index
        stratify_original: Stratification variables as requested
        stratify_color: Color stratification variable
        rtte: Repeated time-to-event data
        kmmc: Covariate of a Kaplan-Meier Mean Covariate VPC
        config: Resolved configuration
    """
    obs: Optional[pd.DataFrame]
    sim: Optional[pd.DataFrame]
    obs_km: Optional[pd.DataFrame]
    sim_km: Optional[pd.DataFrame]
    cens_dat: Optional[pd.DataFrame]
    bins: Optional[BinGrid]
    replicates: Optional[pd.DataFrame]
    strata_summary: Optional[pd.DataFrame]
    stratify: tuple
    stratify_original: tuple
    stratify_color: Optional[str]
    rtte: bool
    kmmc: Optional[str]
    config: VPCConfig
    type: str = "time-to-event"

    def tables(self) -> Dict[str, Optional[pd.DataFrame]]:
        """Result tables by name; absent tables map to None."""
        return {
            "obs_km": self.obs_km,
            "sim_km": self.sim_km,
            "cens_dat": self.cens_dat,
            "bins": self.bins.table() if self.bins is not None else None,
            "strata_summary": self.strata_summary,
        }

    def save(self, outdir: str) -> Dict[str, str]:
        """Write every available table to {outdir}/{name}.csv.

        Example:
            >>> result.save(get_output_paths("rtte")["tables"])
            {'obs_km': 'data/outputs/rtte/tables/obs_km.csv', ...}
        """
        return save_tables(self.tables(), outdir)


def _resolve_config(config: Optional[VPCConfig], overrides: dict) -> VPCConfig:
    if config is None:
        return VPCConfig(**overrides)
    if overrides:
        return replace(config, **overrides)
    return config


def _check_inputs(obs, sim, config: VPCConfig) -> None:
    """Fail on any configuration or column problem before computing."""
    config.validate(has_obs=obs is not None, has_sim=sim is not None)
    if config.binning.policy == "obs" and obs is None:
        raise ConfigurationError("Binning policy 'obs' requires observed data.")

    for df, dataset in ((obs, OBSERVATION), (sim, SIMULATION)):
        if df is None:
            continue
        check_stratification_columns(df, config.stratify_all, dataset)
        check_columns(df, required_columns(config, dataset), dataset)


def censoring_markers(obs: pd.DataFrame, obs_km: pd.DataFrame) -> pd.DataFrame:
    """Place each censoring record on the observed curve of its stratum.

    A censoring at time t is drawn at the curve value of the last curve
    time strictly before t. Records at time 0 are not marked.

    Returns:
        The censoring rows of obs with an added 'y' column
    """
    cens = obs.loc[(obs["dv"] == 0) & (obs["time"] > 0)].copy()
    cens["y"] = np.nan
    for strat in cens["strat"].unique():
        curve = obs_km.loc[obs_km["strat"] == strat]
        if curve.empty:
            continue
        rows = cens["strat"] == strat
        times = curve["time"].to_numpy(dtype=float)
        values = curve["surv"].to_numpy(dtype=float)
        pos = np.searchsorted(times, cens.loc[rows, "time"].to_numpy(dtype=float), side="left") - 1
        cens.loc[rows, "y"] = np.where(pos >= 0, values[np.clip(pos, 0, None)], np.nan)
    return cens.loc[cens["y"].notna()].reset_index(drop=True)


def _add_strata_columns(
    table: Optional[pd.DataFrame],
    stratify: tuple,
    stratify_color: Optional[str],
    rtte: bool
) -> Optional[pd.DataFrame]:
    if table is None or table.empty:
        return table
    out = table.copy()
    if rtte:
        out[RTTE_COL] = extract_event_index(out["strat"])
    if len(stratify) == 2 or stratify_color is not None:
        split = split_stratum_labels(out["strat"], n_parts=max(len(stratify), 1))
        if len(stratify) == 2:
            out["strat1"] = split["strat1"]
            out["strat2"] = split["strat2"]
        if stratify_color is not None:
            piece = split[f"strat{stratify.index(stratify_color) + 1}"]
            out["strat_color"] = piece
    return out


@log_execution_time()
def vpc_tte(
    obs: Optional[pd.DataFrame] = None,
    sim: Optional[pd.DataFrame] = None,
    config: Optional[VPCConfig] = None,
    renderer: Optional[Renderer] = None,
    **overrides
):
    """Compute a time-to-event VPC.

    Args:
        obs: Observed event table
        sim: Simulated event table, replicates stacked
        config: Full configuration; defaults when None
        renderer: Callable receiving the VPCResult (e.g. a plotting function)
        **overrides: VPCConfig fields replacing those of config

    Returns:
        VPCResult when config.data_only is set or no renderer is given,
        else whatever the renderer returns

    Raises:
        ConfigurationError: Invalid configuration (raised before any computation)
        ColumnNotFoundError: A required column is missing from a dataset

    Example:
        >>> result = vpc_tte(obs, sim, rtte=True, events=(1, 2), stratify=("dose",))
        >>> result.obs_km["rtte"].unique().tolist()
        [1, 2]
    """
    config = _resolve_config(config, overrides)
    _check_inputs(obs, sim, config)

    stratify = config.stratify_all
    if config.rtte:
        stratify = stratify + (RTTE_COL,)
    observed_ci = config.ci if (config.obs_ci or sim is None) else None
    quantiles = (config.ci[0], 0.5, config.ci[1])

    obs_df = sim_df = obs_km = sim_km = cens_dat = grid = replicates = summary = None
    with capture_warnings(logger, emit=config.verbose):
        if obs is not None:
            with Timer(logger, "Observed curve"):
                obs_df = prepare_observed(obs, config)
                if config.rtte:
                    obs_df = prepare_rtte(obs_df, ("id",), calc_diff=config.rtte_calc_diff)
                obs_df = add_stratification(obs_df, stratify)
                if config.kmmc is not None:
                    obs_km = compute_kmmc(obs_df, config.kmmc)
                else:
                    obs_km = compute_kaplan(obs_df, ci=observed_ci, reverse_prob=config.reverse_prob)
                if config.obs_cens:
                    cens_dat = censoring_markers(obs_df, obs_km)
                summary = compute_strata_summary(obs_df)

        if sim is not None:
            sim_df = prepare_simulated(sim, config)
            if config.rtte:
                sim_df = prepare_rtte(sim_df, ("sim", "id"), calc_diff=config.rtte_calc_diff)
            if sim_df.empty:
                raise ConfigurationError("No simulated records remain after formatting.")
            reference = obs_df["time"] if obs_df is not None else None
            grid = compute_bin_grid(sim_df["time"], config.binning, reference_times=reference)
            if config.kmmc is not None and config.binning.policy == "none":
                logger.info("KMMC without binning follows every simulated time; "
                            "consider a binning policy for a smoother band")
            sim_km, replicates = aggregate_replicates(
                sim_df, grid, stratify,
                quantiles=quantiles,
                kmmc=config.kmmc,
                reverse_prob=config.reverse_prob,
                execution=config.execution,
                return_values=True,
            )
            if summary is None:
                summary = compute_strata_summary(
                    add_stratification(sim_df, stratify), subject_cols=("sim", "id")
                )
        elif obs_df is not None and not obs_df.empty:
            grid = compute_bin_grid(obs_df["time"], config.binning, reference_times=obs_df["time"])

    obs_km = _add_strata_columns(obs_km, stratify, config.stratify_color, config.rtte)
    sim_km = _add_strata_columns(sim_km, stratify, config.stratify_color, config.rtte)
    cens_dat = _add_strata_columns(cens_dat, stratify, config.stratify_color, config.rtte)
    if config.rtte and config.events is not None:
        obs_km = filter_events(obs_km, config.events)
        sim_km = filter_events(sim_km, config.events)
        cens_dat = filter_events(cens_dat, config.events)

    result = VPCResult(
        obs=obs_df,
        sim=sim_df,
        obs_km=obs_km,
        sim_km=sim_km,
        cens_dat=cens_dat,
        bins=grid,
        replicates=replicates,
        strata_summary=summary,
        stratify=stratify,
        stratify_original=config.stratify,
        stratify_color=config.stratify_color,
        rtte=config.rtte,
        kmmc=config.kmmc,
        config=config,
    )

    if config.track:
        track_vpc_run(result, logger=logger)

    if config.data_only or renderer is None:
        return result
    return renderer(result)
