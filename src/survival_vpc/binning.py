"""Time-axis binning shared by the observed curve and every replicate.

Bins are right-closed intervals (lo, hi] partitioning [0, max(time)]; the
time point 0 belongs to the first bin. The grid is computed once and then
reused, read-only, for all replicates.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from survival_vpc.config import BINNING_POLICIES, BinningConfig
from survival_vpc.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BinGrid:
    """Immutable set of bin edges.

    Attributes:
        edges: Sorted breakpoints, first is 0, last is >= max(time)
    """
    edges: tuple[float, ...]

    @property
    def n_bins(self) -> int:
        return max(len(self.edges) - 1, 1)

    @property
    def upper_edges(self) -> np.ndarray:
        """Upper bound of every bin, one per bin."""
        edges = np.asarray(self.edges, dtype=float)
        if len(edges) == 1:
            return edges
        return edges[1:]

    def table(self) -> pd.DataFrame:
        """One row per bin with bin, bin_min, bin_max, bin_mid."""
        return bin_table(self.edges)

    def assign(self, times) -> np.ndarray:
        """Return the 1-based bin index of each time (right-closed bins).

        Raises:
            ValueError: If a time lies outside [0, last edge]
        """
        return assign_bins(times, self.edges)


def bin_table(edges: Sequence[float]) -> pd.DataFrame:
    """One row per bin with bin (1-based), bin_min, bin_max and bin_mid.

    Example:
        >>> bin_table([0, 2, 5])[["bin", "bin_mid"]].values.tolist()
        [[1.0, 1.0], [2.0, 3.5]]
    """
    e = np.asarray(edges, dtype=float)
    if len(e) == 1:
        e = np.array([e[0], e[0]])
    lower, upper = e[:-1], e[1:]
    return pd.DataFrame({
        "bin": np.arange(1, len(lower) + 1),
        "bin_min": lower,
        "bin_max": upper,
        "bin_mid": (lower + upper) / 2.0,
    })


def assign_bins(times, edges: Sequence[float]) -> np.ndarray:
    """Map times to 1-based bin indices for right-closed bins.

    Example:
        >>> assign_bins([0, 2, 2.5, 5], [0, 2, 5]).tolist()
        [1, 1, 2, 2]
    """
    t = np.asarray(times, dtype=float)
    e = np.asarray(edges, dtype=float)
    if t.size and (t.min() < e[0] or t.max() > e[-1]):
        raise ValueError(
            f"Times must lie within [{e[0]}, {e[-1]}], got range [{t.min()}, {t.max()}]"
        )
    idx = np.searchsorted(e, t, side="left")
    return np.clip(idx, 1, max(len(e) - 1, 1))


def _auto_breaks(times: np.ndarray, policy: str, n_intervals: int) -> np.ndarray:
    if policy == "time":
        return np.linspace(times.min(), times.max(), n_intervals + 1)
    if policy == "data":
        return np.quantile(times, np.linspace(0.0, 1.0, n_intervals + 1))
    if policy == "kmeans":
        distinct = np.unique(times)
        k = min(n_intervals, len(distinct))
        if k < 2:
            return np.array([times.min(), times.max()])
        km = KMeans(n_clusters=k, n_init=10, random_state=0)
        km.fit(times.reshape(-1, 1))
        centers = np.sort(km.cluster_centers_.ravel())
        mids = (centers[:-1] + centers[1:]) / 2.0
        return np.concatenate([[times.min()], mids, [times.max()]])
    raise ConfigurationError(f"Unknown binning policy '{policy}'. Choose from {BINNING_POLICIES}.")


def compute_bin_edges(
    times,
    policy: str = "none",
    n_bins: int = 10,
    breaks: Optional[Sequence[float]] = None,
    reference_times=None
) -> np.ndarray:
    """Compute bin breakpoints for a series of event times.

    Args:
        times: Event/censoring times of the dataset being binned
        policy: "none", "explicit", "data", "time", "kmeans" or "obs"
        n_bins: Target bin count for "data", "time" and "kmeans"; n_bins - 1
            intervals are laid over [min, max] and the leading [0, min]
            interval makes up the rest
        breaks: Breakpoints for "explicit"
        reference_times: Times of the other dataset for "obs" (mirror)

    Returns:
        Sorted unique breakpoints starting at 0 and ending at >= max(times)

    Raises:
        ConfigurationError: Unknown policy, or missing breaks/reference times

    Example:
        >>> compute_bin_edges([1, 2, 4], policy="none").tolist()
        [0.0, 1.0, 2.0, 4.0]
        >>> compute_bin_edges([1, 2, 4], policy="explicit", breaks=[3]).tolist()
        [0.0, 3.0, 4.0]
    """
    t = np.asarray(times, dtype=float)
    t = t[~np.isnan(t)]
    if policy not in BINNING_POLICIES:
        raise ConfigurationError(f"Unknown binning policy '{policy}'. Choose from {BINNING_POLICIES}.")
    if t.size == 0:
        raise ValueError("Cannot bin an empty time series")

    t_max = float(t.max())
    if np.unique(t).size < 2 and policy != "explicit":
        return np.array([0.0, t_max])

    if policy == "none":
        inner = np.unique(t)
    elif policy == "explicit":
        if breaks is None or len(breaks) == 0:
            raise ConfigurationError("Binning policy 'explicit' requires breaks.")
        inner = np.asarray(breaks, dtype=float)
        inner = inner[inner > 0]
    elif policy == "obs":
        if reference_times is None:
            raise ConfigurationError("Binning policy 'obs' requires observed data.")
        ref = np.asarray(reference_times, dtype=float)
        ref = ref[~np.isnan(ref)]
        inner = np.unique(ref)
    else:
        if policy == "kmeans":
            logger.debug("k-means binning on %d times", t.size)
        inner = _auto_breaks(t, policy, max(n_bins - 1, 1))

    edges = np.unique(np.concatenate([[0.0], inner, [t_max]]))
    return edges


def compute_bin_grid(
    times,
    config: BinningConfig,
    reference_times=None
) -> BinGrid:
    """Build the shared BinGrid from a BinningConfig."""
    edges = compute_bin_edges(
        times,
        policy=config.policy,
        n_bins=config.n_bins,
        breaks=config.breaks,
        reference_times=reference_times,
    )
    return BinGrid(edges=tuple(float(e) for e in edges))
