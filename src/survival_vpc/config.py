"""Configuration for VPC computation, platform column profiles and parallelism.

This module resolves all options once, at the entry point:
- ExecutionConfig: sequential pandas or joblib multiprocessing over replicates
- SoftwareProfile: closed set of named column-name/record-filter profiles
- BinningConfig: how the shared time grid is built
- VPCConfig: master configuration, serializable to/from JSON
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence
import os
import multiprocessing
import json

from survival_vpc.exceptions import AsymmetricCIError, ConfigurationError


class ExecutionMode(str, Enum):
    """Execution mode for the replicate loop.

    Attributes:
        PANDAS: Sequential execution in the calling process (default)
        MULTIPROCESSING: Replicates mapped in parallel with joblib
    """
    PANDAS = "pandas"
    MULTIPROCESSING = "mp"


@dataclass
class ExecutionConfig:
    """Configuration for execution mode and parallelization.

    Attributes:
        mode: Execution mode (pandas, mp)
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')
        auto_mode: If True, select mode from the number of replicates
        replicate_threshold: Replicate count above which auto mode goes parallel

    Example:
        >>> config = ExecutionConfig()
        >>> config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
    """
    mode: ExecutionMode = ExecutionMode.PANDAS
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"
    auto_mode: bool = False
    replicate_threshold: int = 200

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = ExecutionMode(self.mode)

        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

        if self.mode == ExecutionMode.PANDAS and not self.auto_mode:
            self.n_jobs = 1

    def resolve(self, n_replicates: int) -> "ExecutionConfig":
        """Return the config to use for a given number of replicates.

        With auto_mode off this is the config itself. With auto_mode on the
        mode is chosen by select_execution_mode().
        """
        if not self.auto_mode:
            return self
        mode = select_execution_mode(n_replicates, threshold=self.replicate_threshold)
        n_jobs = self.n_jobs if mode == ExecutionMode.MULTIPROCESSING else 1
        return replace(self, mode=mode, n_jobs=n_jobs, auto_mode=False)

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Example:
            >>> ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=4).is_parallel()
            True
        """
        return self.mode != ExecutionMode.PANDAS and self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(mode={self.mode.value}, "
            f"n_jobs={self.n_jobs}, "
            f"parallel={self.is_parallel()})"
        )


def select_execution_mode(
    n_replicates: int,
    n_cores: Optional[int] = None,
    threshold: int = 200
) -> ExecutionMode:
    """Auto-select execution mode from the number of simulated replicates.

    Few replicates do not amortize worker start-up, so they run in-process.

    Example:
        >>> select_execution_mode(50)
        <ExecutionMode.PANDAS: 'pandas'>
        >>> select_execution_mode(1000, n_cores=8)
        <ExecutionMode.MULTIPROCESSING: 'mp'>
    """
    if n_cores is None:
        n_cores = multiprocessing.cpu_count()

    if n_replicates < threshold or n_cores < 2:
        return ExecutionMode.PANDAS
    return ExecutionMode.MULTIPROCESSING


# ============================================================================
# Column Profiles
# ============================================================================

@dataclass(frozen=True)
class ColumnConfig:
    """Column names of one input dataset.

    Attributes:
        id: Subject identifier column
        idv: Independent variable (time) column
        dv: Dependent variable (event indicator) column
        sim: Replicate index column (simulated data only)
    """
    id: str = "id"
    idv: str = "time"
    dv: str = "dv"
    sim: str = "sim"

    def merged(self, overrides: Optional[dict]) -> "ColumnConfig":
        """Return a copy with caller overrides applied."""
        if not overrides:
            return self
        unknown = set(overrides) - {"id", "idv", "dv", "sim"}
        if unknown:
            raise ConfigurationError(f"Unknown column keys: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass(frozen=True)
class SoftwareProfile:
    """Column defaults and record filters for one simulation platform.

    The core reads only these fields; it never branches on the profile name.

    Attributes:
        name: Profile identifier
        columns: Default column names for both datasets
        record_filter_columns: Rows where any of these columns is non-zero
            are dropped before analysis (e.g. dosing records)
        drop_sim_time_zero_events: Drop simulated events recorded at time 0
    """
    name: str
    columns: ColumnConfig
    record_filter_columns: tuple[str, ...] = ()
    drop_sim_time_zero_events: bool = False


SOFTWARE_PROFILES: dict[str, SoftwareProfile] = {
    "nonmem": SoftwareProfile(
        name="nonmem",
        columns=ColumnConfig(id="ID", idv="TIME", dv="DV", sim="sim"),
        record_filter_columns=("EVID", "MDV"),
        drop_sim_time_zero_events=True,
    ),
    "phoenix": SoftwareProfile(
        name="phoenix",
        columns=ColumnConfig(id="ID", idv="IVAR", dv="COBS", sim="sim"),
    ),
    "pkpdsim": SoftwareProfile(
        name="pkpdsim",
        columns=ColumnConfig(id="id", idv="t", dv="y", sim="sim"),
    ),
    "explicit": SoftwareProfile(
        name="explicit",
        columns=ColumnConfig(),
    ),
}


def get_software_profile(name: str) -> SoftwareProfile:
    """Look up a named software profile.

    Raises:
        ConfigurationError: If the profile name is unknown
    """
    try:
        return SOFTWARE_PROFILES[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown software profile '{name}'. "
            f"Choose from {sorted(SOFTWARE_PROFILES)}."
        ) from None


# ============================================================================
# Binning Configuration
# ============================================================================

BINNING_POLICIES = ("none", "explicit", "data", "time", "kmeans", "obs")


@dataclass
class BinningConfig:
    """Configuration of the shared bin grid.

    Attributes:
        policy: One of "none", "explicit", "data", "time", "kmeans", "obs"
        n_bins: Target number of bins for "data", "time" and "kmeans"
        breaks: Explicit breakpoints; setting them implies policy "explicit"
    """
    policy: str = "none"
    """Binning policy.

    - none: every distinct simulated time is a bin edge
    - explicit: user-supplied breakpoints
    - data: edges at quantiles of the time values (equal counts)
    - time: equally spaced edges (equal width)
    - kmeans: edges between 1-D k-means cluster centers
    - obs: mirror the observed dataset's distinct times
    """

    n_bins: int = 10
    """Number of bins. Valid range: [2, inf)."""

    breaks: Optional[tuple[float, ...]] = None

    def __post_init__(self):
        if self.breaks is not None:
            self.breaks = tuple(float(b) for b in self.breaks)
            if self.policy == "none":
                self.policy = "explicit"
        if self.policy not in BINNING_POLICIES:
            raise ConfigurationError(
                f"Unknown binning policy '{self.policy}'. Choose from {BINNING_POLICIES}."
            )
        if self.policy == "explicit" and not self.breaks:
            raise ConfigurationError("Binning policy 'explicit' requires breaks.")
        if self.n_bins < 2:
            raise ConfigurationError(f"n_bins must be at least 2, got {self.n_bins}")


# ============================================================================
# Master Configuration
# ============================================================================

def check_symmetric_ci(ci: Sequence[float]) -> tuple[float, float]:
    """Validate a (lower, upper) interval symmetric around 0.5.

    Raises:
        AsymmetricCIError: If the bounds are not symmetric or not ordered
    """
    if len(ci) != 2:
        raise AsymmetricCIError(f"ci must have two bounds, got {tuple(ci)}", ci)
    lo, hi = float(ci[0]), float(ci[1])
    if not (0.0 < lo < hi < 1.0):
        raise AsymmetricCIError(f"ci bounds must satisfy 0 < lower < upper < 1, got {tuple(ci)}", ci)
    if round(lo, 3) != round(1.0 - hi, 3):
        raise AsymmetricCIError(
            "Only symmetric confidence intervals can be computed. "
            f"Please adjust the ci argument (got {tuple(ci)}).",
            ci,
        )
    return lo, hi


@dataclass
class VPCConfig:
    """Master configuration for a time-to-event VPC.

    Attributes:
        software: Name of the software profile supplying column defaults
        obs_cols: Overrides for observed column names (keys: id, idv, dv)
        sim_cols: Overrides for simulated column names (keys: id, idv, dv, sim)
        binning: Bin grid configuration
        stratify: Up to two stratification variables (one with RTTE)
        stratify_color: One variable used for color stratification
        rtte: Treat data as repeated time-to-event
        rtte_calc_diff: Recalculate time as time since previous event
        events: Occurrence indices to keep for RTTE (None keeps all)
        kmmc: Covariate name for a Kaplan-Meier Mean Covariate VPC
        reverse_prob: Report 1 - survival (cumulative incidence)
        ci: Quantile bounds, used for the observed CI and the simulated band
        obs_ci: Compute a confidence interval for the observed curve
        obs_cens: Compute censoring markers for the observed curve
        data_only: Return the result instead of handing it to a renderer
        verbose: Surface data-shape diagnostics as log warnings
        track: Log the run to MLflow
        execution: Replicate-loop execution config
        dv_coercion: Callable applied to the dependent variable; None disables

    Example:
        >>> config = VPCConfig.for_software("nonmem", stratify=("sex",))
        >>> config.columns("simulation").idv
        'TIME'
    """
    software: str = "explicit"
    obs_cols: Optional[dict] = None
    sim_cols: Optional[dict] = None
    binning: BinningConfig = field(default_factory=BinningConfig)
    stratify: tuple[str, ...] = ()
    stratify_color: Optional[str] = None
    rtte: bool = False
    rtte_calc_diff: bool = True
    events: Optional[tuple[int, ...]] = None
    kmmc: Optional[str] = None
    reverse_prob: bool = False
    ci: tuple[float, float] = (0.05, 0.95)
    obs_ci: bool = False
    obs_cens: bool = True
    data_only: bool = False
    verbose: bool = False
    track: bool = False
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    dv_coercion: Optional[Callable] = field(default="default", repr=False)

    def __post_init__(self):
        if isinstance(self.stratify, str):
            self.stratify = (self.stratify,)
        self.stratify = tuple(self.stratify or ())
        if isinstance(self.stratify_color, (list, tuple)):
            if len(self.stratify_color) > 1:
                raise ConfigurationError("Please specify only 1 stratification variable for color.")
            self.stratify_color = self.stratify_color[0] if self.stratify_color else None
        if self.events is not None:
            self.events = tuple(int(e) for e in self.events)
        self.ci = tuple(float(c) for c in self.ci)
        if isinstance(self.binning, dict):
            self.binning = BinningConfig(**self.binning)
        if isinstance(self.execution, dict):
            self.execution = ExecutionConfig(**self.execution)
        if self.dv_coercion == "default":
            from survival_vpc.data import coerce_event_indicator
            self.dv_coercion = coerce_event_indicator

    @property
    def profile(self) -> SoftwareProfile:
        return get_software_profile(self.software)

    def columns(self, dataset: str) -> ColumnConfig:
        """Resolved column names for "observation" or "simulation"."""
        overrides = self.obs_cols if dataset == "observation" else self.sim_cols
        return self.profile.columns.merged(overrides)

    @property
    def stratify_all(self) -> tuple[str, ...]:
        """User stratification variables including the color variable."""
        strat = self.stratify
        if self.stratify_color is not None and self.stratify_color not in strat:
            strat = strat + (self.stratify_color,)
        return strat

    def validate(self, has_obs: bool, has_sim: bool) -> None:
        """Check the configuration before any computation.

        Raises:
            ConfigurationError: No dataset, or too many stratification variables
            AsymmetricCIError: The ci bounds are not symmetric around 0.5
        """
        if not has_obs and not has_sim:
            raise ConfigurationError(
                "At least a simulation or an observation dataset is required."
            )
        get_software_profile(self.software)
        check_symmetric_ci(self.ci)

        n_strat = len(self.stratify_all)
        if self.rtte and n_strat > 1:
            raise ConfigurationError(
                "With repeated time-to-event data, stratification on more than "
                "1 variable is not supported."
            )
        if n_strat > 2:
            raise ConfigurationError("Stratification on more than 2 variables is not supported.")
        if self.events is not None and not self.rtte:
            raise ConfigurationError("The events filter requires rtte=True.")

    @classmethod
    def for_software(cls, software: str, **kwargs) -> "VPCConfig":
        """Create a configuration using a named software profile.

        Example:
            >>> VPCConfig.for_software("phoenix").columns("observation").dv
            'COBS'
        """
        get_software_profile(software)
        return cls(software=software, **kwargs)

    def to_dict(self) -> dict:
        """Convert configuration to a JSON-serializable dictionary.

        The dv_coercion callable is recorded by name only.
        """
        def _dataclass_to_dict(obj):
            if hasattr(obj, '__dataclass_fields__'):
                return {
                    k: _dataclass_to_dict(v)
                    for k, v in obj.__dict__.items()
                }
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, tuple):
                return list(obj)
            elif callable(obj):
                return getattr(obj, "__name__", repr(obj))
            else:
                return obj

        return _dataclass_to_dict(self)

    def save(self, path: str) -> None:
        """Save configuration to a JSON file."""
        config_dict = self.to_dict()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

    @classmethod
    def load(cls, path: str) -> "VPCConfig":
        """Load configuration from a JSON file.

        A custom dv_coercion is not restored; the default heuristic is used
        unless the saved config disabled coercion.
        """
        with open(path) as f:
            data = json.load(f)

        coercion = data.pop("dv_coercion", "default")
        binning = data.pop("binning", {})
        execution = data.pop("execution", {})
        for key in ("stratify", "ci", "events"):
            if data.get(key) is not None:
                data[key] = tuple(data[key])
        if binning.get("breaks") is not None:
            binning["breaks"] = tuple(binning["breaks"])
        return cls(
            binning=BinningConfig(**binning),
            execution=ExecutionConfig(**execution),
            dv_coercion=None if coercion is None else "default",
            **data,
        )
