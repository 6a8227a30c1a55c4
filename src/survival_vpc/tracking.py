from __future__ import annotations
import os
import json
import logging
import tempfile
from typing import TYPE_CHECKING, Any, Dict, Optional

import mlflow
import mlflow.exceptions

from survival_vpc.utils import save_tables

if TYPE_CHECKING:
    from survival_vpc.vpc import VPCResult

EXPERIMENT_NAME = "survival_vpc"


def start_run(run_name: str, tags: Dict[str, str] | None = None):
    """Start an MLflow run under the survival_vpc experiment.

    Example:
        >>> with start_run("rtte_vpc", tags={"model": "run42"}):
        ...     log_params({"n_bins": 10})
    """
    mlflow.set_experiment(EXPERIMENT_NAME)
    return mlflow.start_run(run_name=run_name, tags=tags)


def log_params(params: Dict[str, Any]):
    """Log parameters, stringifying values MLflow rejects."""
    for k, v in params.items():
        try:
            mlflow.log_param(k, v)
        except mlflow.exceptions.MlflowException:
            mlflow.log_param(k, str(v))


def log_metrics(metrics: Dict[str, float], step: int | None = None):
    mlflow.log_metrics(metrics, step=step)


def log_artifact(path: str):
    """Log a file artifact if it exists."""
    if os.path.exists(path):
        mlflow.log_artifact(path)


def _flatten(d: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat = {}
    for k, v in d.items():
        key = f"{prefix}{k}"
        if isinstance(v, dict):
            flat.update(_flatten(v, prefix=f"{key}."))
        else:
            flat[key] = json.dumps(v) if isinstance(v, (list, tuple)) else v
    return flat


def vpc_summary_metrics(result: "VPCResult") -> Dict[str, float]:
    """Scalar summaries of a VPC result for tracking."""
    metrics = {"n_bins": float(result.bins.n_bins) if result.bins is not None else 0.0}
    if result.obs is not None:
        metrics["n_obs_records"] = float(len(result.obs))
        metrics["n_obs_events"] = float(result.obs["dv"].sum())
    if result.sim is not None:
        metrics["n_replicates"] = float(result.sim["sim"].nunique())
    if result.sim_km is not None and len(result.sim_km):
        metrics["n_strata"] = float(result.sim_km["strat"].nunique())
        width = result.sim_km["q_high"] - result.sim_km["q_low"]
        metrics["mean_band_width"] = float(width.mean())
    elif result.obs_km is not None:
        metrics["n_strata"] = float(result.obs_km["strat"].nunique())
    return metrics


def track_vpc_run(
    result: "VPCResult",
    run_name: str = "vpc_tte",
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log configuration, summary metrics and result tables to MLflow.

    Tracking failures are logged and reported through the return value;
    they never invalidate the already computed result.

    Returns:
        True if the run was logged, False if MLflow failed
    """
    logger = logger or logging.getLogger(__name__)
    try:
        with start_run(run_name=run_name):
            log_params(_flatten(result.config.to_dict()))
            log_metrics(vpc_summary_metrics(result))
            with tempfile.TemporaryDirectory() as tmp:
                for path in save_tables(result.tables(), tmp).values():
                    log_artifact(path)
        return True
    except mlflow.exceptions.MlflowException as e:
        logger.warning(f"MLflow tracking failed: {e}", extra={"category": "mlflow_error"})
        return False
