from __future__ import annotations
import os
import datetime as dt
from typing import Dict, Optional

import pandas as pd


def ensure_dir(path: str):
    """Create directory (and parents) if it doesn't exist.

    Example:
        >>> ensure_dir("data/outputs/vpc/tables")
    """
    os.makedirs(path, exist_ok=True)


def versioned_name(base: str, run_name: Optional[str] = None) -> str:
    """Generate a timestamped name, optionally prefixed with the run name.

    Example:
        >>> versioned_name("sim_km", run_name="rtte")
        'rtte_sim_km_20250123_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if run_name:
        return f"{run_name}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(run_name: str = "vpc", base: str = "data/outputs") -> dict:
    """Standardized output directories for a run, created if missing.

    Returns:
        Dictionary with keys base_dir, tables, logs, mlruns

    Example:
        >>> get_output_paths("rtte")["tables"]
        'data/outputs/rtte/tables'
    """
    base_dir = os.path.join(base, run_name)

    paths = {
        "base_dir": base_dir,
        "tables": os.path.join(base_dir, "tables"),
        "logs": os.path.join(base_dir, "logs"),
        "mlruns": os.path.join(base_dir, "mlruns"),
    }

    for path in paths.values():
        ensure_dir(path)

    return paths


def save_tables(tables: Dict[str, Optional[pd.DataFrame]], outdir: str) -> Dict[str, str]:
    """Write each non-empty table to {outdir}/{name}.csv.

    Args:
        tables: Mapping of table name to DataFrame (None entries are skipped)
        outdir: Output directory, created if missing

    Returns:
        Mapping of table name to written file path
    """
    ensure_dir(outdir)
    paths = {}
    for name, table in tables.items():
        if table is None:
            continue
        path = os.path.join(outdir, f"{name}.csv")
        table.to_csv(path, index=False)
        paths[name] = path
    return paths
