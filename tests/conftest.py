"""Pytest configuration and shared fixtures for survival_vpc tests.

Provides small deterministic observed and simulated event tables and
resets MLflow state between tests.
"""
import pytest
import pandas as pd
import numpy as np


@pytest.fixture
def scenario_obs():
    """Four subjects: events at 3 and 7, censorings at 5 and 10.

    Returns:
        pd.DataFrame: Observed table with id, time, dv
    """
    return pd.DataFrame({
        "id": [1, 2, 3, 4],
        "time": [3.0, 5.0, 7.0, 10.0],
        "dv": [1, 0, 1, 0],
    })


@pytest.fixture
def stratified_obs():
    """Twelve subjects crossing sex (2 levels) with dose (3 levels).

    Returns:
        pd.DataFrame: Observed table with id, time, dv, sex, dose
    """
    rng = np.random.default_rng(7)
    n = 12
    return pd.DataFrame({
        "id": np.arange(1, n + 1),
        "time": np.round(rng.uniform(1, 20, n), 1),
        "dv": rng.integers(0, 2, n),
        "sex": ["M", "F"] * 6,
        "dose": [10, 10, 20, 20, 40, 40] * 2,
    })


def make_simulation(n_rep=20, n_id=30, seed=11, with_sim_col=True):
    """Exponential event times censored at t=20, replicates stacked.

    Args:
        n_rep: Number of replicates
        n_id: Subjects per replicate
        seed: Random seed
        with_sim_col: Include the explicit replicate column

    Returns:
        pd.DataFrame: Simulated table with id, time, dv, dose[, sim]
    """
    rng = np.random.default_rng(seed)
    frames = []
    for rep in range(1, n_rep + 1):
        t = rng.exponential(10.0, n_id)
        frame = pd.DataFrame({
            "id": np.arange(1, n_id + 1),
            "time": np.round(np.clip(t, 0.05, 20.0), 2),
            "dv": (t < 20.0).astype(int),
            "dose": np.where(np.arange(n_id) % 2 == 0, 10, 20),
        })
        if with_sim_col:
            frame.insert(0, "sim", rep)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def small_sim():
    """Twenty replicates of thirty subjects with an explicit sim column."""
    return make_simulation()


@pytest.fixture
def small_obs():
    """Thirty observed subjects drawn like one simulated replicate."""
    return make_simulation(n_rep=1, seed=3, with_sim_col=False)


@pytest.fixture
def rtte_obs():
    """Two subjects with repeated events and a terminal censoring record."""
    return pd.DataFrame({
        "id": [1, 1, 1, 1, 2, 2],
        "time": [2.0, 5.0, 9.0, 12.0, 4.0, 12.0],
        "dv": [1, 1, 1, 0, 1, 0],
    })


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Clean up MLflow tracking URIs after each test.

    Ensures tests don't interfere with each other's MLflow tracking.
    """
    import mlflow
    yield
    while mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)


@pytest.fixture
def simulation_factory():
    """Return the simulated-table builder for tests needing other sizes."""
    return make_simulation
