"""Unit tests for survival_vpc.aggregate module.

Tests carry-forward resampling, per-replicate summaries, quantile
reduction and sequential/parallel equivalence.
"""
import pytest
import numpy as np
import pandas as pd

from survival_vpc.aggregate import (
    QUANTILE_COLUMNS,
    aggregate_replicates,
    map_replicates,
    resample_locf,
    summarize_quantiles,
    summarize_replicate,
)
from survival_vpc.binning import BinGrid, compute_bin_grid
from survival_vpc.config import BinningConfig, ExecutionConfig, ExecutionMode, VPCConfig
from survival_vpc.data import prepare_simulated


class TestResampleLOCF:
    """Tests for resample_locf function."""

    def test_carry_forward(self):
        """Each grid time takes the last curve value at or before it."""
        curve = pd.DataFrame({"time": [0.0, 3.0, 7.0], "surv": [1.0, 0.75, 0.5]})

        out = resample_locf(curve, [1.0, 3.0, 5.0, 7.0, 9.0])

        assert out.tolist() == [1.0, 0.75, 0.75, 0.5, 0.5]

    def test_before_first_point(self):
        curve = pd.DataFrame({"time": [2.0], "surv": [0.4]})

        assert resample_locf(curve, [1.0, 2.0], initial=1.0).tolist() == [1.0, 0.4]

    def test_value_at_breakpoints_matches_curve(self):
        """Resampled value at t equals the most recent curve value <= t."""
        rng = np.random.default_rng(3)
        times = np.concatenate([[0.0], np.sort(rng.uniform(0, 10, 15))])
        surv = np.concatenate([[1.0], np.sort(rng.uniform(0, 1, 15))[::-1]])
        curve = pd.DataFrame({"time": times, "surv": surv})
        grid = rng.uniform(0, 12, 30)

        out = resample_locf(curve, grid)

        for t, v in zip(grid, out):
            assert v == surv[times <= t][-1]


class TestSummarizeReplicate:
    """Tests for summarize_replicate function."""

    def test_one_row_per_stratum_and_bin(self):
        rep = pd.DataFrame({
            "id": [1, 2, 3, 4],
            "time": [1.0, 2.0, 3.0, 4.0],
            "dv": [1, 1, 0, 1],
            "arm": ["a", "b", "a", "b"],
        })
        grid = BinGrid(edges=(0.0, 2.0, 4.0))

        out = summarize_replicate(rep, grid, stratify=["arm"], replicate_id=7)

        assert len(out) == 4
        assert (out["sim"] == 7).all()
        assert out.loc[out["strat"] == "arm=a", "surv"].tolist() == pytest.approx([0.5, 0.5])
        assert out.loc[out["strat"] == "arm=b", "surv"].tolist() == pytest.approx([0.5, 0.0])

    def test_reverse_prob(self):
        rep = pd.DataFrame({"id": [1, 2], "time": [1.0, 2.0], "dv": [1, 0]})
        grid = BinGrid(edges=(0.0, 1.0, 2.0))

        out = summarize_replicate(rep, grid, reverse_prob=True)

        assert out["surv"].tolist() == pytest.approx([0.5, 0.5])


class TestSummarizeQuantiles:
    """Tests for summarize_quantiles function."""

    @pytest.fixture
    def values(self):
        rows = []
        for sim, surv in enumerate([0.2, 0.4, 0.6, 0.8, 1.0], start=1):
            for b in (1, 2):
                rows.append({
                    "sim": sim, "strat": "all", "bin": b,
                    "bin_min": b - 1.0, "bin_max": float(b), "bin_mid": b - 0.5,
                    "surv": surv / b,
                })
        return pd.DataFrame(rows)

    def test_linear_interpolation(self, values):
        """Quantiles interpolate between order statistics."""
        out = summarize_quantiles(values, (0.1, 0.5, 0.9))
        first = out.loc[out["bin"] == 1].iloc[0]

        assert first["q_low"] == pytest.approx(0.28)
        assert first["q_median"] == pytest.approx(0.6)
        assert first["q_high"] == pytest.approx(0.92)
        assert first["n_replicates"] == 5

    def test_ordering(self, values):
        out = summarize_quantiles(values)

        assert (out["q_low"] <= out["q_median"]).all()
        assert (out["q_median"] <= out["q_high"]).all()

    def test_single_replicate_collapses(self, values):
        """With one replicate all three quantiles are equal."""
        out = summarize_quantiles(values.loc[values["sim"] == 1])

        assert (out["q_low"] == out["q_high"]).all()
        assert (out["q_median"] == out["q_low"]).all()

    def test_rejects_unordered(self, values):
        with pytest.raises(ValueError, match="ordered"):
            summarize_quantiles(values, (0.9, 0.5, 0.1))

    def test_empty(self):
        out = summarize_quantiles(pd.DataFrame())

        assert out.empty
        assert list(QUANTILE_COLUMNS) == [c for c in out.columns if c.startswith("q_")]


class TestAggregateReplicates:
    """Tests for aggregate_replicates function."""

    @pytest.fixture
    def canonical_sim(self, small_sim):
        return prepare_simulated(small_sim, VPCConfig(stratify=("dose",)))

    def test_output_shape(self, canonical_sim):
        grid = compute_bin_grid(canonical_sim["time"], BinningConfig(policy="time", n_bins=6))

        sim_km = aggregate_replicates(canonical_sim, grid, stratify=["dose"])

        assert set(sim_km["strat"]) == {"dose=10", "dose=20"}
        assert len(sim_km) == 2 * grid.n_bins
        assert (sim_km["q_low"] <= sim_km["q_high"]).all()
        assert (sim_km["n_replicates"] == 20).all()

    def test_quantile_band_non_increasing(self, canonical_sim):
        grid = compute_bin_grid(canonical_sim["time"], BinningConfig(policy="data", n_bins=5))
        sim_km = aggregate_replicates(canonical_sim, grid)

        assert (np.diff(sim_km["q_median"].to_numpy()) <= 1e-12).all()

    def test_scale_invariance(self, canonical_sim):
        """Scaling every time scales the bins and leaves the band unchanged."""
        grid = compute_bin_grid(canonical_sim["time"], BinningConfig(policy="time", n_bins=5))
        scaled = canonical_sim.assign(time=canonical_sim["time"] * 3.0)
        scaled_grid = BinGrid(edges=tuple(e * 3.0 for e in grid.edges))

        base = aggregate_replicates(canonical_sim, grid)
        other = aggregate_replicates(scaled, scaled_grid)

        np.testing.assert_allclose(other["bin_mid"], base["bin_mid"] * 3.0)
        for col in QUANTILE_COLUMNS:
            np.testing.assert_allclose(other[col], base[col])

    def test_identical_replicates_equal_quantiles(self, canonical_sim):
        one = canonical_sim.loc[canonical_sim["sim"] == 1]
        copies = pd.concat([one.assign(sim=k) for k in (1, 2, 3)], ignore_index=True)
        grid = compute_bin_grid(one["time"], BinningConfig())

        sim_km = aggregate_replicates(copies, grid)

        np.testing.assert_allclose(sim_km["q_low"], sim_km["q_high"])

    def test_parallel_matches_sequential(self, canonical_sim):
        grid = compute_bin_grid(canonical_sim["time"], BinningConfig(policy="time", n_bins=8))
        parallel = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=2, backend="threading")

        seq = aggregate_replicates(canonical_sim, grid, stratify=["dose"])
        par = aggregate_replicates(canonical_sim, grid, stratify=["dose"], execution=parallel)

        pd.testing.assert_frame_equal(seq, par)

    def test_return_values(self, canonical_sim):
        grid = compute_bin_grid(canonical_sim["time"], BinningConfig(policy="time", n_bins=4))

        sim_km, values = aggregate_replicates(canonical_sim, grid, return_values=True)

        assert len(values) == 20 * grid.n_bins
        assert values["sim"].nunique() == 20
        assert len(sim_km) == grid.n_bins

    def test_kmmc(self, small_sim):
        sim = small_sim.assign(wt=70.0)
        canonical = prepare_simulated(sim, VPCConfig(kmmc="wt"))
        grid = compute_bin_grid(canonical["time"], BinningConfig(policy="time", n_bins=4))

        sim_km = aggregate_replicates(canonical, grid, kmmc="wt")

        np.testing.assert_allclose(sim_km["q_median"], 70.0)


def test_map_replicates_keeps_replicate_order(small_sim):
    canonical = prepare_simulated(small_sim, VPCConfig())
    grid = compute_bin_grid(canonical["time"], BinningConfig(policy="time", n_bins=3))

    values = map_replicates(canonical, grid)

    assert values["sim"].drop_duplicates().tolist() == list(range(1, 21))
