"""Unit tests for survival_vpc.utils module.

Tests utility functions for directory management, versioning and table output.
"""
import os

import pandas as pd

from survival_vpc.utils import ensure_dir, get_output_paths, save_tables, versioned_name


class TestEnsureDir:
    """Tests for ensure_dir function."""

    def test_create_new_directory(self, tmp_path):
        """Test creating a new directory."""
        new_dir = tmp_path / "test_dir"
        assert not new_dir.exists()

        ensure_dir(str(new_dir))

        assert new_dir.is_dir()

    def test_existing_directory(self, tmp_path):
        """Test with existing directory (should not raise error)."""
        ensure_dir(str(tmp_path))

        assert tmp_path.exists()


class TestVersionedName:
    """Tests for versioned_name function."""

    def test_with_run_name(self):
        name = versioned_name("sim_km", run_name="rtte")

        assert name.startswith("rtte_sim_km_")
        assert len(name.split("_")[-1]) == 6

    def test_without_run_name(self):
        assert versioned_name("obs_km").startswith("obs_km_")


def test_get_output_paths(tmp_path):
    paths = get_output_paths("rtte", base=str(tmp_path))

    assert paths["tables"] == os.path.join(str(tmp_path), "rtte", "tables")
    assert all(os.path.isdir(p) for p in paths.values())


def test_save_tables_skips_missing(tmp_path):
    tables = {
        "obs_km": pd.DataFrame({"time": [0.0, 1.0], "surv": [1.0, 0.5]}),
        "sim_km": None,
    }

    paths = save_tables(tables, str(tmp_path / "tables"))

    assert list(paths) == ["obs_km"]
    pd.testing.assert_frame_equal(pd.read_csv(paths["obs_km"]), tables["obs_km"])
