"""Unit tests for survival_vpc.config module."""
import pytest

from survival_vpc.config import (
    BinningConfig,
    ColumnConfig,
    ExecutionConfig,
    ExecutionMode,
    SOFTWARE_PROFILES,
    VPCConfig,
    check_symmetric_ci,
    get_software_profile,
    select_execution_mode,
)
from survival_vpc.data import coerce_event_indicator
from survival_vpc.exceptions import AsymmetricCIError, ConfigurationError


class TestExecutionConfig:
    """Tests for ExecutionConfig and mode selection."""

    def test_defaults_sequential(self):
        config = ExecutionConfig()

        assert config.mode == ExecutionMode.PANDAS
        assert not config.is_parallel()

    def test_pandas_mode_forces_single_job(self):
        assert ExecutionConfig(n_jobs=4).n_jobs == 1

    def test_parallel(self):
        config = ExecutionConfig(mode="mp", n_jobs=4)

        assert config.mode == ExecutionMode.MULTIPROCESSING
        assert config.is_parallel()

    def test_invalid_n_jobs(self):
        with pytest.raises(ValueError, match="n_jobs"):
            ExecutionConfig(n_jobs=0)

    def test_select_execution_mode(self):
        assert select_execution_mode(50, n_cores=8) == ExecutionMode.PANDAS
        assert select_execution_mode(1000, n_cores=8) == ExecutionMode.MULTIPROCESSING
        assert select_execution_mode(1000, n_cores=1) == ExecutionMode.PANDAS

    def test_resolve_without_auto_mode(self):
        config = ExecutionConfig()

        assert config.resolve(10_000) is config

    def test_resolve_auto_mode_small(self):
        config = ExecutionConfig(auto_mode=True, n_jobs=4, replicate_threshold=100)
        resolved = config.resolve(10)

        assert resolved.mode == ExecutionMode.PANDAS
        assert resolved.n_jobs == 1
        assert not resolved.auto_mode


class TestProfiles:
    """Tests for software profiles and column resolution."""

    def test_known_profiles(self):
        assert set(SOFTWARE_PROFILES) == {"nonmem", "phoenix", "pkpdsim", "explicit"}

    def test_nonmem_columns_and_filters(self):
        profile = get_software_profile("NONMEM")

        assert profile.columns == ColumnConfig(id="ID", idv="TIME", dv="DV", sim="sim")
        assert profile.record_filter_columns == ("EVID", "MDV")
        assert profile.drop_sim_time_zero_events

    def test_unknown_profile(self):
        with pytest.raises(ConfigurationError, match="Unknown software profile"):
            VPCConfig.for_software("monolix")

    def test_overrides_merged_over_profile(self):
        config = VPCConfig.for_software("phoenix", sim_cols={"sim": "REP"})

        assert config.columns("simulation") == ColumnConfig(id="ID", idv="IVAR", dv="COBS", sim="REP")
        assert config.columns("observation").sim == "sim"

    def test_unknown_override_key(self):
        with pytest.raises(ConfigurationError, match="Unknown column keys"):
            ColumnConfig().merged({"time": "TAD"})


class TestBinningConfig:
    """Tests for BinningConfig validation."""

    def test_breaks_imply_explicit(self):
        config = BinningConfig(breaks=[5, 1])

        assert config.policy == "explicit"
        assert config.breaks == (5.0, 1.0)

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError, match="Unknown binning policy"):
            BinningConfig(policy="pretty")

    def test_explicit_without_breaks(self):
        with pytest.raises(ConfigurationError, match="requires breaks"):
            BinningConfig(policy="explicit")

    def test_too_few_bins(self):
        with pytest.raises(ConfigurationError, match="n_bins"):
            BinningConfig(policy="time", n_bins=1)


class TestValidation:
    """Tests for VPCConfig.validate and the CI check."""

    def test_no_datasets(self):
        with pytest.raises(ConfigurationError, match="At least a simulation"):
            VPCConfig().validate(has_obs=False, has_sim=False)

    def test_three_strata_rejected(self):
        config = VPCConfig(stratify=("a", "b", "c"))
        with pytest.raises(ConfigurationError, match="more than 2"):
            config.validate(has_obs=True, has_sim=True)

    def test_color_counts_towards_limit(self):
        config = VPCConfig(stratify=("a", "b"), stratify_color="c")
        with pytest.raises(ConfigurationError):
            config.validate(has_obs=True, has_sim=False)

    def test_rtte_allows_one_variable(self):
        VPCConfig(rtte=True, stratify=("dose",)).validate(has_obs=True, has_sim=True)
        with pytest.raises(ConfigurationError, match="repeated time-to-event"):
            VPCConfig(rtte=True, stratify=("dose", "sex")).validate(has_obs=True, has_sim=True)

    def test_two_color_variables(self):
        with pytest.raises(ConfigurationError, match="only 1 stratification variable for color"):
            VPCConfig(stratify_color=["sex", "dose"])

    def test_events_require_rtte(self):
        with pytest.raises(ConfigurationError, match="rtte"):
            VPCConfig(events=(1, 2)).validate(has_obs=True, has_sim=True)

    def test_asymmetric_ci(self):
        with pytest.raises(AsymmetricCIError):
            VPCConfig(ci=(0.05, 0.9)).validate(has_obs=True, has_sim=True)

    def test_symmetric_ci_returned(self):
        assert check_symmetric_ci((0.025, 0.975)) == (0.025, 0.975)

    def test_stratify_all_without_duplicates(self):
        config = VPCConfig(stratify="sex", stratify_color="sex")

        assert config.stratify_all == ("sex",)


class TestSerialization:
    """Tests for the JSON round trip."""

    def test_to_dict(self):
        config = VPCConfig(stratify=("dose",), binning=BinningConfig(policy="data", n_bins=5))
        d = config.to_dict()

        assert d["stratify"] == ["dose"]
        assert d["binning"]["policy"] == "data"
        assert d["execution"]["mode"] == "pandas"
        assert d["dv_coercion"] == "coerce_event_indicator"

    def test_save_load_roundtrip(self, tmp_path):
        config = VPCConfig.for_software(
            "nonmem",
            stratify=("dose",),
            rtte=True,
            events=(1, 2),
            binning=BinningConfig(breaks=(2.0, 6.0)),
            ci=(0.1, 0.9),
            execution=ExecutionConfig(mode="mp", n_jobs=2),
        )
        path = tmp_path / "config" / "vpc.json"

        config.save(str(path))
        loaded = VPCConfig.load(str(path))

        assert loaded == config
        assert loaded.dv_coercion is coerce_event_indicator

    def test_disabled_coercion_survives_roundtrip(self, tmp_path):
        path = tmp_path / "vpc.json"
        VPCConfig(dv_coercion=None).save(str(path))

        assert VPCConfig.load(str(path)).dv_coercion is None
