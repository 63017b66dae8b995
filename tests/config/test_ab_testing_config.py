# A/Bテスト設定クラスの単体テスト

import pytest

from src.config import ABTestingConfig, ab_testing_config


class TestDefaults:
    """デフォルト値のテスト"""

    def test_statistics_defaults(self):
        config = ABTestingConfig()
        assert config.default_significance_level == 0.05
        assert config.default_power == 0.8
        assert config.default_minimum_sample_size == 100
        assert config.minimum_test_duration_days == 7

    def test_operational_defaults(self):
        config = ABTestingConfig()
        assert config.enabled is True
        assert config.max_concurrent_tests == 10
        assert config.auto_analysis_interval == 3600.0
        assert config.analysis_trigger_every == 100
        assert config.retention_period_days == 90
        assert config.anonymize_data is True
        assert config.audit_logging is True

    def test_module_instance(self):
        assert isinstance(ab_testing_config, ABTestingConfig)


class TestValidation:
    """範囲外の値のテスト"""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"default_significance_level": 0.0},
            {"default_significance_level": 1.0},
            {"default_power": 1.5},
            {"default_minimum_sample_size": 0},
            {"max_concurrent_tests": 0},
            {"auto_analysis_interval": 0},
            {"analysis_trigger_every": -1},
            {"retention_period_days": 0},
            {"minimum_test_duration_days": -1},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ABTestingConfig(**kwargs)

    def test_trigger_can_be_disabled(self):
        assert ABTestingConfig(analysis_trigger_every=0).analysis_trigger_every == 0


class TestDictConversion:
    """from_dict / to_dict のテスト"""

    def test_from_dict(self):
        config = ABTestingConfig.from_dict({"max_concurrent_tests": 3, "anonymize_data": False})
        assert config.max_concurrent_tests == 3
        assert config.anonymize_data is False
        assert config.default_power == 0.8

    def test_unknown_keys(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            ABTestingConfig.from_dict({"max_tests": 3})

    def test_to_dict(self):
        data = ABTestingConfig(retention_period_days=30).to_dict()
        assert data["retention_period_days"] == 30
        assert set(data) >= {"enabled", "max_concurrent_tests", "audit_logging"}
