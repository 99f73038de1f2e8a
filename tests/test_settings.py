"""配置加载与数据模型测试"""

from datetime import timedelta

from engine.config_store import ConfigStore
from engine.models import DepartmentConfig, ExecutorDefinition
from engine.settings import AutopilotSettings, load_settings


class TestLoadSettings:

    def test_yaml_values_override_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = tmp_path / "autopilot.yaml"
        path.write_text("max_decisions: 3\ntrial_days: 14\nnot_a_setting: 1\n")

        settings = load_settings(str(path))

        assert settings.max_decisions == 3
        assert settings.trial_days == 14
        assert settings.memory_limit == 10
        assert not hasattr(settings, "not_a_setting")

    def test_environment_overrides_connection_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/autopilot")
        monkeypatch.setenv("LLM_API_KEY", "sk-test")

        settings = load_settings(str(tmp_path / "missing.yaml"))

        assert settings.database_url == "postgresql://localhost/autopilot"
        assert settings.llm_api_key == "sk-test"
        assert settings.max_call_depth == 3

    def test_unknown_frequency_uses_default(self):
        settings = AutopilotSettings()
        assert settings.frequency_for("12h") == 12
        assert settings.frequency_for("every_full_moon") == 6
        assert settings.freshness_for("scaling") == 0
        assert settings.freshness_for("unknown") == 72


class TestDepartmentConfig:

    def test_from_dict_reads_guardrails(self):
        config = DepartmentConfig.from_dict({
            "company_id": 42,
            "department": "marketing",
            "autopilot_enabled": True,
            "execution_frequency": None,
            "guardrails": {"forbidden_words": ["cheap"]},
            "require_human_approval": 1,
        })

        assert config.company_id == "42"
        assert config.execution_frequency == "6h"
        assert config.forbidden_words == ["cheap"]
        assert config.require_human_approval is True
        assert config.daily_credit_limit == 10

    def test_daily_limit_prefers_explicit_value(self):
        config = DepartmentConfig(company_id="c", department="sales", max_credits_per_day=25)
        assert config.daily_credit_limit == 25

    def test_rate_limit_per_type(self):
        config = DepartmentConfig(company_id="c", department="sales", rate_limits={"qualify_lead": 2})
        assert config.rate_limit_for("qualify_lead") == 2
        assert config.rate_limit_for("alert_stalled") == 10


def test_executor_from_row():
    executor = ExecutorDefinition.from_dict({
        "internal_code": "MKT-CONTENT",
        "edge_function_name": "content-creator",
        "credits_per_use": None,
    })

    assert executor.code == "MKT-CONTENT"
    assert executor.endpoint == "content-creator"
    assert executor.credits_per_use == 1


class TestFrequencyGate:

    def test_never_executed_is_due(self, store, settings, make_config):
        assert ConfigStore(store, settings).is_due(make_config("sales"))

    def test_window_boundary(self, store, settings, make_config, now):
        gate = ConfigStore(store, settings)
        config = make_config("sales", execution_frequency="2h", last_execution_at=now - timedelta(hours=2))

        assert gate.is_due(config, now)
        assert not gate.is_due(config, now - timedelta(minutes=1))
