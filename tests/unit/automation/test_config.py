"""Unit tests for AutomationConfig."""

from src.shared.automation.config import AutomationConfig


class TestAutomationConfig:
    def test_defaults(self):
        config = AutomationConfig()

        assert config.http_timeout_seconds == 30
        assert config.execution_store_type == "memory"
        assert config.firewall_type == "dry_run"
        assert config.incident_provider_type == "none"

    def test_from_dict(self):
        config = AutomationConfig.from_dict({"http_timeout_seconds": 5, "max_workers": 2})

        assert config.http_timeout_seconds == 5
        assert config.max_workers == 2
        assert config.smtp_timeout_seconds == 30

    def test_from_empty_dict(self):
        assert AutomationConfig.from_dict(None) == AutomationConfig()

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_HTTP_TIMEOUT", "12")
        monkeypatch.setenv("AUTOMATION_SMTP_STARTTLS", "false")
        monkeypatch.setenv("AUTOMATION_EXECUTION_STORE", "dynamodb")
        monkeypatch.setenv("EXECUTION_TABLE", "prod-executions")
        monkeypatch.setenv("AUTOMATION_INCIDENT_PROVIDER", "dynamodb")
        monkeypatch.setenv("INCIDENT_TABLE", "prod-incidents")

        config = AutomationConfig.from_environment()

        assert config.http_timeout_seconds == 12
        assert config.smtp_starttls is False
        assert config.execution_store_type == "dynamodb"
        assert config.execution_table == "prod-executions"
        assert config.incident_provider_type == "dynamodb"
        assert config.incident_table == "prod-incidents"

    def test_dict_round_trip(self):
        config = AutomationConfig(waf_ip_set_name="blocked", region="eu-west-1")

        assert AutomationConfig.from_dict(config.to_dict()) == config
