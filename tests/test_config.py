"""
Configuration Tests

1. Defaults - automation ships disabled
2. YAML round trip through ConfigManager
3. ConfigValidator errors and warnings
4. Per-project suggestion overrides and protected-branch globs
"""

from datetime import datetime

import pytest
import yaml

from devflow.config import (
    AppConfig,
    AutomationConfig,
    AutomationMode,
    ConfigError,
    ConfigManager,
    ConfigValidator,
    GitWorkflowConfig,
    ProjectConfig,
    WorkingHours,
)
from tests.conftest import app_config


class TestDefaults:
    def test_automation_is_off(self):
        config = AutomationConfig()
        assert not config.enabled
        assert config.mode == AutomationMode.OFF.value
        assert not config.is_active

    def test_thresholds(self):
        thresholds = AutomationConfig().thresholds
        assert (thresholds.confidence, thresholds.auto_execute, thresholds.require_approval) == (0.7, 0.95, 0.5)

    def test_safety_and_learning(self):
        config = AutomationConfig()
        assert config.safety.max_actions_per_hour == 10
        assert not config.safety.emergency_stop
        assert config.learning.enabled
        assert config.learning.implicit_approval_timeout == 3600.0


class TestConfigManager:
    def test_missing_file_yields_defaults(self, temp_dir):
        config = ConfigManager(temp_dir / "absent.yml").load()
        assert config.automation.mode == AutomationMode.OFF.value
        assert config.projects == []

    def test_malformed_file_yields_defaults(self, temp_dir):
        path = temp_dir / "config.yml"
        path.write_text("automation: [unclosed\n")
        assert ConfigManager(path).load().automation.enabled is False

    def test_save_and_reload(self, temp_dir):
        path = temp_dir / "config.yml"
        config = app_config(temp_dir)
        config.automation.preferences.working_hours = WorkingHours("08:30", "17:00")
        config.automation.safety.test_command = ["pytest", "-q"]
        config.projects = [ProjectConfig(path="/work/demo", github_repo="acme/demo", reviewers=["alice"])]

        ConfigManager(path).save(config)
        reloaded = ConfigManager(path).load()

        assert reloaded.automation.enabled
        assert reloaded.automation.mode == AutomationMode.AUTONOMOUS.value
        assert reloaded.automation.llm.provider == "stub"
        assert reloaded.automation.preferences.working_hours.start == "08:30"
        assert reloaded.automation.safety.test_command == ["pytest", "-q"]
        assert reloaded.get_project("/work/demo").reviewers == ["alice"]
        assert reloaded.data_dir == temp_dir

    def test_yaml_uses_snake_case_sections(self, temp_dir):
        path = temp_dir / "config.yml"
        ConfigManager(path).save(AppConfig())
        data = yaml.safe_load(path.read_text())
        assert set(data) >= {"git_workflow", "suggestions", "monitoring", "automation", "projects"}

    def test_test_command_string_is_split(self):
        config = AutomationConfig.from_dict({"safety": {"test_command": "npm test --silent"}})
        assert config.safety.test_command == ["npm", "test", "--silent"]

    def test_data_dir_from_environment(self, temp_dir, monkeypatch):
        monkeypatch.setenv("DEVFLOW_DATA_DIR", str(temp_dir / "data"))
        assert ConfigManager(temp_dir / "absent.yml").load().data_dir == temp_dir / "data"

    def test_unwritable_path_raises(self, temp_dir):
        blocker = temp_dir / "blocker"
        blocker.write_text("")
        with pytest.raises(ConfigError):
            ConfigManager(blocker / "config.yml").save(AppConfig())

    def test_get_caches(self, temp_dir):
        manager = ConfigManager(temp_dir / "config.yml")
        assert manager.get() is manager.get()


class TestConfigValidator:
    @pytest.fixture
    def validator(self):
        return ConfigValidator()

    def _fields(self, issues):
        return [issue.field for issue in issues]

    def test_defaults_are_valid(self, validator):
        result = validator.validate(AppConfig())
        assert result.valid
        assert result.errors == []

    def test_invalid_mode_and_provider(self, validator):
        config = AppConfig()
        config.automation.mode = "turbo"
        config.automation.llm.provider = "mystery"

        result = validator.validate(config)
        assert not result.valid
        assert self._fields(result.errors) == ["automation.mode", "automation.llm.provider"]

    def test_thresholds_out_of_range(self, validator):
        config = AppConfig()
        config.automation.thresholds.auto_execute = 1.5
        result = validator.validate(config)
        assert "automation.thresholds.auto_execute" in self._fields(result.errors)

    def test_bad_working_hours(self, validator):
        config = AppConfig()
        config.automation.preferences.working_hours = WorkingHours("9am", "17:00")
        result = validator.validate(config)
        assert self._fields(result.errors) == ["automation.preferences.working_hours.start"]

    def test_negative_limits(self, validator):
        config = AppConfig()
        config.automation.safety.max_actions_per_hour = -1
        config.automation.learning.implicit_approval_timeout = -5
        result = validator.validate(config)
        assert self._fields(result.errors) == [
            "automation.safety.max_actions_per_hour",
            "automation.learning.implicit_approval_timeout",
        ]

    def test_autonomous_without_tests_warns(self, validator, temp_dir):
        result = validator.validate(app_config(temp_dir))
        assert result.valid
        assert "automation.safety.require_tests_pass" in self._fields(result.warnings)

    def test_missing_api_key_warns(self, validator, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        config = AppConfig()
        config.automation.enabled = True
        config.automation.mode = AutomationMode.ASSISTED.value

        result = validator.validate(config)
        assert "automation.llm.api_key_env" in self._fields(result.warnings)

    def test_auto_execute_below_confidence_warns(self, validator):
        config = AppConfig()
        config.automation.thresholds.auto_execute = 0.6
        assert "automation.thresholds" in self._fields(validator.validate(config).warnings)


class TestWorkflowAndOverrides:
    def test_protected_branch_globs(self):
        workflow = GitWorkflowConfig(protected_branches=["main", "release/*"])
        assert workflow.is_protected("main")
        assert workflow.is_protected("release/1.2")
        assert not workflow.is_protected("feature/login")

    def test_project_suggestion_overrides(self):
        config = AppConfig(projects=[
            ProjectConfig(path="/work/demo", suggestions={"commit_threshold": 9, "pr_suggestions": False}),
        ])

        merged = config.suggestion_config_for("/work/demo")
        assert merged.large_changeset.threshold == 9
        assert not merged.pr_suggestions
        assert config.suggestion_config_for("/elsewhere").large_changeset.threshold == 5

    def test_working_hours_wrap_midnight(self):
        night = WorkingHours("22:00", "06:00")
        assert night.contains(datetime(2024, 3, 4, 23, 30))
        assert night.contains(datetime(2024, 3, 5, 5, 0))
        assert not night.contains(datetime(2024, 3, 5, 12, 0))
