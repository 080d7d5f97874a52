"""
Configuration

YAML-backed configuration for the workflow assistant.

Sections:
- git_workflow: main branch, protected branches (globs allowed), branch prefixes
- suggestions: rule-based suggestion toggles and thresholds
- monitoring: conversation tracking, polling interval
- automation: mode, LLM provider, thresholds, preferences, safety, learning
- projects: per-project repo and suggestion overrides

Priority (highest to lowest):
1. Environment variables (DEVFLOW_CONFIG, DEVFLOW_DATA_DIR)
2. Config file (~/.config/devflow/config.yml)
3. Default values

The core reads values at decision time. There is no hot-reload.
"""

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

logger = logging.getLogger("config")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
CONFIG_DIR = Path.home() / ".config" / "devflow"
CONFIG_PATH = Path(os.getenv("DEVFLOW_CONFIG", str(CONFIG_DIR / "config.yml")))
DEFAULT_DATA_DIR = CONFIG_DIR / "data"

TIME_FORMAT = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ConfigError(Exception):
    """Raised when a config file cannot be read or written."""


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class AutomationMode(str, Enum):
    """Automation operating modes."""
    OFF = "off"
    LEARNING = "learning"
    ASSISTED = "assisted"
    AUTONOMOUS = "autonomous"


class LLMProviderName(str, Enum):
    """Supported decision providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    STUB = "stub"


class CommitStyle(str, Enum):
    CONVENTIONAL = "conventional"
    DESCRIPTIVE = "descriptive"
    CUSTOM = "custom"


# -----------------------------------------------------------------------------
# Git Workflow
# -----------------------------------------------------------------------------
@dataclass
class GitWorkflowConfig:
    """Branching policy for managed projects."""
    main_branch: str = "main"
    protected_branches: List[str] = field(default_factory=lambda: ["main", "develop"])
    branch_prefixes: Dict[str, str] = field(default_factory=lambda: {
        "feature": "feature/",
        "bugfix": "bugfix/",
        "refactor": "refactor/",
    })

    def is_protected(self, branch: str) -> bool:
        """Protected branch entries may be exact names or globs like release/*."""
        return any(branch == p or fnmatch(branch, p) for p in self.protected_branches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "main_branch": self.main_branch,
            "protected_branches": list(self.protected_branches),
            "branch_prefixes": dict(self.branch_prefixes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GitWorkflowConfig":
        default = cls()
        return cls(
            main_branch=data.get("main_branch", default.main_branch),
            protected_branches=list(data.get("protected_branches", default.protected_branches)),
            branch_prefixes={**default.branch_prefixes, **(data.get("branch_prefixes") or {})},
        )


# -----------------------------------------------------------------------------
# Suggestions
# -----------------------------------------------------------------------------
@dataclass
class TimeRemindersConfig:
    enabled: bool = True
    warning_threshold_minutes: int = 120
    reminder_threshold_minutes: int = 60


@dataclass
class LargeChangesetConfig:
    enabled: bool = True
    threshold: int = 5


@dataclass
class SuggestionConfig:
    """Toggles for the rule-based suggestion heuristics."""
    enabled: bool = True
    protected_branch_warnings: bool = True
    time_reminders: TimeRemindersConfig = field(default_factory=TimeRemindersConfig)
    large_changeset: LargeChangesetConfig = field(default_factory=LargeChangesetConfig)
    pattern_recognition: bool = True
    pr_suggestions: bool = True
    change_pattern_suggestions: bool = True
    branch_suggestions: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "protected_branch_warnings": self.protected_branch_warnings,
            "time_reminders": {
                "enabled": self.time_reminders.enabled,
                "warning_threshold_minutes": self.time_reminders.warning_threshold_minutes,
                "reminder_threshold_minutes": self.time_reminders.reminder_threshold_minutes,
            },
            "large_changeset": {
                "enabled": self.large_changeset.enabled,
                "threshold": self.large_changeset.threshold,
            },
            "pattern_recognition": self.pattern_recognition,
            "pr_suggestions": self.pr_suggestions,
            "change_pattern_suggestions": self.change_pattern_suggestions,
            "branch_suggestions": self.branch_suggestions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuggestionConfig":
        reminders = data.get("time_reminders") or {}
        changeset = data.get("large_changeset") or {}
        return cls(
            enabled=data.get("enabled", True),
            protected_branch_warnings=data.get("protected_branch_warnings", True),
            time_reminders=TimeRemindersConfig(
                enabled=reminders.get("enabled", True),
                warning_threshold_minutes=reminders.get("warning_threshold_minutes", 120),
                reminder_threshold_minutes=reminders.get("reminder_threshold_minutes", 60),
            ),
            large_changeset=LargeChangesetConfig(
                enabled=changeset.get("enabled", True),
                threshold=changeset.get("threshold", 5),
            ),
            pattern_recognition=data.get("pattern_recognition", True),
            pr_suggestions=data.get("pr_suggestions", True),
            change_pattern_suggestions=data.get("change_pattern_suggestions", True),
            branch_suggestions=data.get("branch_suggestions", True),
        )


# -----------------------------------------------------------------------------
# Monitoring
# -----------------------------------------------------------------------------
@dataclass
class MonitoringConfig:
    enabled: bool = True
    conversation_tracking: bool = True
    auto_suggestions: bool = True
    commit_threshold: int = 5
    release_threshold: Dict[str, int] = field(default_factory=lambda: {"features": 3, "bugfixes": 10})
    git_poll_interval: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "conversation_tracking": self.conversation_tracking,
            "auto_suggestions": self.auto_suggestions,
            "commit_threshold": self.commit_threshold,
            "release_threshold": dict(self.release_threshold),
            "git_poll_interval": self.git_poll_interval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringConfig":
        default = cls()
        return cls(
            enabled=data.get("enabled", True),
            conversation_tracking=data.get("conversation_tracking", True),
            auto_suggestions=data.get("auto_suggestions", True),
            commit_threshold=data.get("commit_threshold", default.commit_threshold),
            release_threshold={**default.release_threshold, **(data.get("release_threshold") or {})},
            git_poll_interval=float(data.get("git_poll_interval", default.git_poll_interval)),
        )


# -----------------------------------------------------------------------------
# Automation
# -----------------------------------------------------------------------------
@dataclass
class LLMSettings:
    provider: str = LLMProviderName.ANTHROPIC.value
    model: str = "claude-3-5-sonnet-latest"
    temperature: float = 0.3
    max_tokens: int = 1024
    api_key_env: Optional[str] = "ANTHROPIC_API_KEY"


@dataclass
class Thresholds:
    confidence: float = 0.7
    auto_execute: float = 0.95
    require_approval: float = 0.5


@dataclass
class WorkingHours:
    start: str = "09:00"
    end: str = "18:00"
    timezone: Optional[str] = None

    def contains(self, moment: datetime) -> bool:
        """HH:MM string comparison; a window with start > end wraps midnight."""
        current = moment.strftime("%H:%M")
        if self.start <= self.end:
            return self.start <= current <= self.end
        return current >= self.start or current <= self.end


@dataclass
class AutomationPreferences:
    commit_style: str = CommitStyle.CONVENTIONAL.value
    commit_frequency: str = "moderate"
    risk_tolerance: str = "medium"
    working_hours: Optional[WorkingHours] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "commit_style": self.commit_style,
            "commit_frequency": self.commit_frequency,
            "risk_tolerance": self.risk_tolerance,
        }
        if self.working_hours:
            data["working_hours"] = {
                "start": self.working_hours.start,
                "end": self.working_hours.end,
                "timezone": self.working_hours.timezone,
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationPreferences":
        hours = data.get("working_hours")
        return cls(
            commit_style=data.get("commit_style", CommitStyle.CONVENTIONAL.value),
            commit_frequency=data.get("commit_frequency", "moderate"),
            risk_tolerance=data.get("risk_tolerance", "medium"),
            working_hours=WorkingHours(
                start=str(hours.get("start", "09:00")),
                end=str(hours.get("end", "18:00")),
                timezone=hours.get("timezone"),
            ) if hours else None,
        )


@dataclass
class SafetySettings:
    max_actions_per_hour: int = 10
    protected_files: List[str] = field(default_factory=list)
    require_tests_pass: bool = False
    test_command: Optional[List[str]] = None
    pause_on_errors: bool = True
    emergency_stop: bool = False


@dataclass
class LearningSettings:
    enabled: bool = True
    store_feedback: bool = True
    adapt_to_patterns: bool = True
    preference_learning: bool = True
    implicit_approval_timeout: float = 3600.0


@dataclass
class AutomationConfig:
    """
    Automation policy consumed by the decision agent, safety validator and
    learning engine.

    Defaults are conservative: disabled, mode off.
    """
    enabled: bool = False
    mode: str = AutomationMode.OFF.value
    llm: LLMSettings = field(default_factory=LLMSettings)
    thresholds: Thresholds = field(default_factory=Thresholds)
    preferences: AutomationPreferences = field(default_factory=AutomationPreferences)
    safety: SafetySettings = field(default_factory=SafetySettings)
    learning: LearningSettings = field(default_factory=LearningSettings)

    @property
    def is_active(self) -> bool:
        return self.enabled and self.mode != AutomationMode.OFF.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mode": self.mode,
            "llm": {
                "provider": self.llm.provider,
                "model": self.llm.model,
                "temperature": self.llm.temperature,
                "max_tokens": self.llm.max_tokens,
                "api_key_env": self.llm.api_key_env,
            },
            "thresholds": {
                "confidence": self.thresholds.confidence,
                "auto_execute": self.thresholds.auto_execute,
                "require_approval": self.thresholds.require_approval,
            },
            "preferences": self.preferences.to_dict(),
            "safety": {
                "max_actions_per_hour": self.safety.max_actions_per_hour,
                "protected_files": list(self.safety.protected_files),
                "require_tests_pass": self.safety.require_tests_pass,
                "test_command": list(self.safety.test_command) if self.safety.test_command else None,
                "pause_on_errors": self.safety.pause_on_errors,
                "emergency_stop": self.safety.emergency_stop,
            },
            "learning": {
                "enabled": self.learning.enabled,
                "store_feedback": self.learning.store_feedback,
                "adapt_to_patterns": self.learning.adapt_to_patterns,
                "preference_learning": self.learning.preference_learning,
                "implicit_approval_timeout": self.learning.implicit_approval_timeout,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationConfig":
        llm = data.get("llm") or {}
        thresholds = data.get("thresholds") or {}
        safety = data.get("safety") or {}
        learning = data.get("learning") or {}
        test_command = safety.get("test_command")
        if isinstance(test_command, str):
            test_command = test_command.split()
        return cls(
            enabled=bool(data.get("enabled", False)),
            mode=data.get("mode", AutomationMode.OFF.value),
            llm=LLMSettings(
                provider=llm.get("provider", LLMProviderName.ANTHROPIC.value),
                model=llm.get("model", LLMSettings.model),
                temperature=llm.get("temperature", 0.3),
                max_tokens=llm.get("max_tokens", 1024),
                api_key_env=llm.get("api_key_env", LLMSettings.api_key_env),
            ),
            thresholds=Thresholds(
                confidence=thresholds.get("confidence", 0.7),
                auto_execute=thresholds.get("auto_execute", 0.95),
                require_approval=thresholds.get("require_approval", 0.5),
            ),
            preferences=AutomationPreferences.from_dict(data.get("preferences") or {}),
            safety=SafetySettings(
                max_actions_per_hour=safety.get("max_actions_per_hour", 10),
                protected_files=list(safety.get("protected_files") or []),
                require_tests_pass=safety.get("require_tests_pass", False),
                test_command=test_command,
                pause_on_errors=safety.get("pause_on_errors", True),
                emergency_stop=safety.get("emergency_stop", False),
            ),
            learning=LearningSettings(
                enabled=learning.get("enabled", True),
                store_feedback=learning.get("store_feedback", True),
                adapt_to_patterns=learning.get("adapt_to_patterns", True),
                preference_learning=learning.get("preference_learning", True),
                implicit_approval_timeout=float(learning.get("implicit_approval_timeout", 3600.0)),
            ),
        )


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------
@dataclass
class ProjectConfig:
    path: str
    github_repo: str = ""
    reviewers: List[str] = field(default_factory=list)
    suggestions: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"path": self.path, "github_repo": self.github_repo}
        if self.reviewers:
            data["reviewers"] = list(self.reviewers)
        if self.suggestions:
            data["suggestions"] = copy.deepcopy(self.suggestions)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        return cls(
            path=str(data["path"]),
            github_repo=data.get("github_repo", ""),
            reviewers=list(data.get("reviewers") or []),
            suggestions=dict(data.get("suggestions") or {}),
        )


@dataclass
class AppConfig:
    """Complete configuration."""
    git_workflow: GitWorkflowConfig = field(default_factory=GitWorkflowConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    projects: List[ProjectConfig] = field(default_factory=list)
    data_dir: Path = DEFAULT_DATA_DIR

    def get_project(self, project_path: str) -> Optional[ProjectConfig]:
        for project in self.projects:
            if project.path == project_path:
                return project
        return None

    def suggestion_config_for(self, project_path: str) -> SuggestionConfig:
        """Global suggestion config with per-project overrides applied."""
        project = self.get_project(project_path)
        if not project or not project.suggestions:
            return self.suggestions
        merged = _deep_merge(self.suggestions.to_dict(), project.suggestions)
        # Legacy key used by older configs
        if "commit_threshold" in project.suggestions:
            merged["large_changeset"]["threshold"] = project.suggestions["commit_threshold"]
        return SuggestionConfig.from_dict(merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "git_workflow": self.git_workflow.to_dict(),
            "suggestions": self.suggestions.to_dict(),
            "monitoring": self.monitoring.to_dict(),
            "automation": self.automation.to_dict(),
            "projects": [p.to_dict() for p in self.projects],
            "data_dir": str(self.data_dir),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        data_dir = data.get("data_dir") or data.get("dataDir")
        return cls(
            git_workflow=GitWorkflowConfig.from_dict(data.get("git_workflow") or {}),
            suggestions=SuggestionConfig.from_dict(data.get("suggestions") or {}),
            monitoring=MonitoringConfig.from_dict(data.get("monitoring") or {}),
            automation=AutomationConfig.from_dict(data.get("automation") or {}),
            projects=[ProjectConfig.from_dict(p) for p in data.get("projects") or []],
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
        )


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ConfigIssue:
    field: str
    message: str


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)


class ConfigValidator:
    """Checks automation settings for invalid values and risky combinations."""

    def validate(self, config: AppConfig) -> ValidationResult:
        errors: List[ConfigIssue] = []
        warnings: List[ConfigIssue] = []
        automation = config.automation

        valid_modes = [m.value for m in AutomationMode]
        if automation.mode not in valid_modes:
            errors.append(ConfigIssue(
                "automation.mode",
                f"Invalid mode '{automation.mode}'. Must be one of: {', '.join(valid_modes)}",
            ))

        valid_providers = [p.value for p in LLMProviderName]
        if automation.llm.provider not in valid_providers:
            errors.append(ConfigIssue(
                "automation.llm.provider",
                f"Invalid LLM provider '{automation.llm.provider}'. Must be one of: {', '.join(valid_providers)}",
            ))

        if not 0 <= automation.llm.temperature <= 1:
            errors.append(ConfigIssue(
                "automation.llm.temperature",
                "Temperature must be between 0 and 1",
            ))

        for name in ("confidence", "auto_execute", "require_approval"):
            value = getattr(automation.thresholds, name)
            if not 0 <= value <= 1:
                errors.append(ConfigIssue(
                    f"automation.thresholds.{name}",
                    "Threshold must be between 0 and 1",
                ))

        if automation.thresholds.auto_execute < automation.thresholds.confidence:
            warnings.append(ConfigIssue(
                "automation.thresholds",
                "auto_execute threshold is lower than confidence threshold",
            ))

        valid_styles = [s.value for s in CommitStyle]
        if automation.preferences.commit_style not in valid_styles:
            errors.append(ConfigIssue(
                "automation.preferences.commit_style",
                f"Invalid commit style '{automation.preferences.commit_style}'",
            ))

        hours = automation.preferences.working_hours
        if hours:
            for name in ("start", "end"):
                value = getattr(hours, name)
                if not TIME_FORMAT.match(value):
                    errors.append(ConfigIssue(
                        f"automation.preferences.working_hours.{name}",
                        f"Invalid time format '{value}'. Use HH:MM",
                    ))

        if automation.safety.max_actions_per_hour < 0:
            errors.append(ConfigIssue(
                "automation.safety.max_actions_per_hour",
                "max_actions_per_hour must not be negative",
            ))

        if automation.learning.implicit_approval_timeout < 0:
            errors.append(ConfigIssue(
                "automation.learning.implicit_approval_timeout",
                "implicit_approval_timeout must not be negative",
            ))

        if automation.enabled and automation.mode == AutomationMode.AUTONOMOUS.value:
            if not automation.safety.require_tests_pass:
                warnings.append(ConfigIssue(
                    "automation.safety.require_tests_pass",
                    "Tests are not required to pass in autonomous mode",
                ))
            if automation.safety.max_actions_per_hour > 50:
                warnings.append(ConfigIssue(
                    "automation.safety.max_actions_per_hour",
                    f"High action limit ({automation.safety.max_actions_per_hour}) in autonomous mode",
                ))

        if automation.mode == AutomationMode.LEARNING.value and not automation.learning.enabled:
            warnings.append(ConfigIssue(
                "automation.learning",
                'Learning is disabled but mode is set to "learning"',
            ))

        if automation.enabled and automation.llm.provider != LLMProviderName.STUB.value:
            key_env = automation.llm.api_key_env
            if key_env and not os.getenv(key_env):
                warnings.append(ConfigIssue(
                    "automation.llm.api_key_env",
                    f'API key environment variable "{key_env}" is not set',
                ))

        if automation.enabled and automation.mode == AutomationMode.OFF.value:
            warnings.append(ConfigIssue(
                "automation.mode",
                'Automation is enabled but mode is "off"',
            ))

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


# -----------------------------------------------------------------------------
# Config Manager
# -----------------------------------------------------------------------------
class ConfigManager:
    """
    Loads and saves the YAML config file.

    A missing file yields defaults. A malformed file is logged and also
    yields defaults so the assistant keeps running in suggestion-only mode.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = Path(config_path) if config_path else CONFIG_PATH
        self._config: Optional[AppConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> AppConfig:
        data: Dict[str, Any] = {}
        if self._config_path.exists():
            try:
                with open(self._config_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, IOError) as e:
                logger.error(f"Failed to load config {self._config_path}: {e}")
                data = {}

        config = AppConfig.from_dict(data)
        env_data_dir = os.getenv("DEVFLOW_DATA_DIR")
        if env_data_dir:
            config.data_dir = Path(env_data_dir).expanduser()

        self._config = config
        return config

    def get(self) -> AppConfig:
        if self._config is None:
            return self.load()
        return self._config

    def save(self, config: AppConfig) -> None:
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._config_path, "w") as f:
                yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
        except IOError as e:
            raise ConfigError(f"Failed to write config {self._config_path}: {e}") from e
        self._config = config
        logger.info(f"Saved config: {self._config_path}")
