"""
Configuration schema using Pydantic.

Secrets are loaded exclusively from environment variables.
Everything else can come from a YAML file, with environment overrides on top.
"""

import os
from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Configuration is missing, unreadable or fails validation."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = list(suggestions or [])
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.field:
            parts.append(f"  Field: {self.field}")
        parts.extend(f"  Hint: {s}" for s in self.suggestions)
        return "\n".join(parts)



class Secrets(BaseSettings):
    """API credentials read from the environment (or a local .env file)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    anthropic_api_key: Optional[str] = None


class SecretsManager:
    """
    Looks up API credentials.

    The process environment wins over a local .env file. Credentials are
    never read from or written to the YAML config.
    """

    KNOWN_SECRETS = ("ANTHROPIC_API_KEY",)

    @staticmethod
    def _lookup(env_name: str) -> Optional[str]:
        value = os.environ.get(env_name)
        if not value and env_name == "ANTHROPIC_API_KEY":
            value = Secrets().anthropic_api_key
        return value or None

    @classmethod
    def get_api_key(cls, env_name: str = "ANTHROPIC_API_KEY") -> str:
        """
        API key for the reasoning model.

        Raises:
            ConfigurationError: If the variable is unset or empty
        """
        value = cls._lookup(env_name)
        if value:
            return value

        where = ".env file" if (Path.cwd() / ".env").exists() else "new .env file"
        raise ConfigurationError(
            f"API key variable '{env_name}' is not set",
            field=env_name,
            suggestions=[
                f"Add {env_name}=<key> to your {where}",
                f"Or export {env_name}=<key> before running",
            ],
        )

    @classmethod
    def get_status(cls) -> Dict[str, str]:
        """Masked value (or 'NOT SET') for each known secret."""
        status = {}
        for name in cls.KNOWN_SECRETS:
            value = cls._lookup(name)
            if not value:
                status[name] = "NOT SET"
            elif len(value) > 8:
                status[name] = value[:4] + "..." + value[-4:]
            else:
                status[name] = "****"
        return status



class ModelConfig(BaseModel):
    """Reasoning model selection."""

    model: str = Field(default="claude-opus-4-5-20251101", description="Model driving the computer-use loop")
    beta_header: str = Field(default="computer-use-2025-11-24", description="Computer-use beta flag")
    tool_type: str = Field(default="computer_20251124", pattern="^computer_(20251124|20250124)$")
    enable_zoom: bool = Field(default=False, description="Expose the zoom action (computer_20251124 only)")
    auxiliary_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model for action extraction and confirmation calls",
    )
    max_tokens: int = Field(default=4096, ge=256, le=32000)
    timeout_seconds: int = Field(default=120, ge=10, le=600)
    max_retries: int = Field(default=3, ge=0, le=10)
    api_key_env: str = Field(default="ANTHROPIC_API_KEY", description="Environment variable for API key")

    @model_validator(mode="after")
    def validate_zoom(self) -> "ModelConfig":
        """Zoom only exists on the newer tool version."""
        if self.enable_zoom and self.tool_type != "computer_20251124":
            self.enable_zoom = False
        return self


class LoopConfig(BaseModel):
    """Agent loop iteration control."""

    max_iterations: int = Field(default=30, ge=1, le=200)
    action_delay_ms: int = Field(default=1000, ge=0, le=10000, description="Settle time after each action")
    max_consecutive_action_failures: int = Field(default=3, ge=1, le=20)
    medium_confidence_check_threshold: int = Field(
        default=3, ge=1, le=20,
        description="Medium-confidence matches before asking the model to confirm",
    )
    action_mismatch_threshold: int = Field(
        default=10, ge=2, le=50,
        description="Consecutive unmatched actions before failing with action_mismatch",
    )


class StuckDetectionConfig(BaseModel):
    """Loop and no-progress detection thresholds."""

    loop_detection_window: int = Field(default=5, ge=2, le=50)
    loop_detection_threshold: int = Field(default=3, ge=2, le=50)
    max_same_action_repeats: int = Field(default=3, ge=2, le=50)
    max_unchanged_screenshots: int = Field(default=5, ge=1, le=50)
    max_no_effect_actions: int = Field(default=10, ge=2, le=100)


class ScreenChangeConfig(BaseModel):
    """Screen-change detection thresholds."""

    min_diff_ratio: float = Field(default=0.01, gt=0.0, le=1.0)
    noise_threshold: float = Field(default=0.005, ge=0.0, le=1.0)
    pixel_tolerance: int = Field(default=24, ge=0, le=255)
    sample_width: int = Field(default=160, ge=8, le=1920)
    sample_height: int = Field(default=90, ge=8, le=1080)


class HintConfig(BaseModel):
    """Hint image matching and upload limits."""

    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_image_count: int = Field(default=20, ge=1, le=100)
    max_file_size_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    max_total_size_bytes: int = Field(default=11 * 1024 * 1024, ge=1024)


class HistoryConfig(BaseModel):
    """Transcript size control."""

    keep_recent_turns: int = Field(default=20, ge=1, le=200, description="Image-bearing turns kept intact")
    purge_after_messages: int = Field(default=40, ge=2, le=1000)


class JudgeConfig(BaseModel):
    """Result classification policy."""

    progress_overrides_failure: bool = Field(
        default=True,
        description="Completed checklist wins over an explicit model-declared failure",
    )
    fallback_min_confidence: str = Field(default="medium", pattern="^(high|medium|low)$")


class RunnerConfig(BaseModel):
    """Batch runner policy."""

    stop_on_failure: bool = Field(default=False)


class SafetyConfig(BaseModel):
    """Safety guardrails."""

    stop_hotkey: str = Field(default="ctrl+shift+k")


class LoggingConfig(BaseModel):
    """Log output."""

    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[str] = None


class AgentConfig(BaseModel):
    """Root configuration for the UI test agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    stuck: StuckDetectionConfig = Field(default_factory=StuckDetectionConfig)
    screen: ScreenChangeConfig = Field(default_factory=ScreenChangeConfig)
    hints: HintConfig = Field(default_factory=HintConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    judge: JudgeConfig = Field(default_factory=JudgeConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_consistency(self) -> "AgentConfig":
        """Validate cross-field consistency."""
        if self.screen.noise_threshold >= self.screen.min_diff_ratio:
            raise ValueError(
                f"screen.noise_threshold ({self.screen.noise_threshold}) "
                f"must be < screen.min_diff_ratio ({self.screen.min_diff_ratio})"
            )

        if self.stuck.loop_detection_threshold > self.stuck.loop_detection_window:
            raise ValueError(
                f"stuck.loop_detection_threshold ({self.stuck.loop_detection_threshold}) "
                f"must be <= stuck.loop_detection_window ({self.stuck.loop_detection_window})"
            )

        return self


# Short environment names kept for common overrides
ENV_ALIASES = {
    "UITEST_MODEL": ("model", "model"),
    "UITEST_MAX_ITERATIONS": ("loop", "max_iterations"),
    "UITEST_ACTION_DELAY_MS": ("loop", "action_delay_ms"),
    "UITEST_STOP_HOTKEY": ("safety", "stop_hotkey"),
    "UITEST_LOG_LEVEL": ("logging", "level"),
}

ENV_PREFIX = "UITEST_"


def get_default_config_path() -> Path:
    return Path.home() / ".uitest-agent" / "config.yaml"


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Dict[str, str]]:
    """
    Collect section overrides from the environment.

    Accepts the short aliases above and the generic form
    UITEST_<SECTION>__<FIELD> (e.g. UITEST_HINTS__CONFIDENCE_THRESHOLD).
    Values stay strings; pydantic coerces them during validation.
    """
    environ = os.environ if environ is None else environ
    sections = set(AgentConfig.model_fields)
    overrides: Dict[str, Dict[str, str]] = {}

    for name, value in environ.items():
        if not value or not name.startswith(ENV_PREFIX):
            continue
        if name in ENV_ALIASES:
            section, field = ENV_ALIASES[name]
        else:
            section, sep, field = name[len(ENV_PREFIX):].lower().partition("__")
            if not sep or section not in sections:
                continue
        overrides.setdefault(section, {})[field] = value

    return overrides


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f"line {mark.line + 1}" if mark else "unknown position"
        raise ConfigurationError(
            f"Invalid YAML in config file: {path} ({where})",
            suggestions=["Fix the syntax error and retry"],
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file must contain a mapping: {path}",
            suggestions=["Use 'uitest config --init' to write a valid template"],
        )
    return data


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """
    Load configuration.

    Order of precedence: environment overrides, then the YAML file, then
    defaults. Without an explicit path the default file is optional.

    Args:
        config_path: Explicit config file (must exist)

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(config_path) if config_path else get_default_config_path()
    if config_path and not path.exists():
        raise ConfigurationError(
            f"Config file not found: {path}",
            suggestions=[
                "Use 'uitest config --init' to create a default config",
                "Or run without --config to use defaults",
            ],
        )

    data = _read_yaml(path) if path.exists() else {}
    for section, fields in env_overrides().items():
        current = data.get(section)
        data[section] = {**current, **fields} if isinstance(current, dict) else fields

    try:
        return AgentConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=["Run 'uitest config --show' to see the effective values"],
        ) from e


def save_config(config: AgentConfig, config_path: Optional[str] = None) -> Path:
    """Write config as YAML, creating parent directories."""
    path = Path(config_path) if config_path else get_default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

    return path
