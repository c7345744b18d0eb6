from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, field_validator, model_validator

from kgx.schemas import DEFAULT_MAX_RETRIES, KGXBaseModel

DEFAULT_KGX_ROOT = ".build/kgx"
DEFAULT_DATABASE_PATH = f"{DEFAULT_KGX_ROOT}/kgx.sqlite3"
DEFAULT_SHARED_SESSION_PATH = f"{DEFAULT_KGX_ROOT}/sessions/shared-storage-state.json"
DEFAULT_DIAGNOSTICS_PATH = f"{DEFAULT_KGX_ROOT}/diagnostics"
DEFAULT_APP_URL = "https://gemini.google.com/app"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
CONFIG_FILE_ENV_VAR = "KGX_CONFIG_FILE"
SHARED_SESSION_ENV_VAR = "KGX_SHARED_SESSION_JSON"

PROCESSING_ENABLED_KEY = "queue_processing_enabled"
ROTATION_STRATEGY_KEY = "account_rotation_strategy"


class RotationStrategy(str, Enum):
    first = "first"
    random = "random"
    round_robin = "round_robin"
    least_recently_used = "least_recently_used"


def _validate_relative_path(value: str) -> str:
    path = value.strip()
    if not path:
        raise ValueError("path must be non-empty")
    if path.startswith("/"):
        raise ValueError("path must be relative")
    if ".." in path.split("/"):
        raise ValueError("path cannot contain '..'")
    return path


def _parse_bool(raw: str, *, env_var: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{env_var} must be a boolean value")


def _parse_number(raw: str, *, env_var: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{env_var} must be numeric") from exc


def _parse_int(raw: str, *, env_var: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{env_var} must be an integer") from exc


class SchedulerPolicy(KGXBaseModel):
    poll_interval_seconds: float = 2.0
    disabled_poll_interval_seconds: float = 5.0
    rate_limit_cooldown_seconds: float = 3600.0
    default_max_retries: int = DEFAULT_MAX_RETRIES
    outcome_history: int = Field(default=200, ge=1)

    @field_validator("poll_interval_seconds", "disabled_poll_interval_seconds")
    @classmethod
    def validate_positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll intervals must be positive")
        return value

    @field_validator("rate_limit_cooldown_seconds")
    @classmethod
    def validate_cooldown(cls, value: float) -> float:
        if value < 0:
            raise ValueError("rate_limit_cooldown_seconds must be >= 0")
        return value

    @field_validator("default_max_retries")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("default_max_retries must be >= 0")
        return value


class BrowserSettings(KGXBaseModel):
    headless: bool = True
    app_url: str = DEFAULT_APP_URL
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1280
    viewport_height: int = 720
    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    navigation_timeout_ms: int = 120_000
    fingerprint_noise: bool = True

    @field_validator("app_url")
    @classmethod
    def validate_app_url(cls, value: str) -> str:
        text = value.strip()
        if not text.startswith(("http://", "https://")):
            raise ValueError("app_url must be an http(s) URL")
        return text

    @field_validator("viewport_width", "viewport_height", "navigation_timeout_ms")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class ExtractionPolicy(KGXBaseModel):
    substantial_length: int = 1000
    skeleton_key_marker: str = '"nodes"'
    sentinel_start: str = "<<<JSON_START>>>"
    sentinel_end: str = "<<<JSON_END>>>"
    submit_confirm_timeout_ms: int = 15_000
    generation_timeout_ms: int = 120_000
    generation_poll_ms: int = 1_000
    selector_wait_timeout_ms: int = 10_000
    selector_poll_ms: int = 500
    interstitial_rounds: int = 6
    prompt_length_tolerance: float = 0.9

    @field_validator("substantial_length")
    @classmethod
    def validate_substantial_length(cls, value: int) -> int:
        if value < 1:
            raise ValueError("substantial_length must be >= 1")
        return value

    @field_validator("prompt_length_tolerance")
    @classmethod
    def validate_tolerance(cls, value: float) -> float:
        if value <= 0 or value > 1:
            raise ValueError("prompt_length_tolerance must be in (0, 1]")
        return value

    @model_validator(mode="after")
    def validate_timing(self) -> "ExtractionPolicy":
        if self.generation_poll_ms <= 0 or self.selector_poll_ms <= 0:
            raise ValueError("poll steps must be positive")
        if self.generation_poll_ms > self.generation_timeout_ms:
            raise ValueError("generation_poll_ms must be <= generation_timeout_ms")
        if self.interstitial_rounds < 1:
            raise ValueError("interstitial_rounds must be >= 1")
        return self


class SessionSettings(KGXBaseModel):
    shared_session_path: str = DEFAULT_SHARED_SESSION_PATH
    shared_session_env_var: str = SHARED_SESSION_ENV_VAR
    manual_login_timeout_seconds: int = 300

    @field_validator("shared_session_path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        return _validate_relative_path(value)

    @field_validator("manual_login_timeout_seconds")
    @classmethod
    def validate_manual_timeout(cls, value: int) -> int:
        return max(10, min(value, 1800))


class TimingSettings(KGXBaseModel):
    random_waits: bool = True
    min_wait_ms: int = 220
    max_wait_ms: int = 900
    keystroke_min_ms: int = 40
    keystroke_max_ms: int = 140
    think_min_ms: int = 600
    think_max_ms: int = 1_800

    @model_validator(mode="after")
    def validate_ranges(self) -> "TimingSettings":
        for low, high in (
            ("min_wait_ms", "max_wait_ms"),
            ("keystroke_min_ms", "keystroke_max_ms"),
            ("think_min_ms", "think_max_ms"),
        ):
            lower = getattr(self, low)
            upper = getattr(self, high)
            if lower < 0 or upper < 0:
                raise ValueError(f"{low} and {high} must be >= 0")
            if lower > upper:
                raise ValueError(f"{low} must be <= {high}")
        return self


class ExtractorConfig(KGXBaseModel):
    database_path: str = DEFAULT_DATABASE_PATH
    diagnostics_path: str = DEFAULT_DIAGNOSTICS_PATH
    scheduler: SchedulerPolicy = Field(default_factory=SchedulerPolicy)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    extraction: ExtractionPolicy = Field(default_factory=ExtractionPolicy)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    timing: TimingSettings = Field(default_factory=TimingSettings)

    @field_validator("database_path", "diagnostics_path")
    @classmethod
    def validate_paths(cls, value: str) -> str:
        return _validate_relative_path(value)


def load_extractor_config_file(path: Path) -> ExtractorConfig:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"unable to read config file '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"unable to parse YAML config '{path}': {exc}") from exc
    if raw is None:
        return ExtractorConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"config file '{path}' must contain a mapping")
    try:
        return ExtractorConfig.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"invalid config file '{path}': {exc.errors()[0]['msg']}") from exc


_SCALAR_ENV: dict[str, tuple[tuple[str, ...], str]] = {
    "KGX_DATABASE_PATH": (("database_path",), "str"),
    "KGX_DIAGNOSTICS_PATH": (("diagnostics_path",), "str"),
    "KGX_POLL_INTERVAL_SECONDS": (("scheduler", "poll_interval_seconds"), "float"),
    "KGX_RATE_LIMIT_COOLDOWN_SECONDS": (("scheduler", "rate_limit_cooldown_seconds"), "float"),
    "KGX_DEFAULT_MAX_RETRIES": (("scheduler", "default_max_retries"), "int"),
    "KGX_HEADLESS": (("browser", "headless"), "bool"),
    "KGX_APP_URL": (("browser", "app_url"), "str"),
    "KGX_USER_AGENT": (("browser", "user_agent"), "str"),
    "KGX_FINGERPRINT_NOISE": (("browser", "fingerprint_noise"), "bool"),
    "KGX_SUBSTANTIAL_LENGTH": (("extraction", "substantial_length"), "int"),
    "KGX_GENERATION_TIMEOUT_MS": (("extraction", "generation_timeout_ms"), "int"),
    "KGX_SHARED_SESSION_PATH": (("sessions", "shared_session_path"), "str"),
    "KGX_MANUAL_LOGIN_TIMEOUT_SECONDS": (("sessions", "manual_login_timeout_seconds"), "int"),
    "KGX_ACTION_RANDOM_WAITS": (("timing", "random_waits"), "bool"),
    "KGX_ACTION_RANDOM_WAIT_MIN_MS": (("timing", "min_wait_ms"), "int"),
    "KGX_ACTION_RANDOM_WAIT_MAX_MS": (("timing", "max_wait_ms"), "int"),
}


def load_extractor_config_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    base_config: ExtractorConfig | None = None,
) -> ExtractorConfig:
    env = dict(os.environ if environ is None else environ)
    config = base_config
    if config is None:
        config_file = env.get(CONFIG_FILE_ENV_VAR, "").strip()
        config = load_extractor_config_file(Path(config_file)) if config_file else ExtractorConfig()
    payload = config.model_dump(mode="python")

    for env_var, (field_path, kind) in _SCALAR_ENV.items():
        if env_var not in env:
            continue
        raw = env[env_var]
        value: Any
        if kind == "bool":
            value = _parse_bool(raw, env_var=env_var)
        elif kind == "float":
            value = _parse_number(raw, env_var=env_var)
        elif kind == "int":
            value = _parse_int(raw, env_var=env_var)
        else:
            value = raw.strip()
        target = payload
        for key in field_path[:-1]:
            target = target[key]
        target[field_path[-1]] = value

    return ExtractorConfig.model_validate(payload)


def resolve_runtime_path(project_root: Path, relative_path: str) -> Path:
    return project_root.joinpath(relative_path)
