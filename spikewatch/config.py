from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import MAX_RANK


class ConfigError(ValueError):
    """Configuration that would produce silently wrong decisions."""


class DetectConfig(BaseModel):
    """Thresholds and windows for the spike decision.
    """

    poll_interval_sec: float = Field(120.0, gt=0, description="Delay between cycle completions")
    lookback_days: float = Field(3.0, gt=0, description="Per-feed sample window")
    persist_samples: int = Field(3, ge=1, description="Recent samples that must all exceed the threshold")
    min_samples: int = Field(40, ge=1, description="Minimum samples for a per-feed baseline")
    robust_z_threshold: float = Field(3.5, description="Per-feed activation threshold")
    recovery_z_threshold: float = Field(1.0, description="Recovery threshold shared by both Z tiers")
    global_lookback_days: float = Field(180.0, gt=0, description="Window for rank-bucket baselines")
    global_min_samples: int = Field(300, ge=1, description="Minimum samples for a usable bucket")
    global_robust_z_threshold: float = Field(3.0, description="Bucket-tier activation threshold")
    new_feed_min_listeners: int = Field(80, ge=0, description="Absolute listener floor")
    bucket_size: int = Field(5, description="Ranks per bucket")
    max_sample_age_days: float = Field(3.0, gt=0, description="Newest sample older than this is stale")
    recovery_takes_precedence: bool = Field(
        False,
        description=(
            "Active feed flagged both spiking and recovered recovers instead of staying Active. "
            "The built-in tiers never set both flags while recovery_z_threshold sits below both "
            "activation thresholds, so with them this switch has no effect"
        ),
    )

    @field_validator("bucket_size")
    @classmethod
    def _bucket_size_in_range(cls, v: int) -> int:
        if v <= 0 or v > MAX_RANK:
            raise ValueError(f"bucket_size must be in 1..{MAX_RANK}")
        return v

    @model_validator(mode="after")
    def _hysteresis_gap(self) -> "DetectConfig":
        if self.recovery_z_threshold >= self.robust_z_threshold:
            raise ValueError("recovery_z_threshold must be below robust_z_threshold")
        if self.recovery_z_threshold >= self.global_robust_z_threshold:
            raise ValueError("recovery_z_threshold must be below global_robust_z_threshold")
        return self

    @property
    def lookback(self) -> timedelta:
        return timedelta(days=self.lookback_days)

    @property
    def global_lookback(self) -> timedelta:
        return timedelta(days=self.global_lookback_days)

    @property
    def max_sample_age(self) -> timedelta:
        return timedelta(days=self.max_sample_age_days)


class RuntimeConfig(BaseModel):
    detect: DetectConfig = Field(default_factory=DetectConfig)
    workers: int = Field(1, ge=1, description="Feeds evaluated concurrently per cycle")
    store_timeout_sec: float = Field(10.0, gt=0)
    max_retries: int = Field(3, ge=1)
    backoff_base_sec: float = 0.5
    backoff_cap_sec: float = 10.0


# Environment variable -> DetectConfig field.
ENV_OVERRIDES: Dict[str, str] = {
    "DETECT_POLL_SECONDS": "poll_interval_sec",
    "LOOKBACK_DAYS": "lookback_days",
    "ROBUST_Z": "robust_z_threshold",
    "RECOVERY_Z": "recovery_z_threshold",
    "MIN_SAMPLES": "min_samples",
    "PERSIST_SAMPLES": "persist_samples",
    "GLOBAL_ROBUST_Z": "global_robust_z_threshold",
    "GLOBAL_NEW_FEED_MIN_LISTENERS": "new_feed_min_listeners",
    "GLOBAL_MIN_SAMPLES": "global_min_samples",
    "GLOBAL_LOOKBACK_WINDOW_DAYS": "global_lookback_days",
    "MAX_SAMPLE_AGE_DAYS": "max_sample_age_days",
    "BUCKET_SIZE": "bucket_size",
}


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    SERVICE_NAME: str = "detector"
    LOG_LEVEL: str = "INFO"

    # Detection overrides; unset means "use config.yaml or the default"
    DETECT_POLL_SECONDS: Optional[float] = None
    LOOKBACK_DAYS: Optional[float] = None
    ROBUST_Z: Optional[float] = None
    RECOVERY_Z: Optional[float] = None
    MIN_SAMPLES: Optional[int] = None
    PERSIST_SAMPLES: Optional[int] = None
    GLOBAL_ROBUST_Z: Optional[float] = None
    GLOBAL_NEW_FEED_MIN_LISTENERS: Optional[int] = None
    GLOBAL_MIN_SAMPLES: Optional[int] = None
    GLOBAL_LOOKBACK_WINDOW_DAYS: Optional[float] = None
    MAX_SAMPLE_AGE_DAYS: Optional[float] = None
    BUCKET_SIZE: Optional[int] = None

    def detect_overrides(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for env_key, field_name in ENV_OVERRIDES.items():
            value = getattr(self, env_key)
            if value is not None:
                out[field_name] = value
        return out


class AppConfig(BaseModel):
    env: EnvSettings
    runtime: RuntimeConfig

    @property
    def detect(self) -> DetectConfig:
        return self.runtime.detect

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, v):  # type: ignore[no-untyped-def]
        if isinstance(v, dict):
            return EnvSettings(**v)
        return v

    @staticmethod
    def load(config_path: Optional[Path] = None, env: Optional[EnvSettings] = None) -> "AppConfig":
        """Merge defaults, an optional YAML file and environment overrides.

        Raises ConfigError on anything invalid so the process fails at startup.
        """
        try:
            env = env if env is not None else EnvSettings()  # loads from environment and .env
        except ValidationError as ve:
            raise ConfigError(f"Invalid environment: {ve}") from ve

        raw: Dict[str, Any] = {}
        if config_path is None:
            default_path = Path("config.yaml")
            config_path = default_path if default_path.exists() else None
        elif not Path(config_path).exists():
            raise ConfigError(f"Config file not found: {config_path}")

        if config_path:
            with open(config_path, "r", encoding="utf-8") as fh:
                try:
                    raw = yaml.safe_load(fh) or {}
                except yaml.YAMLError as ye:
                    raise ConfigError(f"Invalid {config_path}: {ye}") from ye
            if not isinstance(raw, dict):
                raise ConfigError(f"Invalid {config_path}: expected a mapping at top level")

        detect_section = raw.get("detect") or {}
        if not isinstance(detect_section, dict):
            raise ConfigError("Invalid configuration: detect must be a mapping")
        detect_raw = dict(detect_section)
        detect_raw.update(env.detect_overrides())
        raw = {**raw, "detect": detect_raw}
        try:
            runtime = RuntimeConfig(**raw)
        except ValidationError as ve:
            raise ConfigError(f"Invalid configuration: {ve}") from ve
        return AppConfig(env=env, runtime=runtime)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load merged configuration from environment and optional YAML."""

    return AppConfig.load(config_path)
