"""
ReplGuard — Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults for a deployment)
2. Environment variables (overrides and secrets)
3. Command-line flags (per-run overrides, applied by main.py)

Every tunable parameter of the engine lives here.
"""

from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Enums ────────────────────────────────────────────────────────


class PolicyTier(enum.StrEnum):
    """Authorization level bounding which remedies may be auto-applied."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class NotifyOn(enum.StrEnum):
    ALWAYS = "always"
    ISSUES = "issues"
    NEVER = "never"


# ─── Sub-configs ──────────────────────────────────────────────────


class CollectorConfig(BaseModel):
    throttle: int = Field(default=8, ge=1)
    # "Fast" profile concurrency
    fast_throttle: int = Field(default=24, ge=1)
    # Upper bound on one remote call (distinct from retry backoff)
    call_timeout_s: float = 30.0


class BackoffConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    initial_delay_s: float = 2.0
    max_delay_s: float = 30.0

    @model_validator(mode="after")
    def _check_delays(self) -> BackoffConfig:
        if self.max_delay_s < self.initial_delay_s:
            raise ValueError("max_delay_s must be >= initial_delay_s")
        return self


class DeltaConfig(BaseModel):
    enabled: bool = True
    threshold_minutes: int = Field(default=60, ge=0)
    retention_days: int = Field(default=90, ge=1)
    cache_path: str = "data/delta_cache.json"


class DetectionConfig(BaseModel):
    # Consecutive replication failures tolerated before a link is Degraded
    failure_threshold: int = Field(default=3, ge=0)
    stale_hours: float = 24.0
    very_stale_hours: float = 48.0

    @model_validator(mode="after")
    def _check_staleness(self) -> DetectionConfig:
        if self.very_stale_hours < self.stale_hours:
            raise ValueError("very_stale_hours must be >= stale_hours")
        return self


class HealingConfig(BaseModel):
    policy: PolicyTier = PolicyTier.CONSERVATIVE
    dry_run: bool = False
    rollback_enabled: bool = True
    # Wait before re-snapshotting a node to verify a remedy
    verify_wait_s: float = 30.0


class RunConfig(BaseModel):
    # Optional overall run timeout; triggers the cancellation path
    timeout_s: float | None = None
    # Upper bound on each reporter / notifier delivery
    publish_timeout_s: float = 10.0


class ReportingConfig(BaseModel):
    output_dir: str = "reports"
    formats: list[str] = Field(default_factory=lambda: ["json"])
    history_path: str = "data/history"


class NotifyConfig(BaseModel):
    webhook_urls: list[str] = Field(default_factory=list)
    notify_on: NotifyOn = NotifyOn.ISSUES


class SourceConfig(BaseModel):
    """HTTP agent adapter used by the data source and repair actuator."""

    base_url_template: str = "https://{node}:8443/replication"
    verify_tls: bool = True
    token: str = ""

    @model_validator(mode="after")
    def _strip_token(self) -> SourceConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.token:
            object.__setattr__(self, "token", self.token.strip())
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class ReplGuardConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPLGUARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    inventory_path: str = "inventory.yaml"

    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    delta: DeltaConfig = Field(default_factory=DeltaConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    healing: HealingConfig = Field(default_factory=HealingConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ReplGuardConfig:
    """
    Load configuration from YAML file, then apply environment variable
    overrides, then any explicit overrides (e.g. from the command line).
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets from environment
    if webhook := os.environ.get("REPLGUARD_WEBHOOK_URL"):
        urls = raw.setdefault("notify", {}).setdefault("webhook_urls", [])
        if webhook not in urls:
            urls.append(webhook)
    if token := os.environ.get("REPLGUARD_ACTUATOR_TOKEN"):
        raw.setdefault("source", {})["token"] = token
    if level := os.environ.get("REPLGUARD_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = level

    if overrides:
        raw = _deep_merge(raw, overrides)

    return ReplGuardConfig(**raw)
