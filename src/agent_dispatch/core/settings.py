"""
Centralized settings for agent-dispatch.

Manifesto:
    One validated, cached settings object holds every tunable the engine,
    the store and the job backends read: creation defaults, orchestrator
    placement, pagination limits and logging. Components receive the
    settings object explicitly; nothing reads the environment on its own.

All fields can be set via ``AGENT_DISPATCH_*`` environment variables (e.g.
``AGENT_DISPATCH_K8S_NAMESPACE=agents``) or through a ``.env`` file.

Tags:
    configuration, settings, pydantic, caching, agent-dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DispatchSettings(BaseSettings):
    """agent-dispatch configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Service ──────────────────────────────────────────────────
    service_name: str = Field(default="agent-dispatch")
    debug: bool = Field(default=False)

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///data/agent_dispatch.db")

    # ── Execution defaults ───────────────────────────────────────
    default_model: str = Field(default="claude-sonnet-4-20250514")
    default_max_tokens: int = Field(default=4096, ge=1)
    default_timeout_seconds: int = Field(default=1800, ge=1)
    prompt_max_length: int = Field(default=100_000, ge=1)

    # ── Orchestrator ─────────────────────────────────────────────
    job_name_prefix: str = Field(default="claude-agent")
    k8s_namespace: str = Field(default="claude-agent")
    kubeconfig: str | None = Field(default=None, description="Explicit kubeconfig path")
    agent_image: str = Field(default="ghcr.io/claude-agent/agent:latest")
    cpu_request: str = Field(default="500m")
    memory_request: str = Field(default="1Gi")
    cpu_limit: str = Field(default="1000m")
    memory_limit: str = Field(default="2Gi")
    job_timeout_seconds: int = Field(default=3600, ge=1)
    job_ttl_seconds: int = Field(default=3600, ge=0)
    service_account: str = Field(default="claude-agent-agent")
    secret_name: str = Field(default="claude-agent-secret")
    config_map_name: str = Field(default="claude-agent-config")
    backend_service_url: str = Field(default="http://claude-agent-backend:3001")

    # ── API ──────────────────────────────────────────────────────
    api_prefix: str = Field(default="/api/v1")
    page_size_default: int = Field(default=20, ge=1)
    page_size_max: int = Field(default=100, ge=1)

    # ── Reconciliation ───────────────────────────────────────────
    reconcile_interval_seconds: float = Field(default=30.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @field_validator("api_prefix", "backend_service_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_page_sizes(self) -> DispatchSettings:
        if self.page_size_default > self.page_size_max:
            raise ValueError("page_size_default cannot exceed page_size_max")
        return self

    @property
    def is_memory_database(self) -> bool:
        return self.database_url in ("", "memory", ":memory:", "sqlite://", "sqlite:///:memory:")

    @property
    def json_logs(self) -> bool:
        return self.log_format == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, DispatchSettings] = {}


def get_settings(*, _force_reload: bool = False) -> DispatchSettings:
    """Load, validate, and cache a :class:`DispatchSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = DispatchSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["DispatchSettings", "get_settings", "clear_settings_cache"]
