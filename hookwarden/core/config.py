"""
HookWarden Configuration Management

Centralized configuration for the hook dispatcher and its safety layer:
- Environment-based configuration (HOOKWARDEN_ prefix)
- Type-safe settings with Pydantic
- Per-plugin sandbox limit defaults
- Shared store selection (in-memory or Redis)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class CircuitBreakerSettings(BaseModel):
    """Configuration for the per-(plugin, hook) circuit breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: int = 300  # seconds in OPEN before a trial call
    failure_window: int = 60  # failures older than this no longer count
    state_ttl: int = 86400
    max_cas_retries: int = 5


class SandboxLimits(BaseModel):
    """Resource ceilings for a single plugin."""
    memory_mb: float = 256
    execution_time_seconds: float = 30
    api_requests_per_minute: int = 60
    api_requests_per_day: int = 10000
    hook_executions_per_minute: int = 100
    entity_reads_per_minute: int = 500
    entity_writes_per_minute: int = 100
    storage_mb: float = 50
    network_requests_per_minute: int = 30
    network_bytes_per_day: int = 104857600  # 100MB
    max_consecutive_errors: int = 10
    network_whitelist: List[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    def merged(self, overrides: dict[str, Any]) -> "SandboxLimits":
        """Return a copy with the given overrides applied and validated."""
        return SandboxLimits.model_validate({**self.model_dump(), **overrides})


class SandboxSettings(BaseModel):
    """Configuration for the plugin resource sandbox."""
    enabled: bool = False
    limits: SandboxLimits = Field(default_factory=SandboxLimits)

    # Auto-block policy
    violation_threshold: int = 5
    violation_window_seconds: int = 3600
    auto_block_seconds: int = 86400
    error_window_seconds: int = 3600

    # Run coroutine callbacks under a deadline
    preempt_async_callbacks: bool = True


class StoreSettings(BaseModel):
    """Configuration for the shared counter store."""
    backend: Literal["memory", "redis"] = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_ssl: bool = False
    prefix: str = "hookwarden:"


class HookSettings(BaseModel):
    """Configuration for hook dispatch."""
    debug: bool = False
    strict: bool = False
    critical_hooks: List[str] = Field(
        default_factory=lambda: [
            "entity_record_creating",
            "entity_record_updating",
            "entity_record_deleting",
        ]
    )
    max_failed_executions: int = 1000


class HookWardenConfig(BaseSettings):
    """
    Main HookWarden Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with HOOKWARDEN_
    (e.g., HOOKWARDEN_SANDBOX__ENABLED=true).
    """

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = True

    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    hooks: HookSettings = Field(default_factory=HookSettings)

    model_config = {
        "env_prefix": "HOOKWARDEN_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "HookWardenConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(), f, indent=2, default=str)


# Global configuration instance (lazy loaded)
_config: Optional[HookWardenConfig] = None


def get_config() -> HookWardenConfig:
    """Get the global HookWarden configuration instance."""
    global _config
    if _config is None:
        _config = HookWardenConfig()
    return _config


def set_config(config: HookWardenConfig) -> None:
    """Set the global HookWarden configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
