"""Configuration validation using Pydantic models."""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class PolicyConfigModel(BaseModel):
    """Validated scaling thresholds, cooldowns and bounds."""
    cpu_up_threshold: float = Field(70.0, gt=0.0, le=100.0, description="Scale-up CPU %")
    cpu_down_threshold: float = Field(30.0, ge=0.0, le=100.0, description="Scale-down CPU %")
    latency_threshold: float = Field(1.0, gt=0.0, description="Average latency in seconds")
    rate_threshold: float = Field(50.0, gt=0.0, description="Requests/min per instance")
    scale_up_cooldown: float = Field(180.0, ge=0.0)
    scale_down_cooldown: float = Field(300.0, ge=0.0)
    min_instances: int = Field(2, ge=1)
    max_instances: int = Field(10, ge=1)
    scale_down_mode: str = Field("all", description="Combine scale-down signals with all/any")

    @field_validator('scale_down_mode')
    @classmethod
    def validate_scale_down_mode(cls, v):
        """Validate scale-down combination rule."""
        if v.lower() not in ('all', 'any'):
            raise ValueError(f"scale_down_mode must be 'all' or 'any', got {v!r}")
        return v.lower()

    @model_validator(mode='after')
    def validate_threshold_logic(self):
        """Validate threshold and bound relationships."""
        if self.max_instances < self.min_instances:
            raise ValueError("max_instances must be greater than or equal to min_instances")

        if self.cpu_down_threshold >= self.cpu_up_threshold:
            logger.warning(
                "cpu_down_threshold is not below cpu_up_threshold; "
                "scale-up will take priority when both fire"
            )

        return self


class FleetConfigModel(BaseModel):
    """Validated worker fleet settings."""
    runtime: str = Field("docker")
    image: str = Field("worker-api", min_length=1)
    network: str = Field("fleet-network", min_length=1)
    name_prefix: str = Field("worker", min_length=1, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    host: str = Field("localhost", min_length=1)
    container_port: int = Field(8080, ge=1, le=65535)
    base_port: int = Field(8081, ge=1, le=65535)
    health_path: str = Field("/")
    startup_timeout: float = Field(60.0, gt=0.0)
    health_poll_interval: float = Field(2.0, gt=0.0)
    probe_timeout: float = Field(5.0, gt=0.0)
    probe_attempts: int = Field(2, ge=1, le=10)
    probe_retry_delay: float = Field(1.0, ge=0.0)
    restart_grace_seconds: float = Field(30.0, ge=0.0)
    drain_seconds: float = Field(5.0, ge=0.0)
    step_pause: float = Field(5.0, ge=0.0)
    restart_policy: str = Field("unless-stopped")
    environment: Dict[str, str] = Field(default_factory=dict)
    log_mount_root: str = Field("")
    log_mount_target: str = Field("/app/logs")

    @field_validator('runtime')
    @classmethod
    def validate_runtime(cls, v):
        """Validate runtime name."""
        if v not in ('docker', 'memory'):
            raise ValueError(f"Unsupported runtime: {v}")
        return v

    @field_validator('health_path')
    @classmethod
    def validate_health_path(cls, v):
        if not v.startswith('/'):
            raise ValueError("health_path must start with '/'")
        return v


class ProxyConfigModel(BaseModel):
    """Validated nginx proxy settings."""
    controller: str = Field("docker")
    container: str = Field("nginx-lb", min_length=1)
    config_path: str = Field("nginx/nginx.conf", min_length=1)
    upstream_name: str = Field("backend", min_length=1)
    access_log_path: str = Field("logs/nginx/access.log")
    nginx_binary: str = Field("nginx", min_length=1)
    latency_window: int = Field(50, ge=1, le=10000)
    weight: int = Field(1, ge=1)
    max_fails: int = Field(3, ge=0)
    fail_timeout: str = Field("30s", pattern=r"^\d+(ms|s|m|h)?$")

    @field_validator('controller')
    @classmethod
    def validate_controller(cls, v):
        """Validate proxy controller type."""
        if v not in ('docker', 'local', 'memory'):
            raise ValueError(f"Unsupported proxy controller: {v}")
        return v


class LoggingConfigModel(BaseModel):
    """Validated logging settings."""
    level: str = Field('INFO', description="Logging level")
    file: str = Field('', description="Log file path")
    structured: bool = Field(False, description="Enable JSON logging")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class ScalerConfigModel(BaseModel):
    """Top-level scaler configuration."""
    check_interval: float = Field(30.0, gt=0.0, le=86400.0, description="Tick cadence in seconds")
    settle_seconds: float = Field(5.0, ge=0.0)
    action_log_path: str = Field("fleet-scaler-actions.log", min_length=1)
    dry_run: bool = Field(False)
    policy: PolicyConfigModel = Field(default_factory=PolicyConfigModel)
    fleet: FleetConfigModel = Field(default_factory=FleetConfigModel)
    proxy: ProxyConfigModel = Field(default_factory=ProxyConfigModel)
    logging: LoggingConfigModel = Field(default_factory=LoggingConfigModel)

    @field_validator('check_interval')
    @classmethod
    def validate_interval(cls, v):
        """Validate tick cadence."""
        if v < 5:
            logger.warning(f"Very short check interval ({v}s) may cause scaling churn")
        return v


def validate_scaler_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a raw configuration dictionary.

    Args:
        config: Configuration dictionary (partial configs are filled with defaults)

    Returns:
        Validated configuration as a plain dictionary

    Raises:
        ConfigurationError: If validation fails
    """
    try:
        return ScalerConfigModel(**(config or {})).model_dump()
    except PydanticValidationError as e:
        error_msg = f"Scaler configuration validation failed: {e}"
        logger.error(error_msg)
        raise ConfigurationError(error_msg, error_code="INVALID_CONFIG")
