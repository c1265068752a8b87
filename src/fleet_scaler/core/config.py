"""Configuration management for the fleet autoscaler."""

import os
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, field, asdict

import yaml

from .exceptions import ConfigurationError
from .validation import validate_scaler_config


logger = logging.getLogger(__name__)


@dataclass
class PolicyConfig:
    """Scaling thresholds, cooldowns and instance bounds."""
    cpu_up_threshold: float = 70.0
    cpu_down_threshold: float = 30.0
    latency_threshold: float = 1.0  # seconds
    rate_threshold: float = 50.0  # requests/min per instance
    scale_up_cooldown: float = 180.0
    scale_down_cooldown: float = 300.0
    min_instances: int = 2
    max_instances: int = 10
    scale_down_mode: str = "all"  # all, any


@dataclass
class FleetConfig:
    """Worker container settings."""
    runtime: str = "docker"  # docker, memory
    image: str = "worker-api"
    network: str = "fleet-network"
    name_prefix: str = "worker"
    host: str = "localhost"
    container_port: int = 8080
    base_port: int = 8081
    health_path: str = "/"

    # Post-start validation
    startup_timeout: float = 60.0
    health_poll_interval: float = 2.0

    # Health sweeps
    probe_timeout: float = 5.0
    probe_attempts: int = 2
    probe_retry_delay: float = 1.0
    restart_grace_seconds: float = 30.0

    # Removal and scaling pacing
    drain_seconds: float = 5.0
    step_pause: float = 5.0

    restart_policy: str = "unless-stopped"
    environment: Dict[str, str] = field(default_factory=dict)
    log_mount_root: str = ""
    log_mount_target: str = "/app/logs"


@dataclass
class ProxyConfig:
    """nginx load balancer settings."""
    controller: str = "docker"  # docker, local, memory
    container: str = "nginx-lb"
    config_path: str = "nginx/nginx.conf"
    upstream_name: str = "backend"
    access_log_path: str = "logs/nginx/access.log"
    nginx_binary: str = "nginx"
    latency_window: int = 50

    # Failure policy written for new upstream targets
    weight: int = 1
    max_fails: int = 3
    fail_timeout: str = "30s"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = ""
    structured: bool = False


@dataclass
class ScalerConfig:
    """Complete autoscaler configuration."""
    check_interval: float = 30.0
    settle_seconds: float = 5.0
    action_log_path: str = "fleet-scaler-actions.log"
    dry_run: bool = False

    policy: PolicyConfig = field(default_factory=PolicyConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScalerConfig':
        """Create configuration from dictionary."""
        data = dict(data)

        # Handle nested configurations
        if 'policy' in data and isinstance(data['policy'], dict):
            data['policy'] = PolicyConfig(**data['policy'])

        if 'fleet' in data and isinstance(data['fleet'], dict):
            data['fleet'] = FleetConfig(**data['fleet'])

        if 'proxy' in data and isinstance(data['proxy'], dict):
            data['proxy'] = ProxyConfig(**data['proxy'])

        if 'logging' in data and isinstance(data['logging'], dict):
            data['logging'] = LoggingConfig(**data['logging'])

        return cls(**data)


class ConfigManager:
    """Loads configuration files, applies environment overrides and validates."""

    env_mappings = {
        'FLEET_SCALER_CHECK_INTERVAL': 'check_interval',
        'FLEET_SCALER_SETTLE_SECONDS': 'settle_seconds',
        'FLEET_SCALER_ACTION_LOG': 'action_log_path',
        'FLEET_SCALER_DRY_RUN': 'dry_run',
        'FLEET_SCALER_CPU_UP_THRESHOLD': 'policy.cpu_up_threshold',
        'FLEET_SCALER_CPU_DOWN_THRESHOLD': 'policy.cpu_down_threshold',
        'FLEET_SCALER_LATENCY_THRESHOLD': 'policy.latency_threshold',
        'FLEET_SCALER_RATE_THRESHOLD': 'policy.rate_threshold',
        'FLEET_SCALER_SCALE_UP_COOLDOWN': 'policy.scale_up_cooldown',
        'FLEET_SCALER_SCALE_DOWN_COOLDOWN': 'policy.scale_down_cooldown',
        'FLEET_SCALER_MIN_INSTANCES': 'policy.min_instances',
        'FLEET_SCALER_MAX_INSTANCES': 'policy.max_instances',
        'FLEET_SCALER_SCALE_DOWN_MODE': 'policy.scale_down_mode',
        'FLEET_SCALER_RUNTIME': 'fleet.runtime',
        'FLEET_SCALER_IMAGE': 'fleet.image',
        'FLEET_SCALER_NETWORK': 'fleet.network',
        'FLEET_SCALER_NAME_PREFIX': 'fleet.name_prefix',
        'FLEET_SCALER_PROXY_CONTROLLER': 'proxy.controller',
        'FLEET_SCALER_NGINX_CONTAINER': 'proxy.container',
        'FLEET_SCALER_NGINX_CONFIG': 'proxy.config_path',
        'FLEET_SCALER_UPSTREAM_NAME': 'proxy.upstream_name',
        'FLEET_SCALER_ACCESS_LOG': 'proxy.access_log_path',
        'FLEET_SCALER_LOG_LEVEL': 'logging.level',
        'FLEET_SCALER_LOG_FILE': 'logging.file',
        'FLEET_SCALER_STRUCTURED_LOGS': 'logging.structured',
    }

    # Values that must stay strings even when they look numeric
    _string_paths = {
        'action_log_path', 'fleet.image', 'fleet.network', 'fleet.name_prefix',
        'proxy.container', 'proxy.config_path', 'proxy.upstream_name',
        'proxy.access_log_path', 'logging.file',
    }

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Directory searched for a config file when no path is given
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()
        self._config_file_path: Optional[Path] = None

    def load_config(self, config_path: Optional[Union[str, Path]] = None) -> ScalerConfig:
        """Load configuration from file with validation.

        Args:
            config_path: Path to a YAML or JSON configuration file

        Returns:
            Loaded and validated configuration

        Raises:
            ConfigurationError: If the file cannot be read or is invalid
        """
        if config_path:
            config_file = Path(config_path)
            if not config_file.exists():
                raise ConfigurationError(
                    f"Config file not found: {config_file}", error_code="CONFIG_NOT_FOUND"
                )
        else:
            config_file = self._find_config_file()

        if config_file:
            logger.info(f"Loading configuration from: {config_file}")
            raw_config = self._read_config_file(config_file)
        else:
            logger.debug("No config file found, using defaults")
            raw_config = {}

        merged_config = self._merge_environment_variables(raw_config)
        validated_config = validate_scaler_config(merged_config)

        self._config_file_path = config_file
        return ScalerConfig.from_dict(validated_config)

    @property
    def config_file(self) -> Optional[Path]:
        """File the last ``load_config`` read, None if defaults were used."""
        return self._config_file_path

    def _find_config_file(self) -> Optional[Path]:
        """Find a default configuration file in ``config_dir``."""
        candidates = [
            "fleet-scaler.yaml",
            "fleet-scaler.yml",
            "fleet-scaler.json",
        ]

        for candidate in candidates:
            config_file = self.config_dir / candidate
            if config_file.exists():
                return config_file

        return None

    def _read_config_file(self, config_file: Path) -> Dict[str, Any]:
        """Parse a YAML or JSON configuration file."""
        try:
            text = config_file.read_text()
            if config_file.suffix.lower() == '.json':
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            error_msg = f"Failed to load configuration from {config_file}: {e}"
            logger.error(error_msg)
            raise ConfigurationError(error_msg, error_code="CONFIG_UNREADABLE")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration in {config_file} must be a mapping",
                error_code="CONFIG_UNREADABLE"
            )
        return data

    def _merge_environment_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables.

        Args:
            config: Base configuration

        Returns:
            Merged configuration
        """
        merged = {
            key: dict(value) if isinstance(value, dict) else value
            for key, value in config.items()
        }

        for env_var, config_path in self.env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                if config_path in self._string_paths:
                    parsed_value = env_value
                else:
                    parsed_value = self._parse_env_value(env_value)

                self._set_nested_value(merged, config_path, parsed_value)

                logger.debug(f"Applied environment variable: {env_var} -> {config_path}")

        return merged

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        # Boolean values
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'

        # Numeric values
        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        return value

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        """Set nested configuration value.

        Args:
            config: Configuration dictionary
            path: Dot-separated path
            value: Value to set
        """
        keys = path.split('.')
        current = config

        # Navigate to parent of target key
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value


def dump_config(config: ScalerConfig) -> str:
    """Render a configuration as YAML."""
    return yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False)
