"""Configuration loader for secretsync."""
import copy
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SECRETSYNC_CONFIG"

AUTH_TYPES = ("service_account", "application_default")

DEFAULTS: Dict[str, Any] = {
    "authentication": {"type": "application_default"},
    "gcp": {"project_id": None},
    "scan": {
        "patterns": ["values/deployments/*.yaml", "values/infrastructure/*.yaml"],
        "store_values": "values/infrastructure/main.yaml",
    },
    "kubernetes": {"kubeconfig": None, "context": None},
    "backend": {"concurrency": 10, "retries": 3},
    "convergence": {"timeout": 60, "poll_interval": 2},
}


class ConfigError(Exception):
    """Configuration error exception."""
    pass


def default_config_path() -> Path:
    return Path.home() / ".config" / "secretsync" / "config.yml"


def _get_config_path() -> Path:
    """
    Get config file path.

    Priority order:
    1. SECRETSYNC_CONFIG environment variable
    2. Default location: ~/.config/secretsync/config.yml

    Resolved on every call so a changed environment takes effect immediately.
    """
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return default_config_path()


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_authentication(auth: Any, config_path: Path) -> None:
    if not isinstance(auth, dict):
        raise ConfigError(f"'authentication' in {config_path} must be a mapping")

    if auth.get('type') not in AUTH_TYPES:
        raise ConfigError(
            f"Unsupported authentication type: {auth.get('type')}\n"
            f"Supported types: {', '.join(AUTH_TYPES)}"
        )

    if auth['type'] != 'service_account':
        return

    service_account_path = auth.get('service_account_path')
    if not service_account_path:
        raise ConfigError(
            "Missing 'authentication.service_account_path' in config\n"
            "Please specify the absolute path to your service account JSON file."
        )

    if not os.path.exists(service_account_path):
        raise ConfigError(
            f"Service account file not found at: {service_account_path}\n"
            f"Please ensure the file exists or update the path in {config_path}"
        )

    if not os.path.isfile(service_account_path):
        raise ConfigError(f"Service account path is not a file: {service_account_path}")


def _validate_numbers(config: Dict[str, Any], config_path: Path) -> None:
    checks = (
        ("backend", "concurrency"),
        ("backend", "retries"),
        ("convergence", "timeout"),
        ("convergence", "poll_interval"),
    )
    for section, key in checks:
        value = config[section][key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(
                f"'{section}.{key}' in {config_path} must be a non-negative number, got {value!r}"
            )
    if config["backend"]["concurrency"] < 1:
        raise ConfigError(f"'backend.concurrency' in {config_path} must be at least 1")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from YAML file.

    Args:
        config_path: Explicit path; resolved from the environment when omitted

    Returns:
        Dict with sections authentication, gcp, scan, kubernetes, backend and
        convergence. Missing sections and a missing file fall back to DEFAULTS.

    Raises:
        ConfigError: If the file is invalid, empty, or names a missing service account file
    """
    path = Path(config_path).expanduser() if config_path else _get_config_path()

    if not path.exists():
        if config_path or os.getenv(CONFIG_ENV_VAR):
            raise ConfigError(
                f"Configuration file not found at: {path}\n"
                f"Create it or unset {CONFIG_ENV_VAR} to use {default_config_path()}"
            )
        logger.debug(f"No config file at {path}, using defaults")
        return copy.deepcopy(DEFAULTS)

    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {path}: {e}")

    if not raw:
        raise ConfigError(f"Config file at {path} is empty")

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file at {path} must contain a mapping")

    for section, value in raw.items():
        if section in DEFAULTS and not isinstance(value, dict):
            raise ConfigError(f"Section '{section}' in {path} must be a mapping")

    config = _merge(DEFAULTS, raw)
    _validate_authentication(config['authentication'], path)
    _validate_numbers(config, path)

    logger.info(f"Configuration loaded successfully from {path}")
    logger.debug(f"Using project ID: {config['gcp']['project_id']}")

    return config


def apply_credentials(config: Dict[str, Any]) -> None:
    """Point Google client libraries at a configured service account key."""
    auth = config.get('authentication') or {}
    if auth.get('type') == 'service_account' and auth.get('service_account_path'):
        os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = auth['service_account_path']
        logger.info(f"Set GOOGLE_APPLICATION_CREDENTIALS from config: {auth['service_account_path']}")
