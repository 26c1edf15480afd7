"""Configuration management for the Marionette runner."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import structlog
import yaml

log = structlog.get_logger()


@dataclass
class RunnerConfig:
    """Runner daemon configuration."""

    # Connection
    server_url: str = "http://localhost:3340"
    client_id: str = ""

    # Authentication (never written to the config file)
    api_token: str = ""
    encryption_key: str = ""

    # Polling
    heartbeat_interval: float = 30.0
    polling_interval: float = 10.0
    max_jobs_per_cycle: int = 5
    request_timeout: float = 30.0

    # Browser
    headless: bool = False
    chrome_path: str = ""
    step_timeout_ms: int = 30000
    min_action_delay_ms: int = 500
    max_action_delay_ms: int = 1500

    log_dir: Path = field(default_factory=lambda: Path.home() / ".marionette" / "logs")


_PATH_FIELDS = ("log_dir",)


def get_default_config_path() -> Path:
    """Get default config file path."""
    if os.environ.get("MARIONETTE_CONFIG_FILE"):
        return Path(os.environ["MARIONETTE_CONFIG_FILE"])
    if os.environ.get("MARIONETTE_CONFIG_DIR"):
        return Path(os.environ["MARIONETTE_CONFIG_DIR"]) / "runner.yaml"
    return Path.home() / ".config" / "marionette" / "runner.yaml"


def _parse_bool(value: str) -> bool | None:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _parse_float(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def _apply_env_overrides(config: RunnerConfig) -> RunnerConfig:
    env = os.environ

    if env.get("MARIONETTE_SERVER_URL"):
        config.server_url = env["MARIONETTE_SERVER_URL"]
    if env.get("MARIONETTE_CLIENT_ID"):
        config.client_id = env["MARIONETTE_CLIENT_ID"]
    if env.get("MARIONETTE_API_TOKEN"):
        config.api_token = env["MARIONETTE_API_TOKEN"]
    if env.get("MARIONETTE_ENCRYPTION_KEY"):
        config.encryption_key = env["MARIONETTE_ENCRYPTION_KEY"]
    if env.get("MARIONETTE_CHROME_PATH"):
        config.chrome_path = env["MARIONETTE_CHROME_PATH"]

    if env.get("MARIONETTE_HEADLESS"):
        parsed_bool = _parse_bool(env["MARIONETTE_HEADLESS"])
        if parsed_bool is not None:
            config.headless = parsed_bool

    if env.get("MARIONETTE_POLLING_INTERVAL"):
        parsed = _parse_float(env["MARIONETTE_POLLING_INTERVAL"])
        if parsed is not None and parsed > 0:
            config.polling_interval = parsed
    if env.get("MARIONETTE_HEARTBEAT_INTERVAL"):
        parsed = _parse_float(env["MARIONETTE_HEARTBEAT_INTERVAL"])
        if parsed is not None and parsed > 0:
            config.heartbeat_interval = parsed

    if env.get("MARIONETTE_LOG_DIR"):
        config.log_dir = Path(env["MARIONETTE_LOG_DIR"])

    return config


def load_config(config_file: Path | None = None) -> RunnerConfig:
    """Load configuration from file.

    Args:
        config_file: Path to config file. If None, uses default.

    Returns:
        Loaded configuration, or defaults if the file doesn't exist.
    """
    path = config_file or get_default_config_path()

    data: dict = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    for key in _PATH_FIELDS:
        if key in data:
            data[key] = Path(data[key])

    known = {f.name for f in fields(RunnerConfig)}
    unknown = sorted(str(key) for key in data if key not in known)
    if unknown:
        log.warning("config_unknown_keys", path=str(path), keys=unknown)

    config = RunnerConfig(**{key: value for key, value in data.items() if key in known})
    return _apply_env_overrides(config)


def save_config(config: RunnerConfig, config_file: Path | None = None) -> None:
    """Save configuration to file. Credentials are never persisted here."""
    path = config_file or get_default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "server_url": config.server_url,
        "client_id": config.client_id,
        "heartbeat_interval": config.heartbeat_interval,
        "polling_interval": config.polling_interval,
        "max_jobs_per_cycle": config.max_jobs_per_cycle,
        "request_timeout": config.request_timeout,
        "headless": config.headless,
        "chrome_path": config.chrome_path,
        "step_timeout_ms": config.step_timeout_ms,
        "min_action_delay_ms": config.min_action_delay_ms,
        "max_action_delay_ms": config.max_action_delay_ms,
        "log_dir": str(config.log_dir),
    }

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False)
