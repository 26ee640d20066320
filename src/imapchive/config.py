"""Configuration via an optional YAML file."""

import os
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

from .errors import ConfigError

CONFIG_ENV = "IMAPCHIVE_CONFIG"
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "imapchive" / "config.yaml"
EXTENSION = ".imapchive"


@dataclass
class Config:
    """Defaults for the CLI; flags and env vars take precedence."""
    server: str | None = None
    email: str | None = None
    password: str | None = None
    concurrency: int = 4
    archive_dir: str = "."
    report_interval: float = 10.0


def get_config_path(path: str | Path | None = None) -> Path:
    """Config path: explicit, then $IMAPCHIVE_CONFIG, then ~/.config/imapchive."""
    if path:
        return Path(path)
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path)
    return GLOBAL_CONFIG_PATH


def load_config(path: str | Path | None = None) -> Config:
    """Load config from YAML. A missing file yields defaults."""
    config_path = get_config_path(path)
    if not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"{config_path}: unknown keys: {', '.join(unknown)}")

    config = Config(**data)
    try:
        config.concurrency = int(config.concurrency)
        config.report_interval = float(config.report_interval)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{config_path}: {e}") from e
    config.archive_dir = str(config.archive_dir)
    return config


def archive_path(mailbox: str, archive_dir: str | Path = ".") -> Path:
    """Archive file for a mailbox; "/" in the name becomes "_"."""
    safe_name = mailbox.replace("/", "_")
    return Path(archive_dir) / f"{safe_name}{EXTENSION}"
