"""Configuration management for codebridge.

Loads user settings from ~/.config/codebridge/config.cfg
Provides SidecarConfig (backend + dispatcher settings) and ClientConfig
(host-side RPC and storage settings).
"""

import configparser
from dataclasses import dataclass, field
import os
from pathlib import Path
import sys
from typing import Dict, List, Optional

from dotenv import dotenv_values

# Default location for user configuration.
CONFIG_DIR = Path.home() / ".config" / "codebridge"
CONFIG_PATH = CONFIG_DIR / "config.cfg"

DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 4096
DEFAULT_BASE_URL = f"http://{DEFAULT_HOSTNAME}:{DEFAULT_PORT}"


@dataclass
class SidecarConfig:
    hostname: str = DEFAULT_HOSTNAME
    port: int = DEFAULT_PORT
    startup_timeout: float = 10.0
    default_base_url: str = DEFAULT_BASE_URL
    directory: str = ""
    opencode_binary: str = "opencode"
    embed_server: bool = True
    health_attempts: int = 10
    health_delay: float = 0.25
    heartbeat_interval: float = 30.0
    request_timeout: Optional[float] = None


@dataclass
class ClientConfig:
    sidecar_command: List[str] = field(
        default_factory=lambda: [sys.executable, "-m", "codebridge.sidecar.server"]
    )
    storage_path: Path = CONFIG_DIR / "storage.json"
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff: float = 2.0


def load_raw_config(path: Path = CONFIG_PATH, env_file: Optional[Path] = None) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.
    Values are returned with lowercase keys for convenience.

    Keys missing from the config file are filled from a .env file
    (``env_file`` or ./.env) when one exists.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})
        if "SIDECAR" in cfg:
            data.update({k.lower(): v for k, v in cfg["SIDECAR"].items()})

    env_path = env_file or Path.cwd() / ".env"
    if env_path.exists():
        for key, value in dotenv_values(env_path).items():
            if value is not None:
                data.setdefault(key.lower(), value)

    return data


def _get_bool(raw: Dict[str, str], key: str, default: bool = False) -> bool:
    value = raw.get(key, "")
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid number for '{key}': {value!r}") from None


def _get_int(raw: Dict[str, str], key: str, default: int) -> int:
    return int(_get_float(raw, key, float(default)))


def get_sidecar_config(raw: Optional[Dict[str, str]] = None) -> SidecarConfig:
    """
    Build a SidecarConfig from raw configuration values.
    Raises ValueError if a numeric setting cannot be parsed.
    """
    raw = load_raw_config() if raw is None else raw

    port_env = os.environ.get("OPENCODE_PORT")
    if port_env is not None and port_env.strip() != "":
        port = _get_int({"opencode_port": port_env}, "opencode_port", DEFAULT_PORT)
    else:
        port = _get_int(raw, "port", DEFAULT_PORT)

    hostname = raw.get("hostname", DEFAULT_HOSTNAME).strip() or DEFAULT_HOSTNAME

    timeout_raw = raw.get("request_timeout", "")
    request_timeout = (
        _get_float(raw, "request_timeout", 0.0) if str(timeout_raw).strip() else None
    )

    return SidecarConfig(
        hostname=hostname,
        port=port,
        startup_timeout=_get_float(raw, "startup_timeout", 10.0),
        default_base_url=raw.get("base_url", "").strip() or f"http://{hostname}:{port}",
        directory=os.environ.get("OPENCODE_DIRECTORY") or raw.get("directory", "") or os.getcwd(),
        opencode_binary=os.environ.get("OPENCODE_CLI_PATH") or raw.get("opencode_binary", "opencode"),
        embed_server=_get_bool(raw, "embed_server", True),
        health_attempts=_get_int(raw, "health_attempts", 10),
        health_delay=_get_float(raw, "health_delay", 0.25),
        heartbeat_interval=_get_float(raw, "heartbeat_interval", 30.0),
        request_timeout=request_timeout,
    )


def get_client_config(raw: Optional[Dict[str, str]] = None) -> ClientConfig:
    """Extract host-side RPC settings from the raw config."""
    raw = load_raw_config() if raw is None else raw
    config = ClientConfig(
        max_retries=_get_int(raw, "max_retries", 3),
        retry_delay=_get_float(raw, "retry_delay", 1.0),
        retry_backoff=_get_float(raw, "retry_backoff", 2.0),
    )

    command = os.environ.get("CODEBRIDGE_SIDECAR_CMD") or raw.get("sidecar_command", "")
    if command.strip():
        config.sidecar_command = command.split()

    storage = os.environ.get("CODEBRIDGE_STORAGE_PATH") or raw.get("storage_path", "")
    if storage.strip():
        config.storage_path = Path(storage).expanduser()

    return config
