"""
Configuration Loader.

Responsible for reading the YAML config file and for layering it over the
command line flags and the built-in defaults.
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from mqtt_gatekeeper.server.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    # Listeners
    "protos": ["tcp"],
    "host": "127.0.0.1",
    "port": 1883,
    "ws_port": 3000,
    "wss_port": 4000,
    "tls_port": 8883,
    "key": None,
    "cert": None,
    "ca": None,
    "reject_unauthorized": True,
    # Authorizer
    "credentials": None,
    "authorize_publish": None,
    "authorize_subscribe": None,
    "hash_iterations": 100000,
    # Broker
    "broker_id": "gatekeeper",
    "concurrency": 100,
    "queue_limit": 42,
    "max_client_id_length": 23,
    "heartbeat_interval": 60000,
    "connect_timeout": 30000,
    # Backends
    "persistence": None,
    "mq": None,
    "backend_ready_timeout": 30,
    # Logging
    "verbose": False,
    "very_verbose": False,
}

_CAMEL = re.compile(r"(?<=[a-z0-9])([A-Z])")


def normalize_key(key: str) -> str:
    """`wsPort`, `ws-port` and `ws_port` all name the same option."""
    return _CAMEL.sub(r"_\1", key).replace("-", "_").lower()


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found at {path}")

    try:
        with open(path, 'r', encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to parse config file: {e}")
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info(f"Loaded configuration from {path}")
    return {normalize_key(str(k)): v for k, v in config.items()}


def resolve_config(file_config: Optional[Mapping[str, Any]] = None,
                   flags: Optional[Mapping[str, Any]] = None,
                   defaults: Mapping[str, Any] = DEFAULTS) -> Dict[str, Any]:
    """
    Merges the layers key by key: the first layer that defines a key (value
    not None) wins, in the order file, flags, defaults. Inputs are left
    untouched.
    """
    layers = [file_config or {}, flags or {}, defaults]
    keys = []
    for layer in layers:
        for key in layer:
            if key not in keys:
                keys.append(key)

    resolved = {}
    for key in keys:
        resolved[key] = next((layer[key] for layer in layers if layer.get(key) is not None), None)
    return resolved
