"""
Configuration management for the tunnel.
Reads server and client settings from JSON or YAML files.
"""
import os
import json
import logging
from typing import Dict, Any, Optional

import yaml


DEFAULT_LISTEN_ADDR = ":8443"
DEFAULT_WIREGUARD_ADDR = "127.0.0.1:51820"
DEFAULT_MAX_DATAGRAM_SIZE = 0xFFFF
DEFAULT_CONNECT_TIMEOUT = 10.0


class ConfigError(Exception):
    """Raised when configuration is missing or invalid"""


class ConfigManager:
    """
    Configuration manager for tunnel settings
    """
    def __init__(self, config_path: str):
        """
        Initialize the configuration manager

        Args:
            config_path: Path to a .json, .yaml or .yml configuration file

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.logger = logging.getLogger("config")

        self.load()

    def load(self) -> None:
        """
        Load configuration from file

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        try:
            with open(self.config_path, 'r') as f:
                if self.config_path.endswith(".json"):
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Read config {self.config_path}: {e}") from e
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Parse config {self.config_path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config {self.config_path} must contain a mapping")

        self.config = data
        self.logger.info(f"Configuration loaded from {self.config_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value

        Args:
            key: Configuration key (dot notation for nested keys)
            default: Default value if key not found or empty

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self.config

        try:
            for k in keys:
                value = value[k]
        except (KeyError, TypeError):
            return default

        if value is None or value == "":
            return default
        return value


def _get_int(manager: ConfigManager, key: str, default: int) -> int:
    value = manager.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _get_float(manager: ConfigManager, key: str, default: float) -> float:
    value = manager.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}")


def _check_datagram_size(size: int) -> int:
    if not 1 <= size <= DEFAULT_MAX_DATAGRAM_SIZE:
        raise ConfigError(f"max_datagram_size must be between 1 and {DEFAULT_MAX_DATAGRAM_SIZE}, got {size}")
    return size


class ServerConfig:
    """Settings for the tunnel server"""
    def __init__(self, tls_cert_file: str, tls_key_file: str,
                 listen_addr: str = DEFAULT_LISTEN_ADDR,
                 wireguard_remote_addr: str = DEFAULT_WIREGUARD_ADDR,
                 status_addr: Optional[str] = None,
                 max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
                 log_level: str = "INFO",
                 log_file: Optional[str] = None):
        self.tls_cert_file = tls_cert_file
        self.tls_key_file = tls_key_file
        self.listen_addr = listen_addr
        self.wireguard_remote_addr = wireguard_remote_addr
        self.status_addr = status_addr
        self.max_datagram_size = max_datagram_size
        self.log_level = log_level
        self.log_file = log_file


class ClientConfig:
    """Settings for the tunnel client"""
    def __init__(self, server_addr: str,
                 ca_cert_file: Optional[str] = None,
                 server_cert_fingerprint: Optional[str] = None,
                 wireguard_local_addr: str = DEFAULT_WIREGUARD_ADDR,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
                 log_level: str = "INFO",
                 log_file: Optional[str] = None):
        self.server_addr = server_addr
        self.ca_cert_file = ca_cert_file
        self.server_cert_fingerprint = server_cert_fingerprint
        self.wireguard_local_addr = wireguard_local_addr
        self.connect_timeout = connect_timeout
        self.max_datagram_size = max_datagram_size
        self.log_level = log_level
        self.log_file = log_file


def load_server_config(config_path: str, listen_addr: Optional[str] = None) -> ServerConfig:
    """
    Load the server configuration

    Args:
        config_path: Path to the configuration file
        listen_addr: Listen address from the command line, overrides the file

    Returns:
        Server configuration with defaults applied

    Raises:
        ConfigError: If the file is unusable or required settings are missing
    """
    manager = ConfigManager(config_path)

    cert_file = manager.get("tls_cert_file")
    key_file = manager.get("tls_key_file")
    if not cert_file or not key_file:
        raise ConfigError("Server config: tls_cert_file and tls_key_file are required")

    base_dir = os.path.dirname(os.path.abspath(config_path))

    return ServerConfig(
        tls_cert_file=os.path.join(base_dir, cert_file),
        tls_key_file=os.path.join(base_dir, key_file),
        listen_addr=listen_addr or manager.get("listen_addr", DEFAULT_LISTEN_ADDR),
        wireguard_remote_addr=manager.get(
            "wireguard_remote_addr",
            manager.get("wireguard_remote", DEFAULT_WIREGUARD_ADDR)
        ),
        status_addr=manager.get("status_addr"),
        max_datagram_size=_check_datagram_size(
            _get_int(manager, "max_datagram_size", DEFAULT_MAX_DATAGRAM_SIZE)
        ),
        log_level=manager.get("log_level", "INFO"),
        log_file=manager.get("log_file"),
    )


def load_client_config(config_path: str, server_addr: Optional[str] = None) -> ClientConfig:
    """
    Load the client configuration

    Args:
        config_path: Path to the configuration file
        server_addr: Server address from the command line, overrides the file

    Returns:
        Client configuration with defaults applied

    Raises:
        ConfigError: If the file is unusable or server_addr is missing
    """
    manager = ConfigManager(config_path)

    server_addr = server_addr or manager.get("server_addr")
    if not server_addr:
        raise ConfigError("Client config: server_addr is required")

    ca_cert_file = manager.get("ca_cert_file")
    if ca_cert_file:
        ca_cert_file = os.path.join(os.path.dirname(os.path.abspath(config_path)), ca_cert_file)

    return ClientConfig(
        server_addr=server_addr,
        ca_cert_file=ca_cert_file,
        server_cert_fingerprint=manager.get("server_cert_fingerprint"),
        wireguard_local_addr=manager.get(
            "wireguard_local_addr",
            manager.get("wireguard_local", DEFAULT_WIREGUARD_ADDR)
        ),
        connect_timeout=_get_float(manager, "connect_timeout", DEFAULT_CONNECT_TIMEOUT),
        max_datagram_size=_check_datagram_size(
            _get_int(manager, "max_datagram_size", DEFAULT_MAX_DATAGRAM_SIZE)
        ),
        log_level=manager.get("log_level", "INFO"),
        log_file=manager.get("log_file"),
    )
