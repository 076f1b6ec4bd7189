import configparser
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from docker_dns_proxy.constants import (
    DEFAULT_DOCKER_DNS,
    DEFAULT_ENABLE_METRICS,
    DEFAULT_ENABLE_UPSTREAM,
    DEFAULT_LISTEN_ADDRESS,
    DEFAULT_LISTEN_PORT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_METRICS_INTERVAL,
    DEFAULT_METRICS_PORT,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_STRIP_SUFFIX,
    DEFAULT_UPSTREAM_DNS,
    DNS_DEFAULT_PORT,
    LOG_LEVELS,
    MAX_PORT_NUMBER,
    MIN_PORT_NUMBER,
)
from docker_dns_proxy.errors import ConfigurationError

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

_TRUE_VALUES = {"1", "t", "true", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "no", "off"}


def parse_address(value: str, default_port: int = DNS_DEFAULT_PORT) -> Address:
    """Parse a DNS server address into a (host, port) tuple

    Supports:
    - IPv4 or hostname: "127.0.0.11"
    - With port: "127.0.0.11:53"
    - IPv6: "[2606:4700:4700::1111]" or a bare "2606:4700:4700::1111"
    - IPv6 with port: "[2606:4700:4700::1111]:53"
    """
    value = value.strip()
    if not value:
        raise ValueError("empty address")

    # IPv6 with port: [2606:4700:4700::1111]:53
    if value.startswith("[") and "]:" in value:
        bracket_end = value.index("]")
        host = value[1:bracket_end]
        port = _parse_port(value[bracket_end + 2 :])

    # IPv6 without port: [2606:4700:4700::1111]
    elif value.startswith("[") and value.endswith("]"):
        host = value[1:-1]
        port = default_port

    # Bare IPv6, no way to carry a port
    elif value.count(":") > 1:
        host = value
        port = default_port

    # IPv4 or hostname with port: 127.0.0.11:53
    elif ":" in value:
        host, port_str = value.rsplit(":", 1)
        port = _parse_port(port_str)

    else:
        host = value
        port = default_port

    if not host:
        raise ValueError(f"missing host in {value!r}")
    return host, port


def _parse_port(value: str) -> int:
    port = int(value)
    if port < MIN_PORT_NUMBER or port > MAX_PORT_NUMBER:
        raise ValueError(f"port {port} outside {MIN_PORT_NUMBER}-{MAX_PORT_NUMBER}")
    return port


def _parse_optional_port(value: str) -> int:
    port = int(value)
    if port == 0:
        return port
    return _parse_port(value)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise ValueError(f"must be positive: {value!r}")
    return number


def _parse_log_level(value: str) -> str:
    level = value.strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"unknown log level {value!r}")
    return level


def _parse_log_file(value: str) -> Optional[str]:
    value = value.strip()
    if value.lower() == "none":
        return None
    return value


def _parse_suffix(value: str) -> str:
    value = value.strip()
    if not value.strip("."):
        raise ValueError("suffix has no labels")
    try:
        value.strip(".").encode("idna")
    except UnicodeError as e:
        raise ValueError(f"not a valid domain suffix: {e}") from e
    return value


@dataclass(frozen=True)
class ProxyConfig:
    """Process-wide settings, read-only once loaded"""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    listen_port: int = DEFAULT_LISTEN_PORT
    docker_dns: Address = parse_address(DEFAULT_DOCKER_DNS)
    upstream_dns: Address = parse_address(DEFAULT_UPSTREAM_DNS)
    enable_upstream: bool = DEFAULT_ENABLE_UPSTREAM
    timeout: float = DEFAULT_QUERY_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = None
    syslog: bool = False
    enable_metrics: bool = DEFAULT_ENABLE_METRICS
    metrics_interval: float = DEFAULT_METRICS_INTERVAL
    metrics_port: int = DEFAULT_METRICS_PORT
    strip_suffix: str = DEFAULT_STRIP_SUFFIX

    @property
    def suffix_label(self) -> str:
        """Strip-suffix without surrounding dots, lowercased: '.docker' -> 'docker'"""
        return self.strip_suffix.strip(".").lower()


# field -> (ini section, ini option, environment variable, parser)
SETTINGS: Dict[str, Tuple[str, str, str, Callable[[str], Any]]] = {
    "listen_address": ("dns-proxy", "listen-address", "LISTEN_ADDR", str.strip),
    "listen_port": ("dns-proxy", "listen-port", "LISTEN_PORT", _parse_port),
    "strip_suffix": ("dns-proxy", "strip-suffix", "STRIP_SUFFIX", _parse_suffix),
    "docker_dns": ("docker-dns", "server-address", "DOCKER_DNS", parse_address),
    "timeout": ("docker-dns", "timeout", "TIMEOUT_SECONDS", _parse_positive_float),
    "upstream_dns": ("upstream-dns", "server-address", "UPSTREAM_DNS", parse_address),
    "enable_upstream": ("upstream-dns", "enabled", "ENABLE_UPSTREAM", _parse_bool),
    "log_level": ("logging", "level", "LOG_LEVEL", _parse_log_level),
    "log_file": ("logging", "log-file", "LOG_FILE", _parse_log_file),
    "syslog": ("logging", "syslog", "SYSLOG", _parse_bool),
    "enable_metrics": ("metrics", "enabled", "ENABLE_METRICS", _parse_bool),
    "metrics_interval": ("metrics", "interval", "METRICS_INTERVAL", _parse_positive_float),
    "metrics_port": ("metrics", "port", "METRICS_PORT", _parse_optional_port),
}


def _read_config_file(config_path: str) -> Dict[str, str]:
    """Read raw option values from an INI file"""
    if not os.path.exists(config_path):
        logger.warning(f"Config file {config_path} not found, using defaults")
        return {}

    parser = configparser.ConfigParser()
    try:
        parser.read(config_path)
    except (configparser.Error, OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Error reading config file {config_path}: {e}") from e

    raw = {}
    for field, (section, option, _, _) in SETTINGS.items():
        try:
            value = parser.get(section, option, raw=True)
        except (configparser.NoSectionError, configparser.NoOptionError):
            continue
        if value != "":
            raw[field] = value
    return raw


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ProxyConfig:
    """Build the proxy configuration

    Layers, lowest priority first: built-in defaults, the INI file at
    ``config_path``, environment variables, then ``overrides`` (usually
    command-line flags). Empty strings and ``None`` count as unset.

    Invalid values are reported with a warning and replaced by the default,
    never fatal.
    """
    raw: Dict[str, Any] = {}

    if config_path:
        raw.update(_read_config_file(config_path))

    env = os.environ if environ is None else environ
    for field, (_, _, env_key, _) in SETTINGS.items():
        value = env.get(env_key)
        if value:
            raw[field] = value

    for field, value in (overrides or {}).items():
        if field not in SETTINGS:
            raise KeyError(f"Unknown configuration field: {field}")
        if value is not None and value != "":
            raw[field] = value

    defaults = ProxyConfig()
    values = {}
    for field, value in raw.items():
        parser = SETTINGS[field][3]
        if not isinstance(value, str):
            values[field] = value
            continue
        try:
            values[field] = parser(value)
        except ValueError as e:
            logger.warning(
                f"Invalid value for {SETTINGS[field][2]}: {value!r} ({e}), "
                f"using default: {getattr(defaults, field)}"
            )

    return ProxyConfig(**values)
