"""
Configuration loading.

The monitor reads an INI file:

    [general]
    timeout = 3
    interval = 10
    port = 7111
    mark_down_after = 20
    retry_after_down = 600
    watchdog_multiplier = 5

    [discovery]
    enabled = true

    [discovery.farm]
    pattern = 192.168.1.(100-150)
    interval = 15

    [server]
    enabled = true

    [server.rig1]
    ip = 10.0.0.7
    port = 7112

    [wallet]
    enabled = true
    ip = 127.0.0.1
    port = 4003
    interval = 10
    b58_pubkey =

    [dashboard]
    enabled = true
    host = 0.0.0.0
    port = 8080
    ping_interval = 30

    [proxy]
    enabled = true
    proxy_ip = 0.0.0.0
    proxy_port = 4009
    wallet_ip = 127.0.0.1
    wallet_port = 4004

[general] values are the defaults for every discovery, server and proxy
section; those sections may override any of them. Any invalid value raises
ConfigError, which aborts startup.
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from miner_monitor.core.models import TargetDefaults, TargetDescriptor, with_defaults
from miner_monitor.core.patterns import PatternError, expand_pattern
from miner_monitor.core.scheduler import Discovery
from miner_monitor.ingestion.probe import DEFAULT_WATCHDOG_MULTIPLIER
from miner_monitor.ingestion.proxy import ProxyConfig
from miner_monitor.monitoring.dashboard import DashboardConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "miner-monitor.ini"
GENERAL_SECTION = "general"
TARGET_FIELDS = ("port", "timeout", "interval", "mark_down_after", "retry_after_down")


class ConfigError(Exception):
    """Invalid or missing configuration. Fatal at startup."""
    pass


@dataclass(frozen=True)
class WalletConfig:
    """Wallet RPC endpoint and polling settings."""
    ip: str = "127.0.0.1"
    port: int = 4003
    interval: int = 10
    timeout: float = 10.0
    b58_pubkey: str = ""

    @property
    def rpc_url(self) -> str:
        return f"http://{self.ip}:{self.port}"


@dataclass
class MonitorConfig:
    """Complete monitor configuration."""

    defaults: TargetDefaults = field(default_factory=TargetDefaults)
    watchdog_multiplier: float = DEFAULT_WATCHDOG_MULTIPLIER

    discoveries: list[Discovery] = field(default_factory=list)
    servers: list[TargetDescriptor] = field(default_factory=list)

    wallet: Optional[WalletConfig] = None
    dashboard: Optional[DashboardConfig] = None
    proxy: Optional[ProxyConfig] = None

    @classmethod
    def from_file(cls, path: str) -> "MonitorConfig":
        """
        Load configuration from an INI file.

        Raises:
            ConfigError: If the file is missing or any value is invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"{path} file does not exist")

        parser = configparser.ConfigParser(interpolation=None)
        try:
            with open(config_path, encoding="utf-8") as f:
                parser.read_file(f)
        except configparser.Error as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e

        logger.info(f"Loaded configuration from {config_path}")
        return cls.from_parser(parser)

    @classmethod
    def from_string(cls, text: str) -> "MonitorConfig":
        """Load configuration from INI text."""
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(text)
        except configparser.Error as e:
            raise ConfigError(f"Cannot parse configuration: {e}") from e
        return cls.from_parser(parser)

    @classmethod
    def from_parser(cls, parser: configparser.ConfigParser) -> "MonitorConfig":
        general = parser[GENERAL_SECTION] if parser.has_section(GENERAL_SECTION) else {}
        defaults = TargetDefaults(
            port=_port(general, "port", 7111),
            timeout=_positive_int(general, "timeout", 3),
            interval=_positive_int(general, "interval", 10),
            mark_down_after=_positive_int(general, "mark_down_after", 20),
            retry_after_down=_positive_int(general, "retry_after_down", 600),
        )

        watchdog = _float(general, "watchdog_multiplier", DEFAULT_WATCHDOG_MULTIPLIER)
        if watchdog <= 1:
            raise ConfigError(f"watchdog_multiplier must be > 1, got {watchdog}")

        config = cls(defaults=defaults, watchdog_multiplier=watchdog)

        if _enabled(parser, "discovery"):
            for name, section in _subsections(parser, "discovery"):
                pattern = section.get("pattern", "").strip()
                if not pattern:
                    raise ConfigError(f"[{name}] is missing 'pattern'")
                try:
                    expand_pattern(pattern)
                except PatternError as e:
                    raise ConfigError(f"[{name}] {e}") from e
                config.discoveries.append(
                    Discovery(pattern=pattern, defaults=_target_defaults(section, defaults))
                )

        if _enabled(parser, "server"):
            for name, section in _subsections(parser, "server"):
                ip = section.get("ip", "").strip()
                if not ip:
                    raise ConfigError(f"[{name}] is missing 'ip'")
                config.servers.append(
                    TargetDescriptor.from_defaults(ip, _target_defaults(section, defaults))
                )

        if _enabled(parser, "wallet"):
            section = parser["wallet"]
            config.wallet = WalletConfig(
                ip=section.get("ip", "127.0.0.1").strip(),
                port=_port(section, "port", 4003),
                interval=_positive_int(section, "interval", 10),
                timeout=_float(section, "timeout", 10.0),
                b58_pubkey=section.get("b58_pubkey", "").strip(),
            )

        if _enabled(parser, "dashboard"):
            section = parser["dashboard"]
            config.dashboard = DashboardConfig(
                host=section.get("host", "0.0.0.0").strip(),
                port=_port(section, "port", 8080),
                ping_interval=_float(section, "ping_interval", 30.0),
            )

        if _enabled(parser, "proxy"):
            section = parser["proxy"]
            config.proxy = ProxyConfig(
                proxy_ip=section.get("proxy_ip", "0.0.0.0").strip(),
                proxy_port=_port(section, "proxy_port", 4009),
                wallet_ip=section.get("wallet_ip", "127.0.0.1").strip(),
                wallet_port=_port(section, "wallet_port", 4009),
                target_defaults=_target_defaults(section, defaults),
            )

        return config

    def apply_env(self) -> None:
        """Override selected values from environment variables."""
        if self.wallet and os.environ.get("WALLET_B58_PUBKEY"):
            self.wallet = replace(self.wallet, b58_pubkey=os.environ["WALLET_B58_PUBKEY"])

        if self.dashboard:
            host = os.environ.get("DASHBOARD_HOST", self.dashboard.host)
            port = _port(os.environ, "DASHBOARD_PORT", self.dashboard.port)
            self.dashboard = replace(self.dashboard, host=host, port=port)

    @property
    def target_count(self) -> int:
        """Number of distinct addresses the static config produces."""
        addresses = set()
        for discovery in self.discoveries:
            addresses.update(expand_pattern(discovery.pattern))
        addresses.update(s.address for s in self.servers)
        return len(addresses)


def _enabled(parser: configparser.ConfigParser, name: str) -> bool:
    if not parser.has_section(name):
        return False
    try:
        return parser.getboolean(name, "enabled", fallback=False)
    except ValueError as e:
        raise ConfigError(f"[{name}] enabled: {e}") from e


def _subsections(parser: configparser.ConfigParser, prefix: str):
    for name in parser.sections():
        if name.startswith(prefix + "."):
            yield name, parser[name]


def _int(section, key: str, default: int) -> int:
    raw = section.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _positive_int(section, key: str, default: int) -> int:
    value = _int(section, key, default)
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


def _port(section, key: str, default: int) -> int:
    value = _int(section, key, default)
    if not 1 <= value <= 65535:
        raise ConfigError(f"{key} must be between 1 and 65535, got {value}")
    return value


def _float(section, key: str, default: float) -> float:
    raw = section.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


def _target_defaults(section, defaults: TargetDefaults) -> TargetDefaults:
    """Section-level overrides of the [general] target defaults."""
    overrides = {}
    for key in TARGET_FIELDS:
        if section.get(key) is None:
            continue
        if key == "port":
            overrides[key] = _port(section, key, getattr(defaults, key))
        else:
            overrides[key] = _positive_int(section, key, getattr(defaults, key))
    return with_defaults(defaults, **overrides)
