"""
Settings

YAML configuration with built-in defaults and environment overrides.

Resolution order (later wins):
1. DEFAULT_SETTINGS
2. YAML file (explicit path, $CUSTODY_SWEEP_CONFIG, or ./custody_sweep.yaml)
3. Environment variables for secrets and deployment paths
"""

import copy
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

DEFAULT_CONFIG_FILE = "custody_sweep.yaml"

DEFAULT_SETTINGS: Dict[str, Any] = {
    'database_path': 'custody_sweep.db',
    'seed_encryption_key': None,
    'monitor': {
        'threshold_usd': 10.0,
        'poll_interval_ms': 15 * 60 * 1000,
        'resweep_policy': 'every_cycle',  # or 'on_crossing'
    },
    'destinations': {
        'evm': None,
        'utxo': None,
        'tron': None,
    },
    'endpoints': {
        'probe_timeout_seconds': 10.0,
        'request_timeout_seconds': 10.0,
        'tron_api_key': None,
    },
    'prices': {
        'api_url': 'https://api.coingecko.com/api/v3',
        'ttl_seconds': 300,
        'timeout_seconds': 10.0,
    },
    'sweep': {
        'tron_native_reserve_sun': 30_000_000,  # 30 TRX
        'tron_fee_limit_sun': 30_000_000,
    },
    'notifications': {
        'webhook_url': None,
        'timeout_seconds': 5.0,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'rotation': '10 MB',
        'retention': '14 days',
    },
}

ENV_OVERRIDES = {
    'CUSTODY_SWEEP_DB': ('database_path',),
    'CUSTODY_SWEEP_SEED_KEY': ('seed_encryption_key',),
    'TRONGRID_API_KEY': ('endpoints', 'tron_api_key'),
    'TRON_PRO_API_KEY': ('endpoints', 'tron_api_key'),
    'CUSTODY_SWEEP_WEBHOOK_URL': ('notifications', 'webhook_url'),
    'CUSTODY_SWEEP_LOG_LEVEL': ('logging', 'level'),
}

RESWEEP_POLICIES = ('every_cycle', 'on_crossing')


@dataclass
class MonitorSettings:
    threshold_usd: float = 10.0
    poll_interval_ms: int = 15 * 60 * 1000
    resweep_policy: str = 'every_cycle'


@dataclass
class EndpointSettings:
    probe_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 10.0
    tron_api_key: Optional[str] = None


@dataclass
class PriceSettings:
    api_url: str = 'https://api.coingecko.com/api/v3'
    ttl_seconds: float = 300
    timeout_seconds: float = 10.0


@dataclass
class SweepSettings:
    tron_native_reserve_sun: int = 30_000_000
    tron_fee_limit_sun: int = 30_000_000


@dataclass
class NotificationSettings:
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass
class LoggingSettings:
    level: str = 'INFO'
    file: Optional[str] = None
    rotation: str = '10 MB'
    retention: str = '14 days'


@dataclass
class Settings:
    """Resolved application settings"""
    database_path: str = 'custody_sweep.db'
    seed_encryption_key: Optional[str] = None
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    destinations: Dict[str, Optional[str]] = field(default_factory=dict)
    endpoints: EndpointSettings = field(default_factory=EndpointSettings)
    prices: PriceSettings = field(default_factory=PriceSettings)
    sweep: SweepSettings = field(default_factory=SweepSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        settings = cls(
            database_path=data['database_path'],
            seed_encryption_key=data.get('seed_encryption_key'),
            monitor=MonitorSettings(**data['monitor']),
            destinations=dict(data['destinations']),
            endpoints=EndpointSettings(**data['endpoints']),
            prices=PriceSettings(**data['prices']),
            sweep=SweepSettings(**data['sweep']),
            notifications=NotificationSettings(**data['notifications']),
            logging=LoggingSettings(**data['logging']),
        )
        if settings.monitor.resweep_policy not in RESWEEP_POLICIES:
            logger.warning(
                f"Unknown resweep_policy '{settings.monitor.resweep_policy}', using 'every_cycle'"
            )
            settings.monitor.resweep_policy = 'every_cycle'
        return settings

    def monitor_config_defaults(self) -> Dict[str, Any]:
        """Column values used to seed the monitor config row"""
        return {
            'threshold_usd': self.monitor.threshold_usd,
            'evm_destination_address': self.destinations.get('evm'),
            'btc_destination_address': self.destinations.get('utxo'),
            'tron_destination_address': self.destinations.get('tron'),
            'interval_ms': self.monitor.poll_interval_ms,
        }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict):
            if isinstance(value, dict):
                merged[key] = _deep_merge(merged[key], value)
            elif value is not None:
                logger.warning(f"Setting '{key}' must be a mapping, keeping defaults")
        elif key in merged:
            merged[key] = value
        else:
            logger.warning(f"Ignoring unknown setting: {key}")
    return merged


def _apply_env(data: Dict[str, Any]) -> None:
    for env_name, path in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        target = data
        for key in path[:-1]:
            target = target[key]
        target[path[-1]] = value


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from YAML, falling back to defaults

    Args:
        config_path: Path to YAML file (optional)

    Returns:
        Settings
    """
    data = copy.deepcopy(DEFAULT_SETTINGS)
    path = config_path or os.getenv('CUSTODY_SWEEP_CONFIG') or DEFAULT_CONFIG_FILE

    try:
        config_file = Path(path)
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
            data = _deep_merge(data, loaded)
            logger.info(f"Loaded settings from {config_file}")
        elif config_path:
            logger.warning(f"Config file not found: {config_file}, using defaults")
    except Exception as e:
        logger.warning(f"Failed to load settings from {path}: {e}, using defaults")

    _apply_env(data)
    return Settings.from_dict(data)


def setup_logging(settings: Settings) -> None:
    """Configure loguru sinks from settings"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.logging.level.upper(),
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan> - <level>{message}</level>",
    )
    if settings.logging.file:
        logger.add(
            settings.logging.file,
            level=settings.logging.level.upper(),
            rotation=settings.logging.rotation,
            retention=settings.logging.retention,
            enqueue=True,
        )
