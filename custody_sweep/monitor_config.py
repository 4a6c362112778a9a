"""
Monitor configuration snapshot, reloaded from the store every cycle.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from loguru import logger

from .chain_registry import ChainFamily
from .settings import Settings

# Config row column -> family whose sweeps it receives
DESTINATION_COLUMNS = {
    ChainFamily.EVM: 'evm_destination_address',
    ChainFamily.UTXO: 'btc_destination_address',
    ChainFamily.TRON: 'tron_destination_address',
}


@dataclass(frozen=True)
class MonitorConfig:
    """Immutable per-cycle view of the monitor configuration"""
    threshold_usd: float
    destinations: Mapping[ChainFamily, str]
    poll_interval_ms: int
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def destination_for(self, family: ChainFamily) -> Optional[str]:
        return self.destinations.get(family)


def load_monitor_config(store, settings: Settings, threshold_override: Optional[float] = None) -> MonitorConfig:
    """
    Build a fresh MonitorConfig from the store's config row

    Null columns fall back to ``threshold_override`` (threshold only) and
    then to settings defaults.

    Args:
        store: WalletStore
        settings: Application settings
        threshold_override: Threshold passed to the monitor at start

    Returns:
        MonitorConfig
    """
    row = store.get_monitor_config_row() or {}
    defaults = settings.monitor_config_defaults()

    threshold = row.get('threshold_usd')
    if threshold is None:
        threshold = threshold_override if threshold_override is not None else defaults['threshold_usd']

    interval = row.get('interval_ms') or defaults['interval_ms']

    destinations = {}
    for family, column in DESTINATION_COLUMNS.items():
        address = row.get(column) or defaults.get(column)
        if address:
            destinations[family] = address.strip()

    config = MonitorConfig(
        threshold_usd=float(threshold),
        destinations=MappingProxyType(destinations),
        poll_interval_ms=int(interval),
    )
    logger.debug(
        f"Monitor config loaded: threshold=${config.threshold_usd}, "
        f"interval={config.poll_interval_ms}ms, destinations={sorted(f.value for f in destinations)}"
    )
    return config
