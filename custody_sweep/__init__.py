"""
Custody Sweep

Multi-chain custodial balance monitor with automatic consolidation.

Components:
- chain_registry: Static chain catalog and ChainFamily
- key_derivation: Seed phrase -> per-chain address and signing key
- endpoint_resolver: Tiered endpoint failover with health probes
- chain_clients: EVM, Tron, Solana, Cosmos clients and UTXO explorers
- balance_aggregator: Concurrent native + token balance fetching
- price_cache: USD prices with TTL and stale fallback
- threshold_monitor: Scheduled threshold checks
- sweep_executor: Fee-reserving consolidation transfers
- notifications: Event sinks (log, webhook)
- wallet_store: SQLite persistence

3-Tier Endpoint Strategy:
- Tier 1 (Primary): Free provider
- Tier 2 (Secondary): Free provider (backup)
- Tier 3 (Tertiary): Chain-official public endpoint
"""

from .chain_registry import (
    ChainDescriptor,
    ChainFamily,
    TokenDescriptor,
    enabled_chains,
    get_chain,
)
from .errors import (
    AllEndpointsFailed,
    CustodySweepError,
    DerivationError,
    GasFeeInsufficient,
    InsufficientReserve,
    PartialFetchError,
    SweepError,
    SweepNotImplemented,
    ValidationError,
    classify_error,
)
from .key_derivation import (
    DerivationBatch,
    DerivedKey,
    KeyDerivationEngine,
)
from .endpoint_resolver import (
    ConnectionPool,
    EndpointAttempt,
    TieredEndpointResolver,
    try_in_order,
)
from .balance_aggregator import (
    BalanceAggregator,
    BalanceItem,
    ValuedBalanceItem,
    value_balances,
)
from .price_cache import (
    CoinGeckoPriceSource,
    PriceCache,
)
from .monitor_config import (
    MonitorConfig,
    load_monitor_config,
)
from .sweep_executor import (
    SweepExecutor,
    SweepOutcome,
    SweepReport,
    TransferRecord,
)
from .threshold_monitor import (
    MonitorState,
    ThresholdMonitor,
    WalletCheckResult,
)
from .notifications import (
    EventType,
    NotificationEvent,
    NotificationSink,
)
from .wallet_store import (
    NetworkAddress,
    Wallet,
    WalletStore,
)

__all__ = [
    # Registry
    'ChainDescriptor',
    'ChainFamily',
    'TokenDescriptor',
    'enabled_chains',
    'get_chain',

    # Errors
    'AllEndpointsFailed',
    'CustodySweepError',
    'DerivationError',
    'GasFeeInsufficient',
    'InsufficientReserve',
    'PartialFetchError',
    'SweepError',
    'SweepNotImplemented',
    'ValidationError',
    'classify_error',

    # Derivation
    'DerivationBatch',
    'DerivedKey',
    'KeyDerivationEngine',

    # Endpoints
    'ConnectionPool',
    'EndpointAttempt',
    'TieredEndpointResolver',
    'try_in_order',

    # Balances and prices
    'BalanceAggregator',
    'BalanceItem',
    'ValuedBalanceItem',
    'value_balances',
    'CoinGeckoPriceSource',
    'PriceCache',

    # Monitoring and sweeping
    'MonitorConfig',
    'load_monitor_config',
    'SweepExecutor',
    'SweepOutcome',
    'SweepReport',
    'TransferRecord',
    'MonitorState',
    'ThresholdMonitor',
    'WalletCheckResult',

    # Notifications
    'EventType',
    'NotificationEvent',
    'NotificationSink',

    # Persistence
    'NetworkAddress',
    'Wallet',
    'WalletStore',
]

__version__ = '1.0.0'
__description__ = 'Multi-chain custodial balance monitor and sweeper'
