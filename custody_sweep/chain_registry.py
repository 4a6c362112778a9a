"""
Chain Registry

Static catalog of the chains the custody engine understands.

Every chain belongs to exactly one ChainFamily. The family decides which
derivation, balance and sweep strategy applies. Endpoints are listed in
tier order:
1. Primary: PublicNode (free, no API key)
2. Secondary: Ankr public nodes (backup)
3. Tertiary: chain-official public RPC (emergency)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .errors import ValidationError


class ChainFamily(str, Enum):
    """Closed set of chain families"""
    EVM = "EVM"
    UTXO = "UTXO"
    SOLANA = "SOLANA"
    COSMOS = "COSMOS"
    TRON = "TRON"


@dataclass(frozen=True)
class TokenDescriptor:
    """Tracked token contract on a chain"""
    symbol: str
    contract: str
    decimals: int


@dataclass(frozen=True)
class UtxoParams:
    """Address encoding parameters for UTXO chains"""
    p2pkh_version: int
    wif_version: int
    p2sh_version: Optional[int] = None
    bech32_hrp: Optional[str] = None
    explorers: Tuple[str, ...] = ()
    blockcypher_coin: Optional[str] = None


@dataclass(frozen=True)
class ChainDescriptor:
    """Static description of one chain"""
    id: str
    key: str
    name: str
    symbol: str
    family: ChainFamily
    decimals: int
    derivation_path: str
    endpoints: Tuple[str, ...] = ()
    derivation_paths: Dict[str, str] = field(default_factory=dict)
    evm_chain_id: Optional[int] = None
    address_prefix: Optional[str] = None
    native_denom: Optional[str] = None
    tokens: Tuple[TokenDescriptor, ...] = ()
    utxo: Optional[UtxoParams] = None
    enabled: bool = True

    def __repr__(self):
        return f"ChainDescriptor({self.id}/{self.symbol}: {self.family.value})"


EVM_PATH = "m/44'/60'/0'/0/0"

# USDT contracts
USDT_ETHEREUM = TokenDescriptor("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6)
USDT_BSC = TokenDescriptor("USDT", "0x55d398326f99059fF775485246999027B3197955", 18)
USDT_TRON = TokenDescriptor("USDT", "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t", 6)
USDT_SOLANA = TokenDescriptor("USDT", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6)


def _evm(chain_id: str, key: str, name: str, symbol: str, evm_chain_id: int,
         endpoints: Tuple[str, ...], tokens: Tuple[TokenDescriptor, ...] = ()) -> ChainDescriptor:
    return ChainDescriptor(
        id=chain_id,
        key=key,
        name=name,
        symbol=symbol,
        family=ChainFamily.EVM,
        decimals=18,
        derivation_path=EVM_PATH,
        endpoints=endpoints,
        evm_chain_id=evm_chain_id,
        tokens=tokens,
    )


CHAINS: Dict[str, ChainDescriptor] = {
    'ethereum': _evm('ethereum', 'ETHEREUM', 'Ethereum', 'ETH', 1, (
        'https://ethereum-rpc.publicnode.com',
        'https://rpc.ankr.com/eth',
        'https://eth.llamarpc.com',
    ), (USDT_ETHEREUM,)),
    'bsc': _evm('bsc', 'BSC', 'BNB Smart Chain', 'BNB', 56, (
        'https://bsc-rpc.publicnode.com',
        'https://rpc.ankr.com/bsc',
        'https://bsc-dataseed1.binance.org',
    ), (USDT_BSC,)),
    'polygon': _evm('polygon', 'POLYGON', 'Polygon', 'MATIC', 137, (
        'https://polygon-bor-rpc.publicnode.com',
        'https://rpc.ankr.com/polygon',
        'https://polygon-rpc.com',
    )),
    'arbitrum': _evm('arbitrum', 'ARBITRUM', 'Arbitrum One', 'ETH', 42161, (
        'https://arbitrum-one-rpc.publicnode.com',
        'https://rpc.ankr.com/arbitrum',
        'https://arb1.arbitrum.io/rpc',
    )),
    'optimism': _evm('optimism', 'OPTIMISM', 'Optimism', 'ETH', 10, (
        'https://optimism-rpc.publicnode.com',
        'https://rpc.ankr.com/optimism',
        'https://mainnet.optimism.io',
    )),
    'avalanchec': _evm('avalanchec', 'AVALANCHE', 'Avalanche C-Chain', 'AVAX', 43114, (
        'https://avalanche-c-chain-rpc.publicnode.com',
        'https://rpc.ankr.com/avalanche',
        'https://api.avax.network/ext/bc/C/rpc',
    )),
    'fantom': _evm('fantom', 'FANTOM', 'Fantom', 'FTM', 250, (
        'https://fantom-rpc.publicnode.com',
        'https://rpc.ankr.com/fantom',
        'https://rpc.ftm.tools',
    )),
    'base': _evm('base', 'BASE', 'Base', 'ETH', 8453, (
        'https://base-rpc.publicnode.com',
        'https://rpc.ankr.com/base',
        'https://mainnet.base.org',
    )),
    'bitcoin': ChainDescriptor(
        id='bitcoin',
        key='BITCOIN',
        name='Bitcoin',
        symbol='BTC',
        family=ChainFamily.UTXO,
        decimals=8,
        derivation_path="m/84'/0'/0'/0/0",
        derivation_paths={
            'legacy': "m/44'/0'/0'/0/0",
            'segwit': "m/49'/0'/0'/0/0",
            'native_segwit': "m/84'/0'/0'/0/0",
        },
        utxo=UtxoParams(
            p2pkh_version=0x00,
            p2sh_version=0x05,
            wif_version=0x80,
            bech32_hrp='bc',
            explorers=('blockstream', 'blockcypher', 'blockchain_info'),
            blockcypher_coin='btc',
        ),
    ),
    'litecoin': ChainDescriptor(
        id='litecoin',
        key='LITECOIN',
        name='Litecoin',
        symbol='LTC',
        family=ChainFamily.UTXO,
        decimals=8,
        derivation_path="m/84'/2'/0'/0/0",
        derivation_paths={
            'legacy': "m/44'/2'/0'/0/0",
            'segwit': "m/49'/2'/0'/0/0",
            'native_segwit': "m/84'/2'/0'/0/0",
        },
        utxo=UtxoParams(
            p2pkh_version=0x30,
            p2sh_version=0x32,
            wif_version=0xb0,
            bech32_hrp='ltc',
            explorers=('blockcypher',),
            blockcypher_coin='ltc',
        ),
    ),
    'dogecoin': ChainDescriptor(
        id='dogecoin',
        key='DOGECOIN',
        name='Dogecoin',
        symbol='DOGE',
        family=ChainFamily.UTXO,
        decimals=8,
        derivation_path="m/44'/3'/0'/0/0",
        derivation_paths={
            'legacy': "m/44'/3'/0'/0/0",
        },
        utxo=UtxoParams(
            p2pkh_version=0x1e,
            wif_version=0x9e,
            explorers=('blockcypher',),
            blockcypher_coin='doge',
        ),
    ),
    'solana': ChainDescriptor(
        id='solana',
        key='SOLANA',
        name='Solana',
        symbol='SOL',
        family=ChainFamily.SOLANA,
        decimals=9,
        derivation_path='',  # keypair from seed[:32], no HD path
        endpoints=(
            'https://solana-rpc.publicnode.com',
            'https://rpc.ankr.com/solana',
            'https://api.mainnet-beta.solana.com',
        ),
        tokens=(USDT_SOLANA,),
    ),
    'cosmos': ChainDescriptor(
        id='cosmos',
        key='COSMOS',
        name='Cosmos Hub',
        symbol='ATOM',
        family=ChainFamily.COSMOS,
        decimals=6,
        derivation_path="m/44'/118'/0'/0/0",
        endpoints=(
            'https://cosmos-rest.publicnode.com',
            'https://rest.cosmos.directory/cosmoshub',
            'https://lcd-cosmoshub.keplr.app',
        ),
        address_prefix='cosmos',
        native_denom='uatom',
    ),
    'tron': ChainDescriptor(
        id='tron',
        key='TRON',
        name='Tron',
        symbol='TRX',
        family=ChainFamily.TRON,
        decimals=6,
        derivation_path="m/44'/195'/0'/0/0",
        endpoints=(
            'https://api.trongrid.io',
            'https://tron-rpc.publicnode.com',
            'https://api.tronstack.io',
        ),
        tokens=(USDT_TRON,),
    ),
}

# Ticker -> CoinGecko id
PRICE_SOURCE_IDS: Dict[str, str] = {
    'ETH': 'ethereum',
    'BTC': 'bitcoin',
    'BNB': 'binancecoin',
    'USDT': 'tether',
    'USDC': 'usd-coin',
    'MATIC': 'matic-network',
    'AVAX': 'avalanche-2',
    'FTM': 'fantom',
    'SOL': 'solana',
    'ATOM': 'cosmos',
    'LTC': 'litecoin',
    'DOGE': 'dogecoin',
    'TRX': 'tron',
}

_BY_KEY = {chain.key: chain for chain in CHAINS.values()}


def enabled_chains() -> List[ChainDescriptor]:
    """Return every enabled chain in catalog order"""
    return [chain for chain in CHAINS.values() if chain.enabled]


def get_chain(chain_id: str) -> ChainDescriptor:
    """
    Look up a chain by id ("ethereum") or key ("ETHEREUM")

    Raises:
        ValidationError: if the chain is unknown
    """
    if not chain_id:
        raise ValidationError("Chain id is required")

    chain = CHAINS.get(chain_id.lower()) or _BY_KEY.get(chain_id.upper())
    if chain is None:
        logger.debug(f"Unknown chain requested: {chain_id}")
        raise ValidationError(f"Unsupported chain: {chain_id}")
    return chain


def chains_by_family(family: ChainFamily) -> List[ChainDescriptor]:
    return [chain for chain in enabled_chains() if chain.family is family]


def price_source_id(symbol: str) -> Optional[str]:
    return PRICE_SOURCE_IDS.get(symbol.upper())


def find_token(chain: ChainDescriptor, contract: str) -> Optional[TokenDescriptor]:
    """Find a tracked token by contract (case-insensitive for hex addresses)"""
    for token in chain.tokens:
        if token.contract.lower() == contract.lower():
            return token
    return None
