"""
Balance Aggregator

Fetches native and tracked-token balances for every (chain, address)
pair of a wallet concurrently. A failed fetch becomes an error-tagged
BalanceItem; aggregation itself never raises.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .chain_clients import is_transport_error
from .chain_registry import ChainDescriptor, ChainFamily, TokenDescriptor, get_chain
from .errors import PartialFetchError


@dataclass
class BalanceItem:
    """One balance observation for a wallet address"""
    chain_id: str
    symbol: str
    raw_balance: int
    decimals: int
    is_token: bool
    source_address: str
    token_contract: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_balance) / (Decimal(10) ** self.decimals)

    def to_dict(self) -> Dict:
        return {
            'chain_id': self.chain_id,
            'symbol': self.symbol,
            'raw_balance': str(self.raw_balance),
            'amount': str(self.amount),
            'is_token': self.is_token,
            'address': self.source_address,
            'token_contract': self.token_contract,
            'error': self.error,
        }

    def __repr__(self):
        if self.error:
            return f"BalanceItem({self.chain_id}/{self.symbol}: ✗ {self.error})"
        return f"BalanceItem({self.chain_id}/{self.symbol}: {self.amount})"


@dataclass
class ValuedBalanceItem:
    """Balance item with a resolved USD price"""
    item: BalanceItem
    price_usd: float
    value_usd: float

    @property
    def chain_id(self) -> str:
        return self.item.chain_id

    @property
    def symbol(self) -> str:
        return self.item.symbol

    @property
    def is_token(self) -> bool:
        return self.item.is_token

    def to_dict(self) -> Dict:
        return {
            **self.item.to_dict(),
            'price_usd': self.price_usd,
            'value_usd': round(self.value_usd, 2),
        }


class BalanceAggregator:
    """
    Concurrent multi-chain balance fetching

    Features:
    - One concurrent fetch per native balance and per tracked token
    - Per-item failure isolation
    - Pooled endpoint invalidated when a call against it fails
    """

    def __init__(self, resolver, utxo_lookup):
        """
        Args:
            resolver: TieredEndpointResolver for RPC families
            utxo_lookup: UtxoBalanceLookup for UTXO chains
        """
        self.resolver = resolver
        self.utxo_lookup = utxo_lookup
        self._native_fetchers: Dict[ChainFamily, Callable[[ChainDescriptor, str], Awaitable[int]]] = {
            ChainFamily.EVM: self._rpc_native,
            ChainFamily.TRON: self._rpc_native,
            ChainFamily.SOLANA: self._rpc_native,
            ChainFamily.COSMOS: self._rpc_native,
            ChainFamily.UTXO: self._utxo_native,
        }
        assert set(self._native_fetchers) == set(ChainFamily), "balance handler missing for a chain family"

    async def _rpc_native(self, chain: ChainDescriptor, address: str) -> int:
        client = await self.resolver.resolve(chain.id)
        try:
            return await client.get_native_balance(address)
        except Exception as e:
            if is_transport_error(e):
                await self.resolver.invalidate(chain.id)
            raise

    async def _utxo_native(self, chain: ChainDescriptor, address: str) -> int:
        return await self.utxo_lookup.get_balance(chain, address)

    async def _fetch_native(self, chain: ChainDescriptor, address: str) -> BalanceItem:
        raw = await self._native_fetchers[chain.family](chain, address)
        return BalanceItem(
            chain_id=chain.id,
            symbol=chain.symbol,
            raw_balance=int(raw),
            decimals=chain.decimals,
            is_token=False,
            source_address=address,
        )

    async def _fetch_token(self, chain: ChainDescriptor, address: str, token: TokenDescriptor) -> BalanceItem:
        client = await self.resolver.resolve(chain.id)
        try:
            raw, decimals = await client.get_token_balance(address, token)
        except Exception as e:
            if is_transport_error(e):
                await self.resolver.invalidate(chain.id)
            raise
        return BalanceItem(
            chain_id=chain.id,
            symbol=token.symbol,
            raw_balance=int(raw),
            decimals=int(decimals),
            is_token=True,
            source_address=address,
            token_contract=token.contract,
        )

    async def _guard(self, fetch: Awaitable[BalanceItem], chain_id: str, symbol: str,
                     address: str, is_token: bool, contract: Optional[str], decimals: int) -> BalanceItem:
        try:
            return await fetch
        except Exception as e:
            failure = PartialFetchError(chain_id, address, symbol, e)
            logger.warning(f"✗ {failure}")
            return BalanceItem(
                chain_id=chain_id,
                symbol=symbol,
                raw_balance=0,
                decimals=decimals,
                is_token=is_token,
                source_address=address,
                token_contract=contract,
                error=str(e) or type(e).__name__,
            )

    async def aggregate(self, wallet_networks: Sequence[Tuple[str, str]]) -> List[BalanceItem]:
        """
        Fetch all balances for a wallet's network addresses

        Args:
            wallet_networks: (chain_id, address) pairs

        Returns:
            Native item then token items per pair, successes and failures interleaved
        """
        fetches = []
        for chain_id, address in wallet_networks:
            try:
                chain = get_chain(chain_id)
            except Exception as e:
                fetches.append(self._guard(
                    _raise(e), chain_id, chain_id.upper(), address, False, None, 0
                ))
                continue

            fetches.append(self._guard(
                self._fetch_native(chain, address),
                chain.id, chain.symbol, address, False, None, chain.decimals,
            ))
            for token in chain.tokens:
                fetches.append(self._guard(
                    self._fetch_token(chain, address, token),
                    chain.id, token.symbol, address, True, token.contract, token.decimals,
                ))

        items = list(await asyncio.gather(*fetches))
        failed = sum(1 for item in items if not item.ok)
        logger.debug(f"Aggregated {len(items)} balance items ({failed} failed)")
        return items


async def _raise(exc: Exception):
    raise exc


async def value_balances(items: Sequence[BalanceItem], price_cache) -> List[ValuedBalanceItem]:
    """
    Attach USD values to successful, non-zero items

    Items without a positive price are dropped.
    """
    valued: List[ValuedBalanceItem] = []
    for item in items:
        if not item.ok or item.raw_balance <= 0:
            continue
        price = await price_cache.price_usd(item.symbol)
        if price <= 0:
            continue
        valued.append(ValuedBalanceItem(item, price, float(item.amount) * price))
    return valued
