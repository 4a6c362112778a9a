"""
Tiered Endpoint Resolver

Finds a working endpoint per chain by probing candidates in tier order:
1. Primary: free provider
2. Secondary: free provider (backup)
3. Tertiary: chain-official public endpoint (emergency)

The first candidate that passes its health probe is pooled and reused
until a caller reports a failure through ``invalidate()``.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from loguru import logger

from .chain_registry import ChainFamily, get_chain
from .errors import AllEndpointsFailed, ValidationError

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_PROBE_TIMEOUT = 10.0

TIER_NAMES = {1: 'primary', 2: 'secondary', 3: 'tertiary'}


@dataclass
class EndpointAttempt:
    """One failed probe"""
    tier: int
    endpoint: str
    error: str
    elapsed_ms: float

    def __repr__(self):
        return f"EndpointAttempt(tier {self.tier} {self.endpoint}: ✗ {self.error})"


def _describe(candidate) -> str:
    return getattr(candidate, 'endpoint', None) or getattr(candidate, 'name', None) or str(candidate)


async def try_in_order(
    candidates: Sequence[T],
    probe: Callable[[T], Awaitable[R]],
    timeout: float,
    label: str,
) -> Tuple[T, R, List[EndpointAttempt]]:
    """
    Probe candidates one at a time until one succeeds

    Args:
        candidates: Endpoints (or providers) in tier order
        probe: Async health check; its result is returned on success
        timeout: Seconds allowed per probe
        label: Name used in logs and in the final error

    Returns:
        (winning candidate, probe result, failed attempts before it)

    Raises:
        AllEndpointsFailed: every candidate failed or timed out
    """
    failures: List[EndpointAttempt] = []

    for tier, candidate in enumerate(candidates, start=1):
        endpoint = _describe(candidate)
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(probe(candidate), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {timeout}s"
        except Exception as e:
            error = str(e) or type(e).__name__
        else:
            if failures:
                logger.info(f"🔄 {label}: using tier {tier} ({endpoint}) after {len(failures)} failure(s)")
            else:
                logger.debug(f"✓ {label}: tier {tier} ({endpoint}) healthy")
            return candidate, result, failures

        elapsed_ms = (time.monotonic() - started) * 1000
        tier_name = TIER_NAMES.get(tier, f"tier {tier}")
        logger.warning(f"⚠ {tier_name} failed for {label}: {error}")
        failures.append(EndpointAttempt(tier, endpoint, error, elapsed_ms))

    raise AllEndpointsFailed(label, failures)


class ConnectionPool:
    """Healthy client handles keyed by chain id"""

    def __init__(self):
        self._handles: Dict[str, object] = {}

    def get(self, chain_id: str):
        return self._handles.get(chain_id)

    def put(self, chain_id: str, handle) -> None:
        self._handles[chain_id] = handle

    def __contains__(self, chain_id: str) -> bool:
        return chain_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    async def invalidate(self, chain_id: str) -> bool:
        """Drop and close the handle for a chain; returns True if one was pooled"""
        handle = self._handles.pop(chain_id, None)
        if handle is None:
            return False
        await _close_quietly(handle)
        return True

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await _close_quietly(handle)


async def _close_quietly(handle) -> None:
    close = getattr(handle, 'close', None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.debug(f"Error closing {_describe(handle)}: {e}")


class TieredEndpointResolver:
    """
    Resolve a healthy chain client per chain

    Features:
    - Tier-ordered probing with a per-probe timeout
    - Pooled handles (no revalidation on reuse)
    - Explicit invalidate() on observed failure
    - Failure log of the last resolution per chain
    """

    def __init__(self, client_factory: Callable, probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
                 pool: Optional[ConnectionPool] = None):
        """
        Args:
            client_factory: Callable (chain, endpoint) -> client with async probe()/close()
            probe_timeout: Seconds allowed for each endpoint probe
            pool: Connection pool (a fresh one by default)
        """
        self.client_factory = client_factory
        self.probe_timeout = probe_timeout
        self.pool = pool or ConnectionPool()
        self.last_failures: Dict[str, List[EndpointAttempt]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def resolve(self, chain_id: str):
        """
        Return a healthy client for the chain

        Raises:
            ValidationError: unknown chain, or a UTXO chain (explorer lookup instead)
            AllEndpointsFailed: every tier failed its probe
        """
        chain = get_chain(chain_id)

        cached = self.pool.get(chain.id)
        if cached is not None:
            return cached

        if chain.family is ChainFamily.UTXO:
            raise ValidationError(f"{chain.id} balances are served by explorer lookup, not RPC")

        lock = self._locks.setdefault(chain.id, asyncio.Lock())
        async with lock:
            cached = self.pool.get(chain.id)
            if cached is not None:
                return cached

            probed: List = []

            async def probe(endpoint: str):
                client = self.client_factory(chain, endpoint)
                probed.append(client)
                await client.probe()
                return client

            try:
                _, client, failures = await try_in_order(
                    chain.endpoints, probe, self.probe_timeout, chain.id
                )
            except AllEndpointsFailed as e:
                self.last_failures[chain.id] = e.attempts
                for candidate in probed:
                    await _close_quietly(candidate)
                logger.error(f"❌ {e}")
                raise

            for candidate in probed:
                if candidate is not client:
                    await _close_quietly(candidate)

            self.last_failures[chain.id] = failures
            self.pool.put(chain.id, client)
            logger.info(f"✓ Connected to {chain.id} via {client.endpoint}")
            return client

    async def invalidate(self, chain_id: str) -> None:
        """Forget the pooled client for a chain so the next resolve re-probes"""
        chain = get_chain(chain_id)
        if await self.pool.invalidate(chain.id):
            logger.warning(f"🔄 Invalidated {chain.id} endpoint; next call will re-probe tiers")

    async def close(self) -> None:
        await self.pool.close_all()
