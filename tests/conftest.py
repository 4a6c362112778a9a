"""
Shared fixtures and fakes for custody sweep tests.
"""
import copy
from typing import Dict, List, Optional, Tuple

import pytest

from custody_sweep.chain_registry import get_chain
from custody_sweep.notifications import NotificationSink
from custody_sweep.settings import DEFAULT_SETTINGS, Settings
from custody_sweep.wallet_store import WalletStore

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

EVM_DESTINATION = "0x000000000000000000000000000000000000dEaD"
GWEI = 10 ** 9
ETHER = 10 ** 18


class FakeChainClient:
    """In-memory stand-in for an EVM/Tron chain client"""

    def __init__(self, chain_id: str = "ethereum", endpoint: str = "https://fake-rpc",
                 native: int = 0, tokens: Optional[Dict[str, int]] = None,
                 gas_price: int = 20 * GWEI, gas_estimate: Optional[int] = 65000,
                 fail_native: bool = False, fail_tokens: bool = False, fail_send: bool = False,
                 token_error: Optional[Exception] = None):
        self.chain = get_chain(chain_id)
        self.endpoint = endpoint
        self.native = native
        self.tokens = tokens or {}
        self._gas_price = gas_price
        self.gas_estimate = gas_estimate
        self.fail_native = fail_native
        self.fail_tokens = fail_tokens
        self.fail_send = fail_send
        self.token_error = token_error
        self.sent: List[Tuple] = []
        self.closed = False
        self.probes = 0

    async def probe(self) -> int:
        self.probes += 1
        return 19_000_000

    async def get_native_balance(self, address: str) -> int:
        if self.fail_native:
            raise ConnectionError("native balance unavailable")
        return self.native

    async def get_token_balance(self, address: str, token) -> Tuple[int, int]:
        if self.fail_tokens:
            raise ConnectionError("token call reverted")
        if self.token_error:
            raise self.token_error
        return self.tokens.get(token.contract, 0), token.decimals

    async def gas_price(self) -> int:
        return self._gas_price

    async def estimate_token_transfer_gas(self, token, from_address, to_address, amount) -> int:
        if self.gas_estimate is None:
            raise ValueError("execution reverted")
        return self.gas_estimate

    async def send_native(self, private_key, to_address, amount, *args) -> str:
        if self.fail_send:
            raise ConnectionError("broadcast rejected")
        self.sent.append(("native", to_address, amount) + tuple(args))
        self.native -= amount
        return f"0xnative{len(self.sent)}"

    async def send_token(self, private_key, token, to_address, amount, *args) -> str:
        if self.fail_send:
            raise ConnectionError("broadcast rejected")
        self.sent.append(("token", to_address, amount, token.symbol) + tuple(args))
        self.tokens[token.contract] = 0
        return f"0xtoken{len(self.sent)}"

    async def close(self) -> None:
        self.closed = True


class FakeResolver:
    """Resolver returning prebuilt clients keyed by chain id"""

    def __init__(self, clients: Optional[Dict[str, FakeChainClient]] = None):
        self.clients = clients or {}
        self.invalidated: List[str] = []

    async def resolve(self, chain_id: str):
        chain = get_chain(chain_id)
        if chain.id not in self.clients:
            raise ConnectionError(f"no endpoint for {chain.id}")
        return self.clients[chain.id]

    async def invalidate(self, chain_id: str) -> None:
        self.invalidated.append(chain_id)


class FakeUtxoLookup:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances = balances or {}

    async def get_balance(self, chain, address: str) -> int:
        return self.balances.get(address, 0)


class FakePriceSource:
    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = prices or {}
        self.calls: List[str] = []
        self.fail = False

    async def fetch_usd(self, source_id: str) -> float:
        self.calls.append(source_id)
        if self.fail:
            raise ConnectionError("price source unreachable")
        return self.prices.get(source_id, 0.0)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemorySink(NotificationSink):
    def __init__(self):
        self.events = []

    async def notify(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def settings():
    return Settings.from_dict(copy.deepcopy(DEFAULT_SETTINGS))


@pytest.fixture
def store():
    wallet_store = WalletStore(":memory:")
    yield wallet_store
    wallet_store.close()


@pytest.fixture
def sink():
    return MemorySink()
