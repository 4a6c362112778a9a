"""
Chain Clients

One client class per request/response chain family, each with:
- probe(): cheap health check (latest block height / slot)
- get_native_balance(address) -> raw base units
- get_token_balance(address, token) -> (raw units, decimals)

EVM and Tron clients can also sign and broadcast sweep transfers.
UTXO chains have no RPC client; UtxoBalanceLookup queries REST explorers
in tier order and treats exhaustion as a zero balance.
"""

import asyncio
import os
from typing import Dict, List, Optional, Tuple

import aiohttp
import httpx
from eth_account import Account
from loguru import logger
from tronpy import AsyncTron
from tronpy.exceptions import AddressNotFound
from tronpy.keys import PrivateKey
from tronpy.providers.async_http import AsyncHTTPProvider as TronHTTPProvider
from web3 import AsyncWeb3

from .chain_registry import ChainDescriptor, ChainFamily, TokenDescriptor
from .endpoint_resolver import try_in_order
from .errors import AllEndpointsFailed, ChainRequestError

DEFAULT_REQUEST_TIMEOUT = 10.0

# Failures that say the endpoint itself is unhealthy (aiohttp for web3/REST, httpx for tronpy)
TRANSPORT_ERRORS = (
    aiohttp.ClientError,
    httpx.TransportError,
    asyncio.TimeoutError,
    OSError,
    ChainRequestError,
)


def is_transport_error(exc: BaseException) -> bool:
    """True for connection-level failures; False for reverts and other call errors"""
    return isinstance(exc, TRANSPORT_ERRORS)


ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


class ChainClient:
    """Base class for request/response chain clients"""

    family: ChainFamily = None

    def __init__(self, chain: ChainDescriptor, endpoint: str, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.chain = chain
        self.endpoint = endpoint
        self.timeout = timeout

    async def probe(self) -> int:
        raise NotImplementedError

    async def get_native_balance(self, address: str) -> int:
        raise NotImplementedError

    async def get_token_balance(self, address: str, token: TokenDescriptor) -> Tuple[int, int]:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    def __repr__(self):
        return f"{type(self).__name__}({self.chain.id} @ {self.endpoint})"


class _HttpJsonClient(ChainClient):
    """Shared aiohttp session handling for JSON over HTTP"""

    def __init__(self, chain: ChainDescriptor, endpoint: str, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(chain, endpoint.rstrip('/'), timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _get_json(self, path: str, params: Optional[Dict] = None):
        session = await self._get_session()
        async with session.get(f"{self.endpoint}{path}", params=params) as response:
            if response.status != 200:
                raise ChainRequestError(self.endpoint, f"HTTP {response.status} for {path}")
            return await response.json(content_type=None)

    async def _rpc(self, method: str, params: List):
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with session.post(self.endpoint, json=payload) as response:
            if response.status != 200:
                raise ChainRequestError(self.endpoint, f"HTTP {response.status} for {method}")
            data = await response.json(content_type=None)
        if data.get("error"):
            raise ChainRequestError(self.endpoint, f"{method}: {data['error']}")
        return data.get("result")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


# ---------------------------------------------------------------------------
# EVM
# ---------------------------------------------------------------------------

class EvmChainClient(ChainClient):
    """EVM JSON-RPC client backed by web3's async provider"""

    family = ChainFamily.EVM

    def __init__(self, chain: ChainDescriptor, endpoint: str, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(chain, endpoint, timeout)
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            endpoint,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
        ))

    def _contract(self, token: TokenDescriptor):
        return self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token.contract), abi=ERC20_ABI
        )

    async def probe(self) -> int:
        return await self.w3.eth.block_number

    async def get_native_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address))

    async def get_token_balance(self, address: str, token: TokenDescriptor) -> Tuple[int, int]:
        contract = self._contract(token)
        raw = await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()
        try:
            decimals = await contract.functions.decimals().call()
        except Exception as e:
            logger.debug(f"decimals() failed for {token.symbol} on {self.chain.id}, using {token.decimals}: {e}")
            decimals = token.decimals
        return raw, decimals

    async def gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def estimate_token_transfer_gas(self, token: TokenDescriptor, from_address: str,
                                          to_address: str, amount: int) -> int:
        contract = self._contract(token)
        return await contract.functions.transfer(
            AsyncWeb3.to_checksum_address(to_address), amount
        ).estimate_gas({"from": AsyncWeb3.to_checksum_address(from_address)})

    async def _send_signed(self, tx: Dict, private_key: str) -> str:
        signed = Account.sign_transaction(tx, private_key)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

    async def send_native(self, private_key: str, to_address: str, value: int, gas_price: int,
                          gas_limit: int = 21000) -> str:
        account = Account.from_key(private_key)
        nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
        tx = {
            "to": AsyncWeb3.to_checksum_address(to_address),
            "value": value,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.chain.evm_chain_id,
        }
        return await self._send_signed(tx, private_key)

    async def send_token(self, private_key: str, token: TokenDescriptor, to_address: str,
                         amount: int, gas_price: int, gas_limit: int) -> str:
        account = Account.from_key(private_key)
        nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
        tx = await self._contract(token).functions.transfer(
            AsyncWeb3.to_checksum_address(to_address), amount
        ).build_transaction({
            "from": account.address,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.chain.evm_chain_id,
        })
        return await self._send_signed(tx, private_key)

    async def close(self) -> None:
        await self.w3.provider.disconnect()


# ---------------------------------------------------------------------------
# Tron
# ---------------------------------------------------------------------------

def tron_api_key_from_env() -> Optional[str]:
    return os.getenv('TRONGRID_API_KEY') or os.getenv('TRON_PRO_API_KEY')


class TronChainClient(ChainClient):
    """Tron HTTP API client backed by tronpy"""

    family = ChainFamily.TRON

    def __init__(self, chain: ChainDescriptor, endpoint: str, timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 api_key: Optional[str] = None):
        super().__init__(chain, endpoint, timeout)
        # TRON-PRO-API-KEY header is only understood by TronGrid
        key = api_key if 'trongrid' in endpoint else None
        self.client = AsyncTron(provider=TronHTTPProvider(endpoint, timeout=timeout, api_key=key))

    async def probe(self) -> int:
        return await self.client.get_latest_block_number()

    async def get_native_balance(self, address: str) -> int:
        try:
            balance = await self.client.get_account_balance(address)
        except AddressNotFound:
            # Unactivated accounts have no on-chain record yet
            return 0
        return int(balance * 1_000_000)

    async def get_token_balance(self, address: str, token: TokenDescriptor) -> Tuple[int, int]:
        contract = await self.client.get_contract(token.contract)
        raw = await contract.functions.balanceOf(address)
        try:
            decimals = await contract.functions.decimals()
        except Exception as e:
            logger.debug(f"decimals() failed for {token.symbol} on tron, using {token.decimals}: {e}")
            decimals = token.decimals
        return int(raw), int(decimals)

    async def send_native(self, private_key: str, to_address: str, amount_sun: int) -> str:
        priv = PrivateKey(bytes.fromhex(private_key))
        owner = priv.public_key.to_base58check_address()
        txn = await self.client.trx.transfer(owner, to_address, amount_sun).build()
        txn.sign(priv)
        result = await txn.broadcast()
        return result.txid

    async def send_token(self, private_key: str, token: TokenDescriptor, to_address: str,
                         amount: int, fee_limit_sun: int) -> str:
        priv = PrivateKey(bytes.fromhex(private_key))
        owner = priv.public_key.to_base58check_address()
        contract = await self.client.get_contract(token.contract)
        builder = await contract.functions.transfer(to_address, amount)
        txn = await builder.with_owner(owner).fee_limit(fee_limit_sun).build()
        txn.sign(priv)
        result = await txn.broadcast()
        return result.txid

    async def close(self) -> None:
        await self.client.close()


# ---------------------------------------------------------------------------
# Solana
# ---------------------------------------------------------------------------

class SolanaChainClient(_HttpJsonClient):
    """Solana JSON-RPC client"""

    family = ChainFamily.SOLANA

    async def probe(self) -> int:
        return int(await self._rpc("getSlot", []))

    async def get_native_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address])
        return int(result["value"])

    async def get_token_balance(self, address: str, token: TokenDescriptor) -> Tuple[int, int]:
        result = await self._rpc("getTokenAccountsByOwner", [
            address,
            {"mint": token.contract},
            {"encoding": "jsonParsed"},
        ])
        total = 0
        decimals = token.decimals
        for account in result.get("value", []):
            amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
            total += int(amount["amount"])
            decimals = int(amount.get("decimals", decimals))
        return total, decimals


# ---------------------------------------------------------------------------
# Cosmos
# ---------------------------------------------------------------------------

class CosmosChainClient(_HttpJsonClient):
    """Cosmos SDK REST (LCD) client"""

    family = ChainFamily.COSMOS

    async def probe(self) -> int:
        data = await self._get_json("/cosmos/base/tendermint/v1beta1/blocks/latest")
        block = data.get("block") or data.get("sdk_block") or {}
        return int(block["header"]["height"])

    async def get_native_balance(self, address: str) -> int:
        data = await self._get_json(f"/cosmos/bank/v1beta1/balances/{address}")
        for coin in data.get("balances", []):
            if coin.get("denom") == self.chain.native_denom:
                return int(coin["amount"])
        return 0

    async def get_token_balance(self, address: str, token: TokenDescriptor) -> Tuple[int, int]:
        data = await self._get_json(f"/cosmos/bank/v1beta1/balances/{address}")
        for coin in data.get("balances", []):
            if coin.get("denom") == token.contract:
                return int(coin["amount"]), token.decimals
        return 0, token.decimals

    async def get_delegations(self, address: str) -> List[Dict]:
        """Staking delegations of an address as {validator, amount} dicts"""
        data = await self._get_json(f"/cosmos/staking/v1beta1/delegations/{address}")
        delegations = []
        for entry in data.get("delegation_responses", []):
            delegations.append({
                "validator": entry["delegation"]["validator_address"],
                "amount": int(entry["balance"]["amount"]),
                "denom": entry["balance"]["denom"],
            })
        return delegations

    async def get_validators(self, limit: int = 50) -> List[Dict]:
        """Bonded validators with moniker and commission rate"""
        data = await self._get_json(
            "/cosmos/staking/v1beta1/validators",
            params={"status": "BOND_STATUS_BONDED", "pagination.limit": str(limit)},
        )
        validators = []
        for validator in data.get("validators", []):
            validators.append({
                "address": validator["operator_address"],
                "moniker": validator.get("description", {}).get("moniker", ""),
                "commission": float(validator["commission"]["commission_rates"]["rate"]),
                "tokens": int(validator.get("tokens", 0)),
                "jailed": bool(validator.get("jailed", False)),
            })
        return validators


# ---------------------------------------------------------------------------
# UTXO explorers
# ---------------------------------------------------------------------------

class UtxoExplorer:
    """REST block explorer returning a confirmed balance in satoshis"""

    name = "explorer"
    base_url = ""

    def __init__(self, chain: ChainDescriptor):
        self.chain = chain

    @property
    def endpoint(self) -> str:
        return self.base_url

    async def _get(self, session: aiohttp.ClientSession, url: str):
        async with session.get(url) as response:
            if response.status != 200:
                raise ChainRequestError(self.name, f"HTTP {response.status}")
            if response.content_type == 'application/json':
                return await response.json()
            return await response.text()

    async def fetch_balance(self, session: aiohttp.ClientSession, address: str) -> int:
        raise NotImplementedError


class BlockstreamExplorer(UtxoExplorer):
    name = "blockstream"
    base_url = "https://blockstream.info/api"

    async def fetch_balance(self, session, address):
        data = await self._get(session, f"{self.base_url}/address/{address}")
        stats = data["chain_stats"]
        return int(stats["funded_txo_sum"]) - int(stats["spent_txo_sum"])


class BlockCypherExplorer(UtxoExplorer):
    name = "blockcypher"
    base_url = "https://api.blockcypher.com/v1"

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.chain.utxo.blockcypher_coin}/main"

    async def fetch_balance(self, session, address):
        data = await self._get(session, f"{self.endpoint}/addrs/{address}/balance")
        return int(data["balance"])


class BlockchainInfoExplorer(UtxoExplorer):
    name = "blockchain_info"
    base_url = "https://blockchain.info"

    async def fetch_balance(self, session, address):
        text = await self._get(session, f"{self.base_url}/q/addressbalance/{address}")
        return int(str(text).strip())


EXPLORERS = {
    'blockstream': BlockstreamExplorer,
    'blockcypher': BlockCypherExplorer,
    'blockchain_info': BlockchainInfoExplorer,
}


class UtxoBalanceLookup:
    """
    Balance lookup over REST explorers in tier order

    An exhausted explorer list means "balance unknown", reported as 0:
    unused addresses are often missing from some explorers.
    """

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    def explorers_for(self, chain: ChainDescriptor) -> List[UtxoExplorer]:
        return [EXPLORERS[name](chain) for name in chain.utxo.explorers]

    async def get_balance(self, chain: ChainDescriptor, address: str) -> int:
        session = await self._get_session()

        async def probe(explorer: UtxoExplorer) -> int:
            return await explorer.fetch_balance(session, address)

        try:
            explorer, balance, _ = await try_in_order(
                self.explorers_for(chain), probe, self.timeout, f"{chain.id} explorers"
            )
        except AllEndpointsFailed as e:
            logger.warning(f"⚠ {chain.symbol} balance unknown for {address}, assuming 0: {e}")
            return 0

        logger.debug(f"{chain.symbol} balance via {explorer.name}: {balance}")
        return balance

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_RPC_CLIENTS = {
    ChainFamily.EVM: EvmChainClient,
    ChainFamily.TRON: TronChainClient,
    ChainFamily.SOLANA: SolanaChainClient,
    ChainFamily.COSMOS: CosmosChainClient,
}
assert set(_RPC_CLIENTS) | {ChainFamily.UTXO} == set(ChainFamily), "RPC client missing for a chain family"


class ChainClientFactory:
    """Builds the family-specific client for (chain, endpoint)"""

    def __init__(self, request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 tron_api_key: Optional[str] = None):
        self.request_timeout = request_timeout
        self.tron_api_key = tron_api_key or tron_api_key_from_env()

    def __call__(self, chain: ChainDescriptor, endpoint: str) -> ChainClient:
        client_cls = _RPC_CLIENTS.get(chain.family)
        if client_cls is None:
            raise ChainRequestError(endpoint, f"no RPC client for {chain.family.value} chains")
        if client_cls is TronChainClient:
            return TronChainClient(chain, endpoint, self.request_timeout, api_key=self.tron_api_key)
        return client_cls(chain, endpoint, self.request_timeout)
