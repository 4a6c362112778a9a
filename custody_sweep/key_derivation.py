"""
Key Derivation Engine

Turns a BIP39 seed phrase plus a chain descriptor into an address and a
signing key. One handler per ChainFamily:

- EVM: BIP32 secp256k1 at the chain path, EIP-55 account address
- UTXO: legacy (P2PKH), wrapped segwit (P2SH-P2WPKH) and native segwit
  (P2WPKH bech32) from distinct paths; native segwit is canonical
- COSMOS: secp256k1 key, SHA-256 then RIPEMD-160 of the compressed
  public key, bech32 with the chain prefix
- TRON: EVM-style key, 0x41-prefixed account id in base58check
- SOLANA: ed25519 keypair from the first 32 bytes of the seed

Derived keys are returned to the caller and never cached here.
"""

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import base58
import bech32
from Crypto.Hash import RIPEMD160
from eth_keys import constants as eth_constants
from eth_keys import keys as eth_keys
from eth_utils import is_address
from loguru import logger
from mnemonic import Mnemonic
from nacl.signing import SigningKey

from .chain_registry import ChainDescriptor, ChainFamily, enabled_chains
from .errors import DerivationError, ValidationError

MNEMONIC_GEN = Mnemonic("english")

SECP256K1_N = eth_constants.SECPK1_N

TRON_ADDRESS_PREFIX = b"\x41"

UTXO_FORMATS = ('native_segwit', 'segwit', 'legacy')


@dataclass(repr=False)
class DerivedKey:
    """Address and signing key for one chain"""
    chain_id: str
    family: ChainFamily
    address: str
    private_key: str
    public_key: str
    path: str
    alt_addresses: Dict[str, str] = field(default_factory=dict)

    def __repr__(self):
        return f"DerivedKey({self.chain_id}: {self.address})"


@dataclass
class DerivationFailure:
    chain_id: str
    error: str


@dataclass
class DerivationBatch:
    """Result of deriving many chains from one seed phrase"""
    keys: Dict[str, DerivedKey] = field(default_factory=dict)
    failures: List[DerivationFailure] = field(default_factory=list)

    @property
    def addresses(self) -> Dict[str, str]:
        return {chain_id: key.address for chain_id, key in self.keys.items()}


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def _derive_child(private_key: bytes, chain_code: bytes, index: int, hardened: bool) -> Tuple[bytes, bytes]:
    """Single BIP32 child derivation step on secp256k1"""
    if hardened:
        data = b"\x00" + private_key + index.to_bytes(4, "big")
    else:
        pub_compressed = eth_keys.PrivateKey(private_key).public_key.to_compressed_bytes()
        data = pub_compressed + index.to_bytes(4, "big")
    digest = hmac.new(chain_code, data, hashlib.sha512).digest()
    il, ir = digest[:32], digest[32:]
    child_int = (int.from_bytes(il, "big") + int.from_bytes(private_key, "big")) % SECP256K1_N
    return child_int.to_bytes(32, "big"), ir


def derive_private_key(seed: bytes, path: str) -> bytes:
    """Walk a BIP32 path such as m/44'/60'/0'/0/0 from the master seed"""
    digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    priv, chain_code = digest[:32], digest[32:]
    segments = path.split("/")
    if segments[0] != "m":
        raise ValueError(f"Derivation path must start with m/: {path}")
    for segment in segments[1:]:
        hardened = segment.endswith("'")
        index = int(segment.rstrip("'"))
        if hardened:
            index += 0x80000000
        priv, chain_code = _derive_child(priv, chain_code, index, hardened)
    return priv


def _b58check(payload: bytes) -> str:
    return base58.b58encode_check(payload).decode("ascii")


# ---------------------------------------------------------------------------
# Family handlers
# ---------------------------------------------------------------------------

def _derive_evm(seed: bytes, chain: ChainDescriptor) -> DerivedKey:
    priv = derive_private_key(seed, chain.derivation_path)
    private_key = eth_keys.PrivateKey(priv)
    return DerivedKey(
        chain_id=chain.id,
        family=chain.family,
        address=private_key.public_key.to_checksum_address(),
        private_key="0x" + priv.hex(),
        public_key=private_key.public_key.to_hex(),
        path=chain.derivation_path,
    )


def _utxo_address(chain: ChainDescriptor, address_format: str, pub_compressed: bytes) -> str:
    params = chain.utxo
    h160 = hash160(pub_compressed)
    if address_format == 'legacy':
        return _b58check(bytes([params.p2pkh_version]) + h160)
    if address_format == 'segwit':
        redeem_script = b"\x00\x14" + h160
        return _b58check(bytes([params.p2sh_version]) + hash160(redeem_script))
    if address_format == 'native_segwit':
        address = bech32.encode(params.bech32_hrp, 0, h160)
        if address is None:
            raise ValueError(f"bech32 encoding failed for {chain.id}")
        return address
    raise ValueError(f"Unknown UTXO address format: {address_format}")


def _derive_utxo_format(seed: bytes, chain: ChainDescriptor, address_format: str) -> DerivedKey:
    path = chain.derivation_paths[address_format]
    priv = derive_private_key(seed, path)
    pub_compressed = eth_keys.PrivateKey(priv).public_key.to_compressed_bytes()
    wif = _b58check(bytes([chain.utxo.wif_version]) + priv + b"\x01")
    return DerivedKey(
        chain_id=chain.id,
        family=chain.family,
        address=_utxo_address(chain, address_format, pub_compressed),
        private_key=wif,
        public_key=pub_compressed.hex(),
        path=path,
    )


def _derive_utxo(seed: bytes, chain: ChainDescriptor) -> DerivedKey:
    keys = _derive_utxo_all(seed, chain)
    canonical = next(fmt for fmt in UTXO_FORMATS if fmt in keys)
    result = keys[canonical]
    result.alt_addresses = {fmt: key.address for fmt, key in keys.items()}
    return result


def _derive_utxo_all(seed: bytes, chain: ChainDescriptor) -> Dict[str, DerivedKey]:
    return {
        fmt: _derive_utxo_format(seed, chain, fmt)
        for fmt in UTXO_FORMATS
        if fmt in chain.derivation_paths
    }


def _derive_cosmos(seed: bytes, chain: ChainDescriptor) -> DerivedKey:
    priv = derive_private_key(seed, chain.derivation_path)
    pub_compressed = eth_keys.PrivateKey(priv).public_key.to_compressed_bytes()
    words = bech32.convertbits(hash160(pub_compressed), 8, 5)
    return DerivedKey(
        chain_id=chain.id,
        family=chain.family,
        address=bech32.bech32_encode(chain.address_prefix, words),
        private_key=priv.hex(),
        public_key=pub_compressed.hex(),
        path=chain.derivation_path,
    )


def _derive_tron(seed: bytes, chain: ChainDescriptor) -> DerivedKey:
    priv = derive_private_key(seed, chain.derivation_path)
    public_key = eth_keys.PrivateKey(priv).public_key
    return DerivedKey(
        chain_id=chain.id,
        family=chain.family,
        address=_b58check(TRON_ADDRESS_PREFIX + public_key.to_canonical_address()),
        private_key=priv.hex(),
        public_key=public_key.to_hex(),
        path=chain.derivation_path,
    )


def _derive_solana(seed: bytes, chain: ChainDescriptor) -> DerivedKey:
    signing_key = SigningKey(seed[:32])
    verify_key = bytes(signing_key.verify_key)
    return DerivedKey(
        chain_id=chain.id,
        family=chain.family,
        address=base58.b58encode(verify_key).decode("ascii"),
        private_key=(bytes(signing_key) + verify_key).hex(),
        public_key=verify_key.hex(),
        path=chain.derivation_path,
    )


_HANDLERS: Dict[ChainFamily, Callable[[bytes, ChainDescriptor], DerivedKey]] = {
    ChainFamily.EVM: _derive_evm,
    ChainFamily.UTXO: _derive_utxo,
    ChainFamily.COSMOS: _derive_cosmos,
    ChainFamily.TRON: _derive_tron,
    ChainFamily.SOLANA: _derive_solana,
}
assert set(_HANDLERS) == set(ChainFamily), "derivation handler missing for a chain family"


# ---------------------------------------------------------------------------
# Address validation
# ---------------------------------------------------------------------------

def _valid_utxo(chain: ChainDescriptor, address: str) -> bool:
    params = chain.utxo
    if params.bech32_hrp and address.lower().startswith(params.bech32_hrp + "1"):
        witver, _ = bech32.decode(params.bech32_hrp, address)
        return witver is not None
    try:
        payload = base58.b58decode_check(address)
    except ValueError:
        return False
    versions = {params.p2pkh_version, params.p2sh_version} - {None}
    return len(payload) == 21 and payload[0] in versions


def _valid_tron(address: str) -> bool:
    try:
        payload = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(payload) == 21 and payload[:1] == TRON_ADDRESS_PREFIX


def _valid_solana(address: str) -> bool:
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


def _valid_cosmos(chain: ChainDescriptor, address: str) -> bool:
    hrp, data = bech32.bech32_decode(address)
    return hrp == chain.address_prefix and data is not None


def is_valid_address(chain: ChainDescriptor, address: str) -> bool:
    """Format check for an address on the given chain"""
    if not address:
        return False
    if chain.family is ChainFamily.EVM:
        return is_address(address)
    if chain.family is ChainFamily.UTXO:
        return _valid_utxo(chain, address)
    if chain.family is ChainFamily.TRON:
        return _valid_tron(address)
    if chain.family is ChainFamily.SOLANA:
        return _valid_solana(address)
    if chain.family is ChainFamily.COSMOS:
        return _valid_cosmos(chain, address)
    return False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class KeyDerivationEngine:
    """
    Derives per-chain keys from a seed phrase

    Features:
    - BIP39 checksum validation before any derivation
    - Per-family handlers selected from ChainFamily
    - Batch derivation with per-chain failure isolation
    """

    def __init__(self, passphrase: str = ""):
        self.passphrase = passphrase

    @staticmethod
    def normalize(phrase: str) -> str:
        return " ".join((phrase or "").lower().split())

    def validate_seed_phrase(self, phrase: str) -> str:
        """
        Validate a seed phrase checksum

        Returns:
            The normalized phrase

        Raises:
            ValidationError: if the phrase is empty or its checksum fails
        """
        normalized = self.normalize(phrase)
        if not normalized:
            raise ValidationError("Seed phrase is empty")
        if not MNEMONIC_GEN.check(normalized):
            raise ValidationError("Invalid seed phrase: checksum verification failed")
        return normalized

    @staticmethod
    def generate_seed_phrase(strength: int = 128) -> str:
        return MNEMONIC_GEN.generate(strength=strength)

    def _seed(self, phrase: str) -> bytes:
        return MNEMONIC_GEN.to_seed(self.validate_seed_phrase(phrase), self.passphrase)

    def derive_from_seed(self, seed: bytes, chain: ChainDescriptor) -> DerivedKey:
        try:
            return _HANDLERS[chain.family](seed, chain)
        except DerivationError:
            raise
        except Exception as e:
            raise DerivationError(chain.id, str(e)) from e

    def derive(self, phrase: str, chain: ChainDescriptor) -> DerivedKey:
        """
        Derive the canonical address and signing key for one chain

        Args:
            phrase: BIP39 seed phrase
            chain: Chain descriptor

        Returns:
            DerivedKey

        Raises:
            ValidationError: bad seed phrase
            DerivationError: the chain's handler failed
        """
        return self.derive_from_seed(self._seed(phrase), chain)

    def derive_utxo_addresses(self, phrase: str, chain: ChainDescriptor) -> Dict[str, DerivedKey]:
        """Derive every supported address format for a UTXO chain"""
        if chain.family is not ChainFamily.UTXO:
            raise ValidationError(f"{chain.id} is not a UTXO chain")
        seed = self._seed(phrase)
        try:
            return _derive_utxo_all(seed, chain)
        except Exception as e:
            raise DerivationError(chain.id, str(e)) from e

    async def derive_all(self, phrase: str,
                         chains: Optional[Iterable[ChainDescriptor]] = None) -> DerivationBatch:
        """
        Derive every chain concurrently

        A failing chain is recorded in ``failures`` and left out of ``keys``;
        the batch itself only fails on an invalid seed phrase.
        """
        seed = self._seed(phrase)
        targets = list(chains) if chains is not None else enabled_chains()

        results = await asyncio.gather(
            *(asyncio.to_thread(self.derive_from_seed, seed, chain) for chain in targets),
            return_exceptions=True,
        )

        batch = DerivationBatch()
        for chain, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(f"✗ Derivation failed for {chain.id}: {result}")
                batch.failures.append(DerivationFailure(chain.id, str(result)))
            else:
                batch.keys[chain.id] = result

        logger.info(f"✓ Derived {len(batch.keys)}/{len(targets)} chain addresses")
        return batch
