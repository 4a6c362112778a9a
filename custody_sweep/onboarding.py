"""
Wallet onboarding: derive every enabled chain from a seed phrase, persist
the addresses and the encrypted seed, and announce the new wallet.
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from .key_derivation import DerivationFailure
from .notifications import EventType, NotificationEvent
from .wallet_store import Wallet


@dataclass
class OnboardingResult:
    wallet: Wallet
    addresses: Dict[str, str] = field(default_factory=dict)
    failures: List[DerivationFailure] = field(default_factory=list)
    generated_phrase: Optional[str] = None


async def onboard_wallet(store, engine, vault, notifier, name: str,
                         device_id: Optional[str] = None,
                         seed_phrase: Optional[str] = None,
                         wallet_id: Optional[str] = None) -> OnboardingResult:
    """
    Create a custodial wallet

    Args:
        store: WalletStore
        engine: KeyDerivationEngine
        vault: SeedVault
        notifier: NotificationSink
        name: Display name
        device_id: Owner device reference
        seed_phrase: Existing phrase to import; a new one is generated if omitted
        wallet_id: Explicit id (random UUID by default)

    Returns:
        OnboardingResult; ``generated_phrase`` is set only for generated phrases

    Raises:
        ValidationError: invalid seed phrase
    """
    generated = None
    if seed_phrase is None:
        generated = engine.generate_seed_phrase()
        seed_phrase = generated
    phrase = engine.validate_seed_phrase(seed_phrase)

    batch = await engine.derive_all(phrase)

    wallet = store.create_wallet(wallet_id or str(uuid.uuid4()), name, device_id)
    for chain_id, key in batch.keys.items():
        wallet.networks.append(store.add_network_address(wallet.id, chain_id, key.address))
    vault.store_seed(wallet.id, phrase)

    if batch.failures:
        logger.warning(
            f"⚠ Wallet {wallet.id} created without {len(batch.failures)} chain(s): "
            f"{[f.chain_id for f in batch.failures]}"
        )

    addresses = batch.addresses
    await notifier.notify(NotificationEvent(
        type=EventType.WALLET_CREATED,
        wallet_id=wallet.id,
        wallet_name=name,
        addresses=addresses,
    ))
    logger.info(f"✅ Wallet {name} onboarded with {len(addresses)} network addresses")

    return OnboardingResult(wallet, addresses, batch.failures, generated)
