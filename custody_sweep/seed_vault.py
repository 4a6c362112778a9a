"""
Seed Vault

Fernet encryption of seed phrases at rest. Plaintext phrases are only
returned to callers that need them for derivation or signing.
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from .errors import ValidationError


class SeedVault:
    """Encrypt/decrypt wallet seed phrases stored in the wallet store"""

    def __init__(self, store, key: Optional[str]):
        """
        Args:
            store: WalletStore
            key: Fernet key (urlsafe base64, 32 bytes)

        Raises:
            ValidationError: if the key is missing or malformed
        """
        if not key:
            raise ValidationError(
                "Seed encryption key is not configured (set seed_encryption_key or CUSTODY_SWEEP_SEED_KEY)"
            )
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValidationError(f"Invalid seed encryption key: {e}") from e
        self.store = store

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def store_seed(self, wallet_id: str, phrase: str) -> None:
        token = self._fernet.encrypt(phrase.encode()).decode()
        self.store.store_encrypted_seed(wallet_id, token)
        logger.info(f"💾 Encrypted seed stored for wallet {wallet_id}")

    def load_seed(self, wallet_id: str) -> str:
        """
        Decrypt the seed phrase for a wallet

        Raises:
            ValidationError: no seed stored, or it cannot be decrypted with this key
        """
        token = self.store.get_encrypted_seed(wallet_id)
        if not token:
            raise ValidationError(f"No seed phrase stored for wallet {wallet_id}")
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ValidationError(f"Seed phrase for wallet {wallet_id} could not be decrypted") from e
