"""
Wallet fleet management for Solana.
"""

from typing import List, Optional, Sequence

import base58
from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from volumebot.errors import ConfigurationError, EmptyWalletSetError, WalletStoreError
from volumebot.solana.chain_client import ChainClient
from volumebot.solana.models import Wallet
from volumebot.utils.wallet_storage import WalletStore


def keypair_from_secret(secret: str) -> Keypair:
    """
    Decode a base58 encoded 64-byte secret key.

    Raises:
        ValueError: If the secret is not a valid keypair encoding
    """
    raw = base58.b58decode(secret)
    if len(raw) != 64:
        raise ValueError(f"Secret key must decode to 64 bytes, got {len(raw)}")
    return Keypair.from_bytes(raw)


def secret_from_keypair(keypair: Keypair) -> str:
    return base58.b58encode(bytes(keypair)).decode("utf-8")


def load_operator_wallet(private_key: str) -> Wallet:
    """
    Build the operator wallet from its base58 secret key.

    Raises:
        ConfigurationError: If the key cannot be decoded
    """
    try:
        keypair = keypair_from_secret(private_key)
    except ValueError:
        # The message never includes the key itself
        raise ConfigurationError("PRIVATE_KEY is not a valid base58 encoded secret key")
    wallet = Wallet(keypair=keypair)
    logger.info(f"Operator wallet loaded: {wallet.address}")
    return wallet


class WalletFleet:
    """
    Owns the sub-wallets: generation, loading from the wallet store and balance refresh.
    """

    def __init__(self, store: WalletStore, chain: ChainClient, mint: Pubkey):
        """
        Initialize the wallet fleet.

        Args:
            store: Persisted wallet store
            chain: Blockchain access
            mint: Token mint whose balances are tracked
        """
        self.store = store
        self.chain = chain
        self.mint = mint

    def generate(self, n: int) -> List[Wallet]:
        """
        Generate ``n`` random keypairs and persist them immediately.

        Args:
            n: Number of wallets

        Returns:
            The new wallets, in persisted order

        Raises:
            WalletStoreError: If a wallet file already exists
        """
        if n < 1:
            raise ConfigurationError(f"Wallet count must be positive, got {n}")

        keypairs = [Keypair() for _ in range(n)]
        self.store.save([secret_from_keypair(kp) for kp in keypairs])
        wallets = [Wallet(keypair=kp) for kp in keypairs]
        logger.info(f"Generated {n} wallets", extra={"count": n, "path": self.store.path})
        return wallets

    def load(self, max_count: Optional[int] = None) -> List[Wallet]:
        """
        Load wallets from the store, in file order.

        Args:
            max_count: Optional cap on the number of wallets returned

        Returns:
            Wallets with zero cached balances

        Raises:
            EmptyWalletSetError: If the store holds no wallets
            WalletStoreError: If a stored key cannot be decoded
        """
        secrets = self.store.load()
        if max_count is not None:
            secrets = secrets[:max_count]
        if not secrets:
            raise EmptyWalletSetError(f"No wallets found in {self.store.path}")

        wallets = []
        for index, secret in enumerate(secrets):
            try:
                wallets.append(Wallet(keypair=keypair_from_secret(secret)))
            except ValueError:
                raise WalletStoreError(f"Wallet #{index} in {self.store.path} is not a valid secret key")

        logger.info(f"Loaded {len(wallets)} wallets from {self.store.path}")
        return wallets

    async def refresh_balances(self, wallets: Sequence[Wallet]) -> List[Wallet]:
        """
        Read native and token balances for every wallet.

        Args:
            wallets: Wallets to refresh

        Returns:
            New Wallet snapshots carrying the fresh balances, in input order
        """
        if not wallets:
            return []
        owners = [w.pubkey for w in wallets]
        natives = await self.chain.get_balances(owners)
        tokens = await self.chain.get_token_balances(owners, self.mint)

        refreshed = [
            wallet.with_balances(native_balance=native, token_balance=token or 0)
            for wallet, native, token in zip(wallets, natives, tokens)
        ]
        logger.debug(
            f"Refreshed balances for {len(refreshed)} wallets",
            extra={"total_lamports": sum(natives)}
        )
        return refreshed
