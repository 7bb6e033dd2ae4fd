"""
Wallet and Lookup Table Storage Utility

Persists the fleet's secret keys and the lookup table address as small JSON
files. Both are written once and then only read: the wallet file is made
read-only for the owner as soon as it is written.
"""

import json
import os
from typing import List, Optional

from loguru import logger

from volumebot.errors import WalletStoreError


class WalletStore:
    """Write-once store for a list of base58 encoded secret keys."""

    def __init__(self, path: str = "wallets.json"):
        """
        Initialize the wallet store.

        Args:
            path: Path of the JSON file holding the secret keys
        """
        self.path = path

    def exists(self) -> bool:
        """Return True if the wallet file is present."""
        return os.path.exists(self.path)

    def save(self, secret_keys: List[str]) -> str:
        """
        Write the secret keys and make the file read-only.

        Args:
            secret_keys: Base58 encoded 64-byte secret keys

        Returns:
            The file path

        Raises:
            WalletStoreError: If the file already exists or cannot be written
        """
        if self.exists():
            raise WalletStoreError(f"{self.path} already exists, refusing to overwrite wallets")

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(secret_keys, f, indent=2)
        except OSError as e:
            raise WalletStoreError(f"Failed to write {self.path}: {str(e)}")

        try:
            os.chmod(self.path, 0o400)
            logger.info(f"Created {self.path} and set permissions to read-only for owner")
        except OSError as e:
            # chmod is not supported everywhere (e.g. some Windows filesystems)
            logger.warning(f"Could not set permissions for {self.path}: {str(e)}")

        return self.path

    def load(self) -> List[str]:
        """
        Read the secret keys.

        Returns:
            Secret keys in file order, empty if the file does not exist

        Raises:
            WalletStoreError: If the file is not a JSON list of strings
        """
        if not self.exists():
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise WalletStoreError(f"Failed to read {self.path}: {str(e)}")

        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise WalletStoreError(f"{self.path} must contain a JSON array of secret keys")

        return data


class LookupTableStore:
    """Store for the single lookup table address of a deployment."""

    def __init__(self, path: str = "lut.json"):
        self.path = path

    def load(self) -> Optional[str]:
        """
        Read the persisted lookup table address.

        Returns:
            The address, or None if nothing was persisted yet
        """
        if not os.path.exists(self.path):
            logger.warning(f"{self.path} not found, lookup table will be created when needed")
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                address = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise WalletStoreError(f"Failed to read {self.path}: {str(e)}")

        if not address or not isinstance(address, str):
            logger.error(f"Lookup table address in {self.path} is empty or invalid")
            return None

        return address

    def save(self, address: str) -> str:
        """
        Persist the lookup table address.

        Args:
            address: Base58 lookup table address

        Returns:
            The file path
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(address, f)
        except OSError as e:
            raise WalletStoreError(f"Failed to write {self.path}: {str(e)}")

        try:
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions for {self.path}: {str(e)}")

        logger.info(f"Saved lookup table address {address} to {self.path}")
        return self.path
