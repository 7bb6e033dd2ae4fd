"""
Blockchain access for the volume bot.

Thin wrapper over the solana-py async RPC client exposing only the calls the
bot needs, with transient RPC failures retried under a RetryPolicy.
"""

import struct
from typing import List, Optional, Sequence, Tuple

from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.instructions import get_associated_token_address

from volumebot.config import SEND_MAX_RETRIES
from volumebot.solana.models import BlockhashInfo
from volumebot.utils.retry import RetryPolicy, retry_async

# getMultipleAccounts accepts at most 100 keys per request
MULTIPLE_ACCOUNTS_LIMIT = 100

# SPL token account: mint (32) + owner (32) + amount (u64)
TOKEN_AMOUNT_OFFSET = 64
_U64 = struct.Struct("<Q")


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _normalize_status(status) -> Optional[str]:
    if status is None:
        return None
    if status.err is not None:
        return "failed"
    level = status.confirmation_status
    if level == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if level == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    return "processed"


class ChainClient:
    """
    RPC boundary: account reads, balances, blockhash, simulate, send, status.
    """

    def __init__(self, rpc_url: str, retry_policy: Optional[RetryPolicy] = None,
                 client: Optional[AsyncClient] = None):
        """
        Initialize the chain client.

        Args:
            rpc_url: RPC endpoint
            retry_policy: Policy for transient RPC failures
            client: Pre-built AsyncClient, mainly for tests
        """
        self.rpc_url = rpc_url
        self.client = client or AsyncClient(rpc_url, commitment=Confirmed)
        self.retry_policy = retry_policy or RetryPolicy()
        logger.info(f"ChainClient initialized for {rpc_url}")

    async def _call(self, label: str, fn):
        return await retry_async(fn, self.retry_policy, retry_on=(SolanaRpcException,), label=label)

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        """Raw account data, or None if the account does not exist."""
        resp = await self._call(f"getAccountInfo {address}", lambda: self.client.get_account_info(address))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.get_account_data(address) is not None

    async def get_balance(self, address: Pubkey) -> int:
        resp = await self._call(f"getBalance {address}", lambda: self.client.get_balance(address))
        return resp.value

    async def get_balances(self, addresses: Sequence[Pubkey]) -> List[int]:
        """
        Native balances in input order, missing accounts read as 0.

        Args:
            addresses: Accounts to read

        Returns:
            Lamport balances
        """
        balances = []
        for chunk in _chunks(list(addresses), MULTIPLE_ACCOUNTS_LIMIT):
            resp = await self._call(
                "getMultipleAccounts",
                lambda chunk=chunk: self.client.get_multiple_accounts(chunk),
            )
            balances.extend(account.lamports if account is not None else 0 for account in resp.value)
        return balances

    async def get_token_balances(self, owners: Sequence[Pubkey], mint: Pubkey) -> List[Optional[int]]:
        """
        Raw token balances of each owner's associated token account.

        Args:
            owners: Wallet addresses
            mint: Token mint

        Returns:
            Token amounts in input order, None where the token account is absent
        """
        token_accounts = [get_associated_token_address(owner, mint) for owner in owners]
        amounts: List[Optional[int]] = []
        for chunk in _chunks(token_accounts, MULTIPLE_ACCOUNTS_LIMIT):
            resp = await self._call(
                "getMultipleAccounts",
                lambda chunk=chunk: self.client.get_multiple_accounts(chunk),
            )
            for account in resp.value:
                if account is None or len(account.data) < TOKEN_AMOUNT_OFFSET + _U64.size:
                    amounts.append(None)
                else:
                    amounts.append(_U64.unpack_from(bytes(account.data), TOKEN_AMOUNT_OFFSET)[0])
        return amounts

    async def get_latest_blockhash(self) -> BlockhashInfo:
        resp = await self._call("getLatestBlockhash", lambda: self.client.get_latest_blockhash(Confirmed))
        return BlockhashInfo(
            blockhash=resp.value.blockhash,
            last_valid_block_height=resp.value.last_valid_block_height,
        )

    async def get_block_height(self) -> int:
        resp = await self._call("getBlockHeight", lambda: self.client.get_block_height(Confirmed))
        return resp.value

    async def get_finalized_slot(self) -> int:
        resp = await self._call("getSlot", lambda: self.client.get_slot(Finalized))
        return resp.value

    async def simulate(self, tx: VersionedTransaction) -> Tuple[Optional[object], List[str]]:
        """
        Dry-run a transaction without signature verification.

        Returns:
            Tuple of (error or None, program logs)
        """
        resp = await self._call(
            "simulateTransaction",
            lambda: self.client.simulate_transaction(tx, sig_verify=False),
        )
        return resp.value.err, list(resp.value.logs or [])

    async def send_raw(self, raw: bytes) -> str:
        """
        Broadcast signed transaction bytes with preflight disabled.

        Returns:
            Transaction signature
        """
        opts = TxOpts(skip_preflight=True, max_retries=SEND_MAX_RETRIES, preflight_commitment=Confirmed)
        resp = await self._call("sendTransaction", lambda: self.client.send_raw_transaction(raw, opts=opts))
        return str(resp.value)

    async def get_signature_status(self, signature: str) -> Optional[str]:
        """
        Status of a signature: processed, confirmed, finalized, failed or None if unknown.
        """
        resp = await self._call(
            "getSignatureStatuses",
            lambda: self.client.get_signature_statuses([Signature.from_string(signature)]),
        )
        return _normalize_status(resp.value[0])

    async def close(self):
        await self.client.close()
