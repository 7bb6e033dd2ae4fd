"""
Shared fixtures and in-memory doubles for the volume bot tests.

Nothing here touches the network: FakeChain and FakeRelay stand in for the
RPC and bundle relay boundaries.
"""

import os
import sys
from typing import Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from volumebot.config import BotConfig
from volumebot.solana.models import BlockhashInfo, CurveState, Wallet
from volumebot.solana.pump_program import find_pool_accounts
from volumebot.solana.wallet_manager import secret_from_keypair
from volumebot.utils.retry import RetryPolicy


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self):
        self.accounts: Dict[Pubkey, bytes] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.token_balances: Dict[Pubkey, int] = {}
        self.statuses: Dict[str, Optional[str]] = {}
        self.block_height = 100
        self.last_valid_block_height = 1000
        self.finalized_slot = 500
        self.simulate_error = None
        self.simulate_logs: List[str] = []
        self.confirm_on_send = True
        self.send_error: Optional[Exception] = None
        self.simulated: List[VersionedTransaction] = []
        self.sent: List[bytes] = []
        self.send_attempts = 0
        self.blockhashes: List[BlockhashInfo] = []
        self.closed = False

    async def get_account_data(self, address):
        return self.accounts.get(address)

    async def account_exists(self, address):
        return address in self.accounts

    async def get_balance(self, address):
        return self.balances.get(address, 0)

    async def get_balances(self, addresses):
        return [self.balances.get(a, 0) for a in addresses]

    async def get_token_balances(self, owners, mint):
        return [self.token_balances.get(o) for o in owners]

    async def get_latest_blockhash(self):
        info = BlockhashInfo(blockhash=Hash.new_unique(), last_valid_block_height=self.last_valid_block_height)
        self.blockhashes.append(info)
        return info

    async def get_block_height(self):
        return self.block_height

    async def get_finalized_slot(self):
        return self.finalized_slot

    async def simulate(self, tx):
        self.simulated.append(tx)
        return self.simulate_error, list(self.simulate_logs)

    async def send_raw(self, raw):
        self.send_attempts += 1
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        signature = str(VersionedTransaction.from_bytes(raw).signatures[0])
        if self.confirm_on_send:
            self.statuses[signature] = "confirmed"
        return signature

    async def get_signature_status(self, signature):
        return self.statuses.get(signature)

    async def close(self):
        self.closed = True


class FakeRelay:
    """In-memory stand-in for BundleRelayClient."""

    def __init__(self, bundle_id: Optional[str] = "bundle-1", lands: bool = True):
        self.bundle_id = bundle_id
        self.lands = lands
        self.bundles: List[List[str]] = []

    async def send_bundle(self, encoded_transactions):
        self.bundles.append(list(encoded_transactions))
        return self.bundle_id

    async def wait_for_bundle(self, bundle_id):
        return self.lands

    def close(self):
        pass


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, backoff_factor=1, max_delay=0)


@pytest.fixture
def mint():
    return Keypair().pubkey()


@pytest.fixture
def operator():
    return Wallet(keypair=Keypair())


@pytest.fixture
def curve(mint):
    bonding_curve, associated = find_pool_accounts(mint)
    return CurveState(
        mint=mint,
        bonding_curve=bonding_curve,
        associated_bonding_curve=associated,
        creator=Keypair().pubkey(),
        virtual_token_reserves=1_000_000_000,
        virtual_sol_reserves=30_000_000_000,
    )


@pytest.fixture
def config(mint, operator, tmp_path):
    return BotConfig(
        rpc_url="http://localhost:8899",
        private_key=secret_from_keypair(operator.keypair),
        token_mint=str(mint),
        relay_url="http://relay.local",
        slippage=0.5,
        swap_sleep_seconds=0,
        wallets_file=str(tmp_path / "wallets.json"),
        lut_file=str(tmp_path / "lut.json"),
    )


def make_wallets(n: int, native_balance: int = 0, token_balance: int = 0) -> List[Wallet]:
    return [
        Wallet(keypair=Keypair(), native_balance=native_balance, token_balance=token_balance)
        for _ in range(n)
    ]
