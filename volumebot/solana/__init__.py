"""
Solana integration for the volume bot.

This package contains the chain-facing components: blockchain access, the
bundle relay client, AMM program layout and pricing, wallet fleet, lookup
table management, transaction batching and the submission pipeline.

Note: every transaction is simulated before it is sent, and a transaction is
only re-signed once its blockhash has expired, so a retry can never execute
the same batch twice.
"""

from volumebot.solana.models import (
    Wallet,
    CurveState,
    LookupTable,
    SwapQuote,
    TransactionBatch,
    SubmissionResult,
    OperationOutcome,
)
from volumebot.solana.chain_client import ChainClient
from volumebot.solana.bundle_relay import BundleRelayClient
from volumebot.solana.pricing import quote_buy, quote_sell
from volumebot.solana.wallet_manager import WalletFleet
from volumebot.solana.lookup_table import LookupTableManager, plan_extension
from volumebot.solana.tx_executor import SubmissionPipeline
from volumebot.solana.integration import BotSession, VolumeOrchestrator
