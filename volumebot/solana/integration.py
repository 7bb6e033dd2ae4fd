"""
Integration module that combines the Solana components.

The orchestrator sequences pricing, batching and submission for each
high-level operation. All state an operation works on lives in a BotSession
passed in by the caller; the session's fleet, curve and lookup table are
immutable snapshots that operations replace rather than mutate.
"""

import asyncio
import random
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from solders.pubkey import Pubkey
from spl.token.constants import WRAPPED_SOL_MINT
from spl.token.instructions import get_associated_token_address

from volumebot.config import BotConfig, FEE_ATA_LAMPORTS, LAMPORTS_PER_SOL
from volumebot.errors import (
    ConfigurationError,
    DeliveryFailedError,
    EmptyWalletSetError,
    InsufficientFundsError,
    InvalidCurveStateError,
    SimulationRejectedError,
    SizeExceededError,
    StateUnavailableError,
)
from volumebot.solana.batcher import (
    batch_builder,
    plan_collect,
    plan_distribute,
    plan_sell_all,
    plan_swap_cycle,
)
from volumebot.solana.bundle_relay import TIP_ACCOUNTS, BundleRelayClient
from volumebot.solana.chain_client import ChainClient
from volumebot.solana.lookup_table import LookupTableManager
from volumebot.solana.models import (
    CurveState,
    LookupTable,
    OperationOutcome,
    SubmissionResult,
    TransactionBatch,
    Wallet,
)
from volumebot.solana.pump_program import (
    decode_curve_state,
    find_bonding_curve,
    find_creator_vault,
    static_program_accounts,
    wallet_accounts,
)
from volumebot.solana.tx_executor import SubmissionPipeline
from volumebot.solana.wallet_manager import WalletFleet, load_operator_wallet
from volumebot.utils.retry import RetryPolicy
from volumebot.utils.wallet_storage import LookupTableStore, WalletStore


@dataclass
class BotSession:
    """
    State shared by the operations of one bot run.

    ``wallets``, ``curve`` and ``lookup_table`` hold immutable snapshots that
    operations swap out. Lookup table changes take ``admin_lock``.
    """
    config: BotConfig
    operator: Wallet
    wallets: Tuple[Wallet, ...] = ()
    curve: Optional[CurveState] = None
    lookup_table: Optional[LookupTable] = None
    admin_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def mint(self) -> Pubkey:
        return Pubkey.from_string(self.config.token_mint)

    @property
    def overflow_sink(self) -> Pubkey:
        if self.config.overflow_sink_address:
            return Pubkey.from_string(self.config.overflow_sink_address)
        return self.operator.pubkey


class VolumeOrchestrator:
    """
    Orchestrates distribute, collect, swap cycles and sell-all over the wallet fleet.
    """

    EVENT_TYPES = ("on_tx_sent", "on_tx_confirmed", "on_tx_failed")

    def __init__(self,
                 config: BotConfig,
                 chain: Optional[ChainClient] = None,
                 relay: Optional[BundleRelayClient] = None,
                 pipeline: Optional[SubmissionPipeline] = None,
                 wallet_store: Optional[WalletStore] = None,
                 lut_store: Optional[LookupTableStore] = None,
                 fleet: Optional[WalletFleet] = None,
                 lut_manager: Optional[LookupTableManager] = None,
                 rng: Optional[random.Random] = None):
        """
        Initialize the orchestrator.

        Args:
            config: Validated session configuration
            chain: Optional ChainClient instance. If None, creates a new one.
            relay: Optional BundleRelayClient instance. If None, creates a new one.
            pipeline: Optional SubmissionPipeline instance. If None, creates a new one.
            wallet_store: Optional WalletStore. If None, uses the configured wallets file.
            lut_store: Optional LookupTableStore. If None, uses the configured lookup table file.
            fleet: Optional WalletFleet instance. If None, creates a new one.
            lut_manager: Optional LookupTableManager instance. If None, creates a new one.
            rng: Source of randomness for swap sizing
        """
        self.config = config
        self.event_callbacks: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)
        self.rng = rng or random.Random()

        retry_policy = RetryPolicy()
        self.chain = chain if chain else ChainClient(config.rpc_url, retry_policy=retry_policy)
        self.relay = relay if relay else BundleRelayClient(config.relay_url, retry_policy=retry_policy)
        self.pipeline = pipeline if pipeline else SubmissionPipeline(
            self.chain,
            self.relay,
            retry_policy=retry_policy,
            on_tx_sent=self._on_tx_sent,
            on_tx_confirmed=self._on_tx_confirmed,
            on_tx_failed=self._on_tx_failed,
        )
        self.wallet_store = wallet_store if wallet_store else WalletStore(config.wallets_file)
        self.lut_store = lut_store if lut_store else LookupTableStore(config.lut_file)
        self.fleet = fleet if fleet else WalletFleet(
            self.wallet_store, self.chain, Pubkey.from_string(config.token_mint)
        )
        self.lut_manager = lut_manager if lut_manager else LookupTableManager(
            self.chain, self.pipeline, self.lut_store
        )

        logger.info("VolumeOrchestrator initialized", extra={"mint": config.token_mint})

    # Sessions and wallets

    def generate_wallets(self, n: Optional[int] = None) -> List[str]:
        """
        Generate and persist the sub-wallets.

        Returns:
            Addresses of the new wallets
        """
        wallets = self.fleet.generate(n or self.config.wallet_count)
        return [w.address for w in wallets]

    async def open_session(self, max_wallets: Optional[int] = None) -> BotSession:
        """
        Load the operator, the fleet and the persisted lookup table.

        Raises:
            ConfigurationError: If the operator key is invalid
            EmptyWalletSetError: If no wallets were generated yet
        """
        operator = load_operator_wallet(self.config.private_key)
        wallets = [w for w in self.fleet.load(max_wallets) if w.pubkey != operator.pubkey]
        if not wallets:
            raise EmptyWalletSetError("The wallet file only contains the operator wallet")

        lookup_table = await self.lut_manager.load(self.lut_store.load())
        session = BotSession(
            config=self.config,
            operator=operator,
            wallets=tuple(wallets),
            lookup_table=lookup_table,
        )
        logger.info(
            f"Session opened with {len(wallets)} wallets",
            extra={"lookup_table": str(lookup_table.address) if lookup_table else None}
        )
        return session

    async def refresh_wallets(self, session: BotSession):
        session.wallets = tuple(await self.fleet.refresh_balances(session.wallets))

    # Curve state

    async def load_curve(self, mint: Pubkey) -> CurveState:
        """
        Read and decode the pool of ``mint``.

        Raises:
            InvalidCurveStateError: If the mint, pool or pool token account is missing,
                or a reserve is zero
        """
        if not await self.chain.account_exists(mint):
            raise InvalidCurveStateError(f"Token mint {mint} not found")

        bonding_curve = find_bonding_curve(mint)
        data = await self.chain.get_account_data(bonding_curve)
        if data is None:
            raise InvalidCurveStateError(f"Pool account {bonding_curve} not found for {mint}")

        curve = decode_curve_state(mint, data)
        if not await self.chain.account_exists(curve.associated_bonding_curve):
            raise InvalidCurveStateError(f"Pool token account {curve.associated_bonding_curve} not found")
        return curve

    async def refresh_curve_state(self, session: BotSession, mint: Optional[str] = None) -> OperationOutcome:
        """
        Re-read the pool and replace the session's curve snapshot.

        Args:
            session: Bot session
            mint: Token mint, defaults to the configured one

        Returns:
            OperationOutcome carrying the new snapshot
        """
        outcome = OperationOutcome(operation="refresh_curve_state")
        mint_key = Pubkey.from_string(mint) if mint else session.mint
        try:
            session.curve = await self.load_curve(mint_key)
        except StateUnavailableError as e:
            logger.error(f"Cannot read curve state for {mint_key}: {e}")
            outcome.success = False
            outcome.errors.append(str(e))
            return outcome.finish()

        outcome.curve = session.curve
        logger.info(
            f"Curve state for {mint_key}: {session.curve.virtual_token_reserves} tokens / "
            f"{session.curve.virtual_sol_reserves / LAMPORTS_PER_SOL:.4f} SOL"
        )
        return outcome.finish()

    async def _fresh_curve(self, session: BotSession) -> CurveState:
        # One retry for a pool that was just created or briefly unreadable
        try:
            session.curve = await self.load_curve(session.mint)
        except StateUnavailableError as e:
            logger.warning(f"Curve state unavailable, retrying once: {e}")
            session.curve = await self.load_curve(session.mint)
        return session.curve

    # Lookup table

    def lookup_table_candidates(self, session: BotSession) -> List[Pubkey]:
        """Every address the fleet's transactions reference, operator accounts first."""
        mint = session.mint
        operator = session.operator.pubkey
        bonding_curve = find_bonding_curve(mint)
        candidates = [
            operator,
            get_associated_token_address(operator, mint),
            get_associated_token_address(operator, WRAPPED_SOL_MINT),
            mint,
            bonding_curve,
            get_associated_token_address(bonding_curve, mint),
        ]
        if session.curve is not None:
            candidates.append(find_creator_vault(session.curve.creator))
        candidates.extend(static_program_accounts())
        candidates.extend(TIP_ACCOUNTS)
        for wallet in session.wallets:
            candidates.extend(wallet_accounts(wallet.pubkey, mint))
        return candidates

    async def create_or_load_lookup_table(self, session: BotSession) -> OperationOutcome:
        """
        Load the persisted table or create it, then extend it with the fleet's addresses.

        Raises:
            InsufficientFundsError: If the operator cannot pay for the table
            TableNotRetrievableError: If a new table never becomes readable
        """
        outcome = OperationOutcome(operation="create_or_load_lookup_table")
        async with session.admin_lock:
            if session.curve is None:
                try:
                    await self._fresh_curve(session)
                except StateUnavailableError as e:
                    logger.warning(f"Building lookup table without creator vault: {e}")

            try:
                session.lookup_table = await self.lut_manager.create_or_load(
                    session.operator,
                    self.lookup_table_candidates(session),
                    self.config.relay_tip_lamports,
                )
            except (SizeExceededError, SimulationRejectedError, DeliveryFailedError) as e:
                outcome.record_drop("lookup table create", e, fatal=True)
                return outcome.finish()

        outcome.lookup_table_address = str(session.lookup_table.address)
        logger.info(
            f"Lookup table ready: {session.lookup_table.address} "
            f"({len(session.lookup_table.addresses)} addresses)"
        )
        return outcome.finish()

    async def _ensure_lookup_table(self, session: BotSession, outcome: OperationOutcome) -> bool:
        if session.lookup_table is not None:
            return True
        logger.warning("No lookup table loaded, creating one")
        created = await self.create_or_load_lookup_table(session)
        if not created.success:
            outcome.success = False
            outcome.errors.extend(created.errors)
            return False
        return True

    # Operations

    async def _submit_batches(self, session: BotSession, batches: List[TransactionBatch],
                              outcome: OperationOutcome) -> List[SubmissionResult]:
        """Submit batches in order; a failing group is recorded and the next one still runs."""
        results = []
        for batch in batches:
            try:
                result = await self.pipeline.submit(
                    batch_builder(batch, session.lookup_table),
                    batch.label,
                    use_bundle=batch.uses_bundle,
                )
            except (SizeExceededError, SimulationRejectedError) as e:
                logger.error(f"Dropping {batch.label}: {e}")
                outcome.record_drop(batch.label, e)
                continue
            except DeliveryFailedError as e:
                logger.error(f"Delivery failed for {batch.label}: {e}")
                outcome.record_drop(batch.label, e, fatal=True)
                continue
            outcome.results.append(result)
            results.append(result)
        return results

    def _record_skips(self, outcome: OperationOutcome, skipped):
        for wallet, reason in skipped:
            outcome.record_skip(wallet, reason)
        if skipped:
            logger.info(f"{outcome.operation}: skipped {len(skipped)} wallets")

    def _log_outcome(self, outcome: OperationOutcome):
        logger.info(
            f"{outcome.operation} finished: success={outcome.success}, "
            f"{len(outcome.results)} confirmed, {outcome.dropped_groups} dropped, "
            f"{outcome.skipped_wallets} wallets skipped",
            extra={"operation": outcome.operation, "signatures": outcome.signatures, "errors": outcome.errors}
        )

    async def distribute(self, session: BotSession, amount_per_wallet: Optional[int] = None) -> OperationOutcome:
        """
        Fund every sub-wallet with the same amount from the operator.

        Raises:
            ConfigurationError: If the amount does not exceed the per-wallet fee reserve
            InsufficientFundsError: If the operator cannot fund every wallet and the tip
        """
        amount = amount_per_wallet or self.config.distribute_amount_lamports
        if amount <= FEE_ATA_LAMPORTS:
            raise ConfigurationError(
                f"Distribute amount per wallet must be larger than {FEE_ATA_LAMPORTS} lamports"
            )

        outcome = OperationOutcome(operation="distribute")
        recipients = [w for w in session.wallets if w.pubkey != session.operator.pubkey]
        tip = self.config.relay_tip_lamports
        required = amount * len(recipients) + tip
        balance = await self.chain.get_balance(session.operator.pubkey)
        if balance < required:
            raise InsufficientFundsError(
                f"Operator holds {balance / LAMPORTS_PER_SOL:.4f} SOL, "
                f"distribution needs {required / LAMPORTS_PER_SOL:.4f} SOL",
                required=required, available=balance,
            )

        logger.info(f"Distributing {amount} lamports to {len(recipients)} wallets")
        await self._submit_batches(session, plan_distribute(session.operator, recipients, amount, tip), outcome)
        await self.refresh_wallets(session)
        self._log_outcome(outcome)
        return outcome.finish()

    async def collect(self, session: BotSession) -> OperationOutcome:
        """Move every sub-wallet's full native balance back to the operator."""
        outcome = OperationOutcome(operation="collect")
        await self.refresh_wallets(session)
        batches, skipped = plan_collect(session.operator, session.wallets)
        self._record_skips(outcome, skipped)

        await self._submit_batches(session, batches, outcome)
        await self.refresh_wallets(session)
        self._log_outcome(outcome)
        return outcome.finish()

    async def run_swap_cycle(self, session: BotSession) -> OperationOutcome:
        """
        One buy-then-sell pass over the whole fleet.

        Raises:
            StateUnavailableError: If the curve cannot be read after one retry
        """
        outcome = OperationOutcome(operation="swap_cycle")
        if not await self._ensure_lookup_table(session, outcome):
            return outcome.finish()

        curve = await self._fresh_curve(session)
        outcome.curve = curve
        await self.refresh_wallets(session)

        batches, skipped = plan_swap_cycle(
            session.wallets, curve, self.config, session.overflow_sink, self.rng
        )
        self._record_skips(outcome, skipped)
        await self._submit_batches(session, batches, outcome)
        await self.refresh_wallets(session)
        self._log_outcome(outcome)
        return outcome.finish()

    async def sell_all(self, session: BotSession) -> OperationOutcome:
        """Sell every sub-wallet's token balance and close its token account."""
        outcome = OperationOutcome(operation="sell_all")
        if not await self._ensure_lookup_table(session, outcome):
            return outcome.finish()

        curve = await self._fresh_curve(session)
        outcome.curve = curve
        await self.refresh_wallets(session)

        batches, skipped = plan_sell_all(session.wallets, curve, self.config.slippage)
        self._record_skips(outcome, skipped)
        await self._submit_batches(session, batches, outcome)
        await self.refresh_wallets(session)
        self._log_outcome(outcome)
        return outcome.finish()

    async def run_volume_loop(self, session: BotSession, max_cycles: Optional[int] = None) -> List[OperationOutcome]:
        """
        Repeat swap cycles until a stop is requested.

        The stop request is checked between cycles; an in-flight cycle always finishes.

        Args:
            session: Bot session
            max_cycles: Optional cap on the number of cycles

        Returns:
            Outcome of every completed cycle
        """
        outcomes = []
        logger.info("Volume loop started")
        while not session.stop_event.is_set():
            outcome = await self.run_swap_cycle(session)
            outcomes.append(outcome)
            if max_cycles is not None and len(outcomes) >= max_cycles:
                break

            try:
                await asyncio.wait_for(session.stop_event.wait(), timeout=self.config.swap_sleep_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Volume loop stopped after {len(outcomes)} cycles")
        return outcomes

    def request_stop(self, session: BotSession):
        """Ask the volume loop to stop before its next cycle."""
        logger.info("Stop requested")
        session.stop_event.set()

    async def close(self):
        await self.chain.close()
        self.relay.close()

    # Events

    def register_event_callback(self, event_type: str, callback: Callable[[Dict[str, Any]], None]):
        """
        Registers a callback for an event type.

        Args:
            event_type: Event type (on_tx_sent, on_tx_confirmed, on_tx_failed)
            callback: Callback function that takes event data dict
        """
        if event_type in self.EVENT_TYPES:
            self.event_callbacks[event_type].append(callback)
            logger.debug(f"Registered callback for event type: {event_type}")
        else:
            logger.warning(f"Unknown event type: {event_type}")

    def _dispatch(self, event_type: str, data: Dict[str, Any]):
        for callback in self.event_callbacks[event_type]:
            callback(data)

    def _on_tx_sent(self, data: Dict[str, Any]):
        self._dispatch("on_tx_sent", data)

    def _on_tx_confirmed(self, data: Dict[str, Any]):
        self._dispatch("on_tx_confirmed", data)

    def _on_tx_failed(self, data: Dict[str, Any]):
        self._dispatch("on_tx_failed", data)
