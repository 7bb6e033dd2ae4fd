"""
Transaction submission for Solana.

Every compiled transaction is simulated, then delivered through the bundle
relay when requested, falling back to direct broadcast. A signature is only
ever re-signed with a fresh blockhash once the previous blockhash has expired,
so a transaction can never land twice.
"""

import asyncio
import base64
from typing import Any, Callable, Dict, Optional

from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException, RPCNoResultException
from solders.transaction import VersionedTransaction

from volumebot.config import CONFIRM_POLL_INTERVAL, CONFIRM_TIMEOUT, MAX_TX_SIZE
from volumebot.errors import (
    DeliveryFailedError,
    PollTimeoutError,
    SimulationRejectedError,
    SizeExceededError,
)
from volumebot.solana.bundle_relay import BundleRelayClient
from volumebot.solana.chain_client import ChainClient
from volumebot.solana.models import (
    BlockhashInfo,
    ConfirmationStatus,
    DeliveryPath,
    SubmissionResult,
)
from volumebot.utils.polling import poll_until
from volumebot.utils.retry import RetryPolicy

# Compiles and signs a transaction against the given blockhash
TransactionBuilder = Callable[[BlockhashInfo], VersionedTransaction]

LANDED = ("confirmed", "finalized")
EXPIRED = "expired"

# Transport failures and node rejections of a raw send
SEND_ERRORS = (SolanaRpcException, RPCException, RPCNoResultException)


class SubmissionPipeline:
    """
    Simulates, submits and confirms compiled transactions.
    """

    def __init__(self,
                 chain: ChainClient,
                 relay: Optional[BundleRelayClient] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 confirm_interval: float = CONFIRM_POLL_INTERVAL,
                 confirm_timeout: float = CONFIRM_TIMEOUT,
                 max_tx_size: int = MAX_TX_SIZE,
                 on_tx_sent=None,
                 on_tx_confirmed=None,
                 on_tx_failed=None):
        """
        Initialize the submission pipeline.

        Args:
            chain: Blockchain access
            relay: Bundle relay, or None to always broadcast directly
            retry_policy: Bounds the direct broadcast attempts
            confirm_interval: Seconds between confirmation checks
            confirm_timeout: Seconds to wait for confirmation per attempt
            max_tx_size: Wire size ceiling in bytes
            on_tx_sent: Callback when a transaction or bundle is sent
            on_tx_confirmed: Callback when a transaction is confirmed
            on_tx_failed: Callback when delivery fails
        """
        self.chain = chain
        self.relay = relay
        self.retry_policy = retry_policy or RetryPolicy()
        self.confirm_interval = confirm_interval
        self.confirm_timeout = confirm_timeout
        self.max_tx_size = max_tx_size

        self.on_tx_sent = on_tx_sent
        self.on_tx_confirmed = on_tx_confirmed
        self.on_tx_failed = on_tx_failed

    def _emit(self, callback, data: Dict[str, Any]):
        if callback:
            callback(data)

    def _check_size(self, tx: VersionedTransaction, label: str):
        size = len(bytes(tx))
        if size > self.max_tx_size:
            logger.error(f"Refusing to submit {label}: {size} bytes")
            raise SizeExceededError(size, self.max_tx_size, label)

    async def simulate(self, tx: VersionedTransaction, label: str):
        """
        Dry-run a transaction.

        Raises:
            SimulationRejectedError: If the simulation returns an error
        """
        err, logs = await self.chain.simulate(tx)
        if err is not None:
            logger.error(
                f"Simulation failed for {label}: {err}",
                extra={"label": label, "error": str(err), "logs": logs}
            )
            raise SimulationRejectedError(err, logs, label)
        logger.debug(f"Simulation passed for {label}")

    async def submit(self, build: TransactionBuilder, label: str,
                     use_bundle: bool = False) -> SubmissionResult:
        """
        Build, simulate and deliver one transaction.

        Args:
            build: Compiles and signs the transaction for a blockhash
            label: Name used in logs and results
            use_bundle: Try the bundle relay before direct broadcast

        Returns:
            SubmissionResult of the confirmed transaction

        Raises:
            SizeExceededError: If the compiled transaction is too large
            SimulationRejectedError: If the dry-run fails
            DeliveryFailedError: If the bundle and direct paths are exhausted
        """
        blockhash = await self.chain.get_latest_blockhash()
        tx = build(blockhash)
        self._check_size(tx, label)
        await self.simulate(tx, label)

        bundled = use_bundle and self.relay is not None
        if bundled:
            result = await self._submit_bundle(tx, label)
            if result is not None:
                return result
            logger.warning(f"Bundle path failed for {label}, falling back to direct broadcast")

        return await self._submit_direct(build, tx, blockhash, label, after_bundle=bundled)

    async def _submit_bundle(self, tx: VersionedTransaction, label: str) -> Optional[SubmissionResult]:
        signature = str(tx.signatures[0])
        encoded = base64.b64encode(bytes(tx)).decode("ascii")

        bundle_id = await self.relay.send_bundle([encoded])
        if not bundle_id:
            return None

        self._emit(self.on_tx_sent, {"label": label, "signature": signature, "bundle_id": bundle_id})
        if not await self.relay.wait_for_bundle(bundle_id):
            return None

        logger.info(f"{label} landed via bundle: {signature}")
        result = SubmissionResult(
            signature=signature,
            delivery_path=DeliveryPath.BUNDLE,
            confirmation_status=ConfirmationStatus.CONFIRMED,
            label=label,
            bundle_id=bundle_id,
        )
        self._emit(self.on_tx_confirmed, result.model_dump())
        return result

    async def _confirmation(self, signature: str, blockhash: BlockhashInfo) -> Optional[str]:
        status = await self.chain.get_signature_status(signature)
        if status in LANDED or status == "failed":
            return status
        if await self.chain.get_block_height() > blockhash.last_valid_block_height:
            return EXPIRED
        return None

    async def _submit_direct(self, build: TransactionBuilder, tx: VersionedTransaction,
                             blockhash: BlockhashInfo, label: str,
                             after_bundle: bool = False) -> SubmissionResult:
        policy = self.retry_policy
        signature = str(tx.signatures[0])

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1 or after_bundle:
                # The previous send or the bundle may still have landed
                status = await self.chain.get_signature_status(signature)
                if status in LANDED:
                    path = DeliveryPath.BUNDLE if attempt == 1 else DeliveryPath.DIRECT
                    return self._confirmed(signature, label, attempt - 1, path)
                if status == "failed":
                    self._fail(signature, label, "failed on-chain")

                if await self.chain.get_block_height() > blockhash.last_valid_block_height:
                    blockhash = await self.chain.get_latest_blockhash()
                    tx = build(blockhash)
                    self._check_size(tx, label)
                    await self.simulate(tx, label)
                    signature = str(tx.signatures[0])
                    logger.info(f"Rebuilt {label} with a fresh blockhash: {signature}")

            try:
                await self.chain.send_raw(bytes(tx))
            except SEND_ERRORS as e:
                logger.warning(f"Send failed for {label} (attempt {attempt}/{policy.max_attempts}): {e}")
                if attempt < policy.max_attempts:
                    await asyncio.sleep(policy.delay_for(attempt))
                continue

            logger.info(
                f"Sent {label}: {signature}",
                extra={"label": label, "signature": signature, "attempt": attempt}
            )
            self._emit(self.on_tx_sent, {"label": label, "signature": signature, "attempt": attempt})

            try:
                status = await poll_until(
                    lambda: self._confirmation(signature, blockhash),
                    lambda s: s is not None,
                    interval=self.confirm_interval,
                    timeout=self.confirm_timeout,
                    label=f"confirmation of {label}",
                )
            except PollTimeoutError:
                status = None

            if status in LANDED:
                return self._confirmed(signature, label, attempt)
            if status == "failed":
                self._fail(signature, label, "failed on-chain")

            logger.warning(
                f"{label} not confirmed (attempt {attempt}/{policy.max_attempts})",
                extra={"signature": signature, "status": status}
            )
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_for(attempt))

        # Last check before giving up on the final signature
        if await self.chain.get_signature_status(signature) in LANDED:
            return self._confirmed(signature, label, policy.max_attempts)
        self._fail(signature, label, f"not confirmed after {policy.max_attempts} attempts")

    def _confirmed(self, signature: str, label: str, attempts: int,
                   delivery_path: DeliveryPath = DeliveryPath.DIRECT) -> SubmissionResult:
        logger.info(f"{label} confirmed: {signature}")
        result = SubmissionResult(
            signature=signature,
            delivery_path=delivery_path,
            confirmation_status=ConfirmationStatus.CONFIRMED,
            label=label,
            attempts=max(attempts, 1),
        )
        self._emit(self.on_tx_confirmed, result.model_dump())
        return result

    def _fail(self, signature: str, label: str, reason: str):
        logger.error(f"{label} {reason}: {signature}")
        self._emit(self.on_tx_failed, {"label": label, "signature": signature, "error": reason})
        raise DeliveryFailedError(f"{label} {reason}", signature=signature)
