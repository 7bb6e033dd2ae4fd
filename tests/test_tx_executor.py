import asyncio
import base64
from unittest.mock import MagicMock

import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCNoResultException
from solders.transaction import VersionedTransaction

from conftest import FakeRelay, make_wallets
from volumebot.errors import DeliveryFailedError, SimulationRejectedError, SizeExceededError
from volumebot.solana.batcher import batch_builder, plan_collect, plan_distribute
from volumebot.solana.models import ConfirmationStatus, DeliveryPath
from volumebot.solana.tx_executor import SubmissionPipeline
from volumebot.utils.retry import RetryPolicy


def make_pipeline(chain, relay=None, policy=None, **kwargs):
    return SubmissionPipeline(
        chain, relay, retry_policy=policy, confirm_interval=0, confirm_timeout=0, **kwargs
    )


def collect_build(operator, n=2):
    batches, _ = plan_collect(operator, make_wallets(n, native_balance=1_000_000))
    return batch_builder(batches[0])


def test_direct_submission_confirms(fake_chain, operator, fast_policy):
    sent = MagicMock()
    confirmed = MagicMock()
    pipeline = make_pipeline(fake_chain, policy=fast_policy, on_tx_sent=sent, on_tx_confirmed=confirmed)

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert result.delivery_path == DeliveryPath.DIRECT
    assert result.confirmation_status == ConfirmationStatus.CONFIRMED
    assert len(fake_chain.simulated) == 1
    assert len(fake_chain.sent) == 1
    sent.assert_called_once()
    confirmed.assert_called_once()


def test_simulation_failure_is_never_sent(fake_chain, operator, fast_policy):
    fake_chain.simulate_error = "InsufficientFundsForFee"
    fake_chain.simulate_logs = ["Program log: insufficient lamports"]
    relay = FakeRelay()
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy)

    with pytest.raises(SimulationRejectedError) as exc_info:
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    assert exc_info.value.logs == ["Program log: insufficient lamports"]
    assert fake_chain.sent == []
    assert relay.bundles == []


def test_landed_bundle_skips_direct_broadcast(fake_chain, operator, fast_policy):
    relay = FakeRelay(bundle_id="b-42", lands=True)
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy)
    build = batch_builder(plan_distribute(operator, make_wallets(2), 4_000_000, 1_000_000)[0])

    result = asyncio.run(pipeline.submit(build, "distribute 1/1", use_bundle=True))

    assert result.delivery_path == DeliveryPath.BUNDLE
    assert result.bundle_id == "b-42"
    assert len(relay.bundles) == 1
    assert fake_chain.sent == []


def test_missing_bundle_id_falls_back_to_direct(fake_chain, operator, fast_policy):
    relay = FakeRelay(bundle_id=None)
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy)

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    assert result.delivery_path == DeliveryPath.DIRECT
    assert len(relay.bundles) == 1
    assert len(fake_chain.sent) == 1


def test_unconfirmed_bundle_falls_back_with_same_signature(fake_chain, operator, fast_policy):
    relay = FakeRelay(bundle_id="b-1", lands=False)
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy)

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    assert result.delivery_path == DeliveryPath.DIRECT
    # Still valid blockhash, so the exact bundled bytes are broadcast
    assert len(fake_chain.blockhashes) == 1


def test_direct_exhaustion_raises_delivery_failed(fake_chain, operator, fast_policy):
    fake_chain.confirm_on_send = False
    failed = MagicMock()
    pipeline = make_pipeline(fake_chain, FakeRelay(bundle_id=None), policy=fast_policy, on_tx_failed=failed)

    with pytest.raises(DeliveryFailedError):
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    assert len(fake_chain.sent) == fast_policy.max_attempts
    failed.assert_called_once()


def test_valid_blockhash_is_resent_unchanged(fake_chain, operator, fast_policy):
    fake_chain.confirm_on_send = False
    pipeline = make_pipeline(fake_chain, policy=fast_policy)

    with pytest.raises(DeliveryFailedError):
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert len(set(fake_chain.sent)) == 1
    assert len(fake_chain.blockhashes) == 1


def test_expired_blockhash_is_rebuilt_before_resend(fake_chain, operator, fast_policy):
    fake_chain.confirm_on_send = False
    fake_chain.last_valid_block_height = 50  # below the current block height
    pipeline = make_pipeline(fake_chain, policy=fast_policy)

    with pytest.raises(DeliveryFailedError):
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert len(set(fake_chain.sent)) == fast_policy.max_attempts
    assert len(fake_chain.blockhashes) == fast_policy.max_attempts
    # Every rebuilt transaction is simulated again
    assert len(fake_chain.simulated) == fast_policy.max_attempts


def test_late_landing_is_not_resent(fake_chain, operator, fast_policy):
    fake_chain.confirm_on_send = False
    pipeline = make_pipeline(fake_chain, policy=fast_policy)

    async def block_height():
        # Everything sent so far lands right after the first status check
        for raw in fake_chain.sent:
            fake_chain.statuses[str(VersionedTransaction.from_bytes(raw).signatures[0])] = "confirmed"
        return fake_chain.block_height

    fake_chain.get_block_height = block_height

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert result.confirmation_status == ConfirmationStatus.CONFIRMED
    assert len(fake_chain.sent) == 1


def test_send_errors_are_retried(fake_chain, operator, fast_policy):
    fake_chain.send_error = SolanaRpcException(ConnectionError("connection reset"), "send_raw_transaction")
    pipeline = make_pipeline(fake_chain, policy=fast_policy)

    with pytest.raises(DeliveryFailedError):
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert fake_chain.send_attempts == fast_policy.max_attempts
    assert fake_chain.sent == []


def test_rejected_send_is_a_delivery_failure(fake_chain, operator, fast_policy):
    fake_chain.send_error = RPCNoResultException("Failed to send transaction")
    pipeline = make_pipeline(fake_chain, policy=fast_policy)

    with pytest.raises(DeliveryFailedError):
        asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1"))

    assert fake_chain.send_attempts == fast_policy.max_attempts


def test_oversized_transaction_is_never_submitted(fake_chain, operator, fast_policy):
    relay = FakeRelay()
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy, max_tx_size=200)

    with pytest.raises(SizeExceededError):
        asyncio.run(pipeline.submit(collect_build(operator, n=3), "collect 1/1", use_bundle=True))

    assert fake_chain.simulated == []
    assert fake_chain.sent == []
    assert relay.bundles == []


def test_expired_bundle_bytes_are_rebuilt_before_fallback(fake_chain, operator):
    relay = FakeRelay(bundle_id="b-1", lands=False)

    async def slow_bundle(bundle_id):
        # The relay gave up after the original blockhash expired
        fake_chain.block_height = 2000
        fake_chain.last_valid_block_height = 2150
        return False

    relay.wait_for_bundle = slow_bundle
    policy = RetryPolicy(max_attempts=1, base_delay=0, max_delay=0)
    pipeline = make_pipeline(fake_chain, relay, policy=policy)

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    bundled = VersionedTransaction.from_bytes(base64.b64decode(relay.bundles[0][0]))
    assert result.delivery_path == DeliveryPath.DIRECT
    assert result.signature != str(bundled.signatures[0])
    assert len(fake_chain.blockhashes) == 2
    assert len(fake_chain.simulated) == 2
    assert len(fake_chain.sent) == 1


def test_late_bundle_landing_is_not_broadcast(fake_chain, operator, fast_policy):
    relay = FakeRelay(bundle_id="b-1", lands=False)

    async def landed_after_giving_up(bundle_id):
        bundled = VersionedTransaction.from_bytes(base64.b64decode(relay.bundles[-1][0]))
        fake_chain.statuses[str(bundled.signatures[0])] = "confirmed"
        return False

    relay.wait_for_bundle = landed_after_giving_up
    pipeline = make_pipeline(fake_chain, relay, policy=fast_policy)

    result = asyncio.run(pipeline.submit(collect_build(operator), "collect 1/1", use_bundle=True))

    assert result.delivery_path == DeliveryPath.BUNDLE
    assert fake_chain.sent == []
