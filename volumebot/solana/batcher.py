"""
Transaction batching for the wallet fleet.

Partitions wallets into fixed-size groups, decides what each wallet
contributes, builds one instruction list per group and compiles it into a
signed versioned transaction referencing the lookup table. Oversized
transactions are rejected after compilation and never leave this module.
"""

import math
import random
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    CloseAccountParams,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
)

from volumebot.config import (
    BotConfig,
    COLLECT_GROUP_SIZE,
    COMPUTE_UNIT_PRICE_MICRO_LAMPORTS,
    COMPUTE_UNITS_PER_SWAP,
    DISTRIBUTE_GROUP_SIZE,
    FEE_ATA_LAMPORTS,
    MAX_COMPUTE_UNITS,
    MAX_TX_SIZE,
    MIN_SWAP_LAMPORTS,
    SELL_GROUP_SIZE,
    SWAP_FRACTION_MAX,
    SWAP_FRACTION_MIN,
    SWAP_GROUP_SIZE,
)
from volumebot.errors import SizeExceededError
from volumebot.solana.bundle_relay import tip_account
from volumebot.solana.models import (
    BlockhashInfo,
    CurveState,
    LookupTable,
    Redirect,
    Skip,
    Swap,
    TransactionBatch,
    Wallet,
    WalletDecision,
)
from volumebot.solana.pricing import quote_buy, quote_sell
from volumebot.solana.pump_program import build_buy_instruction, build_sell_instruction

# Wallets skipped while planning, with the reason
Skipped = List[Tuple[Wallet, str]]


def chunk_list(items: Sequence, size: int) -> List[list]:
    """
    Partition ``items`` into consecutive groups of at most ``size``.

    Every item lands in exactly one group and ``ceil(len(items) / size)``
    groups are produced.
    """
    if size < 1:
        raise ValueError(f"Group size must be at least 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def group_count(n: int, size: int) -> int:
    return math.ceil(n / size)


def transfer_instruction(source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports))


def tip_instruction(payer: Pubkey, lamports: int) -> Instruction:
    """Transfer paying the relay for bundle inclusion."""
    return transfer_instruction(payer, tip_account(), lamports)


def compute_budget_instructions(swapping_wallets: int) -> List[Instruction]:
    """Unit limit scaled by the number of swapping wallets, plus a fixed unit price."""
    units = min(COMPUTE_UNITS_PER_SWAP * max(swapping_wallets, 1), MAX_COMPUTE_UNITS)
    return [
        set_compute_unit_limit(units),
        set_compute_unit_price(COMPUTE_UNIT_PRICE_MICRO_LAMPORTS),
    ]


def close_token_account_instruction(owner: Pubkey, mint: Pubkey) -> Instruction:
    """Close the owner's token account, returning its rent to the owner."""
    return close_account(CloseAccountParams(
        program_id=TOKEN_PROGRAM_ID,
        account=get_associated_token_address(owner, mint),
        dest=owner,
        owner=owner,
    ))


def decide_swap(wallet: Wallet, curve: CurveState, config: BotConfig,
                rng: Optional[random.Random] = None) -> WalletDecision:
    """
    Decide what a wallet contributes to a swap cycle.

    Args:
        wallet: Wallet with a fresh native balance
        curve: Pool snapshot used for pricing
        config: Session configuration (slippage, overflow threshold and retain)
        rng: Source of the random swap fraction

    Returns:
        Skip with a reason, Redirect of the excess balance, or Swap with both quotes
    """
    rng = rng or random
    balance = wallet.native_balance

    if balance >= config.overflow_threshold_lamports:
        return Redirect(amount=balance - config.overflow_retain_lamports)

    if balance <= FEE_ATA_LAMPORTS:
        return Skip(reason=f"balance {balance} does not cover fee reserve {FEE_ATA_LAMPORTS}")

    fraction = rng.uniform(SWAP_FRACTION_MIN, SWAP_FRACTION_MAX)
    amount = math.floor((balance - FEE_ATA_LAMPORTS) * fraction)
    if amount <= MIN_SWAP_LAMPORTS:
        return Skip(reason=f"swap amount {amount} too small")

    buy = quote_buy(amount, curve, config.slippage)
    if buy.estimated_output_amount <= 0:
        return Skip(reason=f"swap amount {amount} buys no tokens")

    sell = quote_sell(buy.estimated_output_amount, curve, config.slippage)
    return Swap(buy=buy, sell=sell)


def swap_instructions(wallet: Wallet, curve: CurveState, decision: Swap) -> List[Instruction]:
    """
    Token account creation, buy, sell and token account close for one wallet.

    The close is left out when the wallet already held tokens, since the
    account would not be empty after selling only what was bought.
    """
    owner = wallet.pubkey
    token_amount = decision.buy.estimated_output_amount
    instructions = [
        create_idempotent_associated_token_account(owner, owner, curve.mint),
        build_buy_instruction(curve, owner, token_amount, decision.buy.worst_acceptable_amount),
        build_sell_instruction(curve, owner, token_amount, decision.sell.worst_acceptable_amount),
    ]
    if wallet.token_balance == 0:
        instructions.append(close_token_account_instruction(owner, curve.mint))
    return instructions


def plan_distribute(operator: Wallet, recipients: Sequence[Wallet], amount: int,
                    tip_lamports: int) -> List[TransactionBatch]:
    """
    Transfers of ``amount`` from the operator to every recipient.

    The operator pays every transaction; the final one carries the relay tip.
    """
    batches = []
    groups = chunk_list(list(recipients), DISTRIBUTE_GROUP_SIZE)
    for index, group in enumerate(groups):
        instructions = [transfer_instruction(operator.pubkey, w.pubkey, amount) for w in group]
        is_last = index == len(groups) - 1
        if is_last and tip_lamports > 0:
            instructions.append(tip_instruction(operator.pubkey, tip_lamports))
        batches.append(TransactionBatch(
            label=f"distribute {index + 1}/{len(groups)}",
            payer=operator,
            members=tuple(group),
            instructions=tuple(instructions),
            uses_bundle=is_last and tip_lamports > 0,
        ))
    return batches


def plan_collect(operator: Wallet, wallets: Sequence[Wallet]) -> Tuple[List[TransactionBatch], Skipped]:
    """
    Transfers of each sub-wallet's full balance to the operator, who pays the fee.
    """
    skipped: Skipped = []
    funded = []
    for wallet in wallets:
        if wallet.native_balance <= 0:
            skipped.append((wallet, "empty balance"))
        else:
            funded.append(wallet)

    batches = []
    groups = chunk_list(funded, COLLECT_GROUP_SIZE)
    for index, group in enumerate(groups):
        batches.append(TransactionBatch(
            label=f"collect {index + 1}/{len(groups)}",
            payer=operator,
            members=tuple(group),
            instructions=tuple(
                transfer_instruction(w.pubkey, operator.pubkey, w.native_balance) for w in group
            ),
        ))
    return batches, skipped


def plan_swap_cycle(wallets: Sequence[Wallet], curve: CurveState, config: BotConfig,
                    overflow_sink: Pubkey,
                    rng: Optional[random.Random] = None) -> Tuple[List[TransactionBatch], Skipped]:
    """
    One buy-then-sell pass over every wallet.

    The first contributing wallet of each group pays its fee. Groups with no
    contributing wallet produce no transaction.
    """
    skipped: Skipped = []
    batches = []
    groups = chunk_list(list(wallets), SWAP_GROUP_SIZE)

    for index, group in enumerate(groups):
        members: List[Wallet] = []
        body: List[Instruction] = []
        swapping = 0

        for wallet in group:
            decision = decide_swap(wallet, curve, config, rng)
            if isinstance(decision, Skip):
                logger.debug(f"Skipping {wallet.short}: {decision.reason}")
                skipped.append((wallet, decision.reason))
                continue
            if isinstance(decision, Redirect):
                logger.info(
                    f"Redirecting {decision.amount} lamports from {wallet.short} to overflow sink",
                    extra={"wallet": wallet.address, "amount": decision.amount}
                )
                body.append(transfer_instruction(wallet.pubkey, overflow_sink, decision.amount))
            else:
                body.extend(swap_instructions(wallet, curve, decision))
                swapping += 1
            members.append(wallet)

        if not members:
            continue

        instructions = (compute_budget_instructions(swapping) if swapping else []) + body
        batches.append(TransactionBatch(
            label=f"swap {index + 1}/{len(groups)}",
            payer=members[0],
            members=tuple(members),
            instructions=tuple(instructions),
        ))
    return batches, skipped


def plan_sell_all(wallets: Sequence[Wallet], curve: CurveState,
                  slippage: float) -> Tuple[List[TransactionBatch], Skipped]:
    """
    Sell every wallet's full token balance and close its token account.
    """
    skipped: Skipped = []
    batches = []
    groups = chunk_list(list(wallets), SELL_GROUP_SIZE)

    for index, group in enumerate(groups):
        members: List[Wallet] = []
        body: List[Instruction] = []
        for wallet in group:
            if wallet.token_balance <= 0:
                skipped.append((wallet, "no tokens to sell"))
                continue
            quote = quote_sell(wallet.token_balance, curve, slippage)
            if quote.worst_acceptable_amount <= 0:
                skipped.append((wallet, f"sell of {wallet.token_balance} tokens returns nothing"))
                continue
            body.append(build_sell_instruction(
                curve, wallet.pubkey, wallet.token_balance, quote.worst_acceptable_amount
            ))
            body.append(close_token_account_instruction(wallet.pubkey, curve.mint))
            members.append(wallet)

        if not members:
            continue

        batches.append(TransactionBatch(
            label=f"sell {index + 1}/{len(groups)}",
            payer=members[0],
            members=tuple(members),
            instructions=tuple(compute_budget_instructions(len(members)) + body),
        ))
    return batches, skipped


def required_signers(batch: TransactionBatch) -> List[Keypair]:
    """
    Payer first, then every wallet an instruction names as signer, without duplicates.

    Raises:
        ValueError: If an instruction requires a signature from an unknown account
    """
    known: Dict[Pubkey, Wallet] = {w.pubkey: w for w in batch.members}
    known[batch.payer.pubkey] = batch.payer

    signers = [batch.payer.keypair]
    seen = {batch.payer.pubkey}
    for ix in batch.instructions:
        for meta in ix.accounts:
            if not meta.is_signer or meta.pubkey in seen:
                continue
            wallet = known.get(meta.pubkey)
            if wallet is None:
                raise ValueError(f"{batch.label} needs a signature from unknown account {meta.pubkey}")
            signers.append(wallet.keypair)
            seen.add(meta.pubkey)
    return signers


def compile_batch(batch: TransactionBatch, blockhash: BlockhashInfo,
                  lookup_table: Optional[LookupTable] = None,
                  max_size: int = MAX_TX_SIZE) -> VersionedTransaction:
    """
    Compile and sign a batch against a blockhash and the lookup table.

    Args:
        batch: Planned batch
        blockhash: Recent blockhash
        lookup_table: Table used to compress account references
        max_size: Wire size ceiling in bytes

    Returns:
        Signed transaction

    Raises:
        SizeExceededError: If the serialized transaction is larger than ``max_size``
    """
    tables = [lookup_table.to_account()] if lookup_table and lookup_table.addresses else []
    message = MessageV0.try_compile(
        batch.payer.pubkey, list(batch.instructions), tables, blockhash.blockhash
    )
    tx = VersionedTransaction(message, required_signers(batch))

    size = len(bytes(tx))
    batch.compiled_size = size
    if size > max_size:
        logger.error(
            f"{batch.label} compiled to {size} bytes, over the {max_size} byte limit",
            extra={"label": batch.label, "size": size, "wallets": len(batch.members)}
        )
        raise SizeExceededError(size, max_size, batch.label)
    return tx


def batch_builder(batch: TransactionBatch, lookup_table: Optional[LookupTable] = None):
    """Build callback for the submission pipeline: compile ``batch`` against a given blockhash."""
    return lambda blockhash: compile_batch(batch, blockhash, lookup_table)

