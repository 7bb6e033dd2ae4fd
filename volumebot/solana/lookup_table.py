"""
Address lookup table management.

A deployment owns a single lookup table: it is created once, its address is
persisted, and afterwards it is only ever extended. Extension never adds a
duplicate member and never grows past the on-chain limit of 256 addresses.
"""

from typing import Iterable, List, Optional

from loguru import logger
from solders.address_lookup_table_account import AddressLookupTable
from solders.pubkey import Pubkey
from solders.system_program import (
    CreateLookupTableParams,
    ExtendLookupTableParams,
    create_lookup_table,
    extend_lookup_table,
)

from volumebot.config import (
    LUT_CREATION_COST_LAMPORTS,
    LUT_EXTEND_CHUNK_SIZE,
    LUT_RETRIEVE_TIMEOUT_SECONDS,
    LUT_SETTLE_DELAY_SECONDS,
    MAX_LOOKUP_TABLE_ADDRESSES,
)
from volumebot.errors import (
    DeliveryFailedError,
    InsufficientFundsError,
    PollTimeoutError,
    SimulationRejectedError,
    SizeExceededError,
    TableNotRetrievableError,
)
from volumebot.solana.batcher import batch_builder, chunk_list, tip_instruction
from volumebot.solana.chain_client import ChainClient
from volumebot.solana.models import LookupTable, TransactionBatch, Wallet
from volumebot.solana.tx_executor import SubmissionPipeline
from volumebot.utils.polling import poll_until
from volumebot.utils.wallet_storage import LookupTableStore

RETRIEVE_POLL_INTERVAL = 2.0  # seconds


def plan_extension(existing: Iterable[Pubkey], candidates: Iterable[Pubkey]) -> List[Pubkey]:
    """
    Addresses an extension should add.

    Candidates are deduplicated in order, existing members are removed and the
    result is truncated to the free capacity of the table.

    Args:
        existing: Current table members
        candidates: Addresses the caller wants in the table

    Returns:
        New addresses to append, possibly empty
    """
    existing = list(existing)
    seen = set(existing)
    new_addresses = []
    for address in candidates:
        if address in seen:
            continue
        seen.add(address)
        new_addresses.append(address)

    capacity = max(MAX_LOOKUP_TABLE_ADDRESSES - len(existing), 0)
    if len(new_addresses) > capacity:
        logger.warning(
            f"Lookup table has room for {capacity} addresses, dropping {len(new_addresses) - capacity}"
        )
    return new_addresses[:capacity]


class LookupTableManager:
    """
    Creates, loads and extends the deployment's lookup table.
    """

    def __init__(self,
                 chain: ChainClient,
                 pipeline: SubmissionPipeline,
                 store: LookupTableStore,
                 settle_delay: float = LUT_SETTLE_DELAY_SECONDS,
                 retrieve_timeout: float = LUT_RETRIEVE_TIMEOUT_SECONDS,
                 retrieve_interval: float = RETRIEVE_POLL_INTERVAL,
                 chunk_size: int = LUT_EXTEND_CHUNK_SIZE):
        """
        Initialize the lookup table manager.

        Args:
            chain: Blockchain access
            pipeline: Submission pipeline for create and extend transactions
            store: Persisted table address
            settle_delay: Seconds to wait after creation before the first read
            retrieve_timeout: Seconds to keep polling for the new table
            retrieve_interval: Seconds between reads of the new table
            chunk_size: Addresses per extend instruction
        """
        self.chain = chain
        self.pipeline = pipeline
        self.store = store
        self.settle_delay = settle_delay
        self.retrieve_timeout = retrieve_timeout
        self.retrieve_interval = retrieve_interval
        self.chunk_size = chunk_size

    async def load(self, address: Optional[str]) -> Optional[LookupTable]:
        """
        Read a table from chain.

        Args:
            address: Persisted table address, or None

        Returns:
            LookupTable snapshot, or None if there is no such account
        """
        if not address:
            return None
        table_address = Pubkey.from_string(address)
        data = await self.chain.get_account_data(table_address)
        if data is None:
            logger.info(f"Lookup table {address} not found on chain")
            return None

        table = AddressLookupTable.deserialize(data)
        return LookupTable(address=table_address, addresses=tuple(table.addresses))

    async def create(self, payer: Wallet, tip_lamports: int) -> LookupTable:
        """
        Create a new table and wait until it can be read back.

        Args:
            payer: Authority and fee payer
            tip_lamports: Relay tip added to the create transaction

        Returns:
            The empty table

        Raises:
            InsufficientFundsError: If the payer cannot cover rent and tip
            TableNotRetrievableError: If the table never becomes readable
        """
        required = LUT_CREATION_COST_LAMPORTS + tip_lamports
        balance = await self.chain.get_balance(payer.pubkey)
        if balance < required:
            raise InsufficientFundsError(
                f"Lookup table creation needs {required} lamports, payer holds {balance}",
                required=required, available=balance,
            )

        slot = await self.chain.get_finalized_slot()
        create_ix, table_address = create_lookup_table(CreateLookupTableParams(
            authority_address=payer.pubkey,
            payer_address=payer.pubkey,
            recent_slot=slot,
        ))
        instructions = [create_ix]
        if tip_lamports > 0:
            instructions.append(tip_instruction(payer.pubkey, tip_lamports))

        batch = TransactionBatch(
            label="lookup table create",
            payer=payer,
            members=(payer,),
            instructions=tuple(instructions),
            uses_bundle=tip_lamports > 0,
        )
        # Persisted first: a create reported as failed may still land
        self.store.save(str(table_address))
        result = await self.pipeline.submit(batch_builder(batch), batch.label, use_bundle=batch.uses_bundle)
        logger.info(
            f"Lookup table created: {table_address}",
            extra={"address": str(table_address), "signature": result.signature}
        )

        # A freshly created table is not readable until a later slot
        try:
            table = await poll_until(
                lambda: self.load(str(table_address)),
                lambda t: t is not None,
                interval=self.retrieve_interval,
                timeout=self.retrieve_timeout,
                initial_delay=self.settle_delay,
                label=f"lookup table {table_address}",
            )
        except PollTimeoutError:
            raise TableNotRetrievableError(f"Lookup table {table_address} not readable after creation")
        return table

    async def extend(self, table: LookupTable, payer: Wallet, candidates: Iterable[Pubkey],
                     tip_lamports: int) -> LookupTable:
        """
        Add the missing candidates to the table in chunks.

        A chunk that fails is logged and skipped; the remaining chunks still run.

        Args:
            table: Current snapshot
            payer: Table authority and fee payer
            candidates: Addresses that should be in the table
            tip_lamports: Relay tip added to the final chunk

        Returns:
            New snapshot with the addresses of every submitted chunk appended
        """
        new_addresses = plan_extension(table.addresses, candidates)
        if not new_addresses:
            logger.info(f"Lookup table {table.address} already holds every address")
            return table

        chunks = chunk_list(new_addresses, self.chunk_size)
        admitted: List[Pubkey] = []
        for index, chunk in enumerate(chunks):
            label = f"lookup table extend {index + 1}/{len(chunks)}"
            instructions = [extend_lookup_table(ExtendLookupTableParams(
                lookup_table_address=table.address,
                authority_address=payer.pubkey,
                new_addresses=chunk,
                payer_address=payer.pubkey,
            ))]
            is_last = index == len(chunks) - 1
            if is_last and tip_lamports > 0:
                instructions.append(tip_instruction(payer.pubkey, tip_lamports))

            batch = TransactionBatch(
                label=label,
                payer=payer,
                members=(payer,),
                instructions=tuple(instructions),
                uses_bundle=is_last and tip_lamports > 0,
            )
            try:
                await self.pipeline.submit(batch_builder(batch), label, use_bundle=batch.uses_bundle)
            except (SizeExceededError, SimulationRejectedError, DeliveryFailedError) as e:
                logger.error(f"Skipping {label}: {e}", extra={"addresses": len(chunk)})
                continue
            admitted.extend(chunk)

        logger.info(
            f"Extended lookup table {table.address} with {len(admitted)}/{len(new_addresses)} addresses"
        )
        return table.with_members(admitted)

    async def create_or_load(self, payer: Wallet, candidates: Iterable[Pubkey],
                             tip_lamports: int) -> LookupTable:
        """
        Load the persisted table, creating it if absent, then extend it with ``candidates``.
        """
        table = await self.load(self.store.load())
        if table is None:
            table = await self.create(payer, tip_lamports)
        return await self.extend(table, payer, candidates, tip_lamports)
