"""
Models for Solana operations.
"""
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from volumebot.config import MAX_LOOKUP_TABLE_ADDRESSES


class Wallet(BaseModel):
    """A signer in the fleet with its last known balances."""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    # Never part of repr or model_dump, so a logged wallet cannot leak its key
    keypair: Keypair = Field(repr=False, exclude=True)
    native_balance: int = 0
    token_balance: int = 0

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def short(self) -> str:
        """Abbreviated address for log lines."""
        return self.address[:5]

    def with_balances(self, native_balance: Optional[int] = None,
                      token_balance: Optional[int] = None) -> "Wallet":
        """Return a copy carrying fresh balances."""
        update = {}
        if native_balance is not None:
            update["native_balance"] = native_balance
        if token_balance is not None:
            update["token_balance"] = token_balance
        return self.model_copy(update=update)


class CurveState(BaseModel):
    """Decoded snapshot of a bonding curve pool account."""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    mint: Pubkey
    bonding_curve: Pubkey
    associated_bonding_curve: Pubkey
    creator: Pubkey
    virtual_token_reserves: int = Field(ge=0)
    virtual_sol_reserves: int = Field(ge=0)
    real_token_reserves: int = Field(default=0, ge=0)
    real_sol_reserves: int = Field(default=0, ge=0)
    token_total_supply: int = Field(default=0, ge=0)
    complete: bool = False
    fetched_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_valid(self) -> bool:
        """A zero reserve marks the pool as uninitialized."""
        return self.virtual_token_reserves > 0 and self.virtual_sol_reserves > 0


class LookupTable(BaseModel):
    """Immutable snapshot of an on-chain address lookup table."""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    address: Pubkey
    addresses: Tuple[Pubkey, ...] = ()

    @field_validator("addresses")
    @classmethod
    def _check_members(cls, value: Tuple[Pubkey, ...]) -> Tuple[Pubkey, ...]:
        # On-chain tables may already hold duplicates; only extension keeps members unique
        if len(value) > MAX_LOOKUP_TABLE_ADDRESSES:
            raise ValueError(
                f"Lookup table holds at most {MAX_LOOKUP_TABLE_ADDRESSES} addresses, got {len(value)}"
            )
        return value

    @property
    def remaining_slots(self) -> int:
        return MAX_LOOKUP_TABLE_ADDRESSES - len(self.addresses)

    def contains(self, address: Pubkey) -> bool:
        return address in set(self.addresses)

    def with_members(self, new_addresses: List[Pubkey]) -> "LookupTable":
        """
        Return a snapshot with ``new_addresses`` appended.

        Raises:
            ValueError: If an address is already a member or repeated in ``new_addresses``
        """
        current = set(self.addresses)
        if len(set(new_addresses)) != len(new_addresses) or current.intersection(new_addresses):
            raise ValueError("Lookup table extension must not duplicate members")
        return LookupTable(address=self.address, addresses=self.addresses + tuple(new_addresses))

    def to_account(self) -> AddressLookupTableAccount:
        """Account form consumed by message compilation."""
        return AddressLookupTableAccount(key=self.address, addresses=list(self.addresses))


class SwapSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SwapQuote(BaseModel):
    """
    A priced trade.

    For a buy, input is native lamports, output is tokens and the worst
    acceptable amount is the maximum native cost. For a sell, input is tokens,
    output is native lamports and the worst acceptable amount is the minimum
    native output.
    """
    model_config = ConfigDict(frozen=True)

    side: SwapSide
    input_amount: int
    estimated_output_amount: int
    worst_acceptable_amount: int


class BlockhashInfo(BaseModel):
    """A recent blockhash and the last block height at which it is valid."""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    blockhash: Hash
    last_valid_block_height: int


class TransactionBatch(BaseModel):
    """One group of wallets compiled into a single transaction."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    label: str
    payer: Wallet
    members: Tuple[Wallet, ...] = ()
    instructions: Tuple[Instruction, ...] = ()
    compiled_size: int = 0
    # Carries a relay tip and goes through the bundle path first
    uses_bundle: bool = False


class DeliveryPath(str, Enum):
    BUNDLE = "bundle"
    DIRECT = "direct"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SubmissionResult(BaseModel):
    """Outcome of delivering one compiled transaction."""
    signature: str
    delivery_path: DeliveryPath
    confirmation_status: ConfirmationStatus = ConfirmationStatus.PENDING
    label: str = ""
    bundle_id: Optional[str] = None
    attempts: int = 1
    error: Optional[str] = None


class Skip(BaseModel):
    """Wallet contributes nothing to the batch."""
    model_config = ConfigDict(frozen=True)
    reason: str


class Redirect(BaseModel):
    """Wallet sends its excess balance to the overflow sink instead of swapping."""
    model_config = ConfigDict(frozen=True)
    amount: int


class Swap(BaseModel):
    """Wallet buys then sells within the same transaction."""
    model_config = ConfigDict(frozen=True)
    buy: SwapQuote
    sell: SwapQuote


WalletDecision = Union[Skip, Redirect, Swap]


class OperationOutcome(BaseModel):
    """Result of a high-level operation, rendered by the control layer."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: str
    success: bool = True
    results: List[SubmissionResult] = Field(default_factory=list)
    skipped_wallets: int = 0
    skip_reasons: Dict[str, str] = Field(default_factory=dict)
    dropped_groups: int = 0
    errors: List[str] = Field(default_factory=list)
    curve: Optional[CurveState] = None
    lookup_table_address: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def signatures(self) -> List[str]:
        return [r.signature for r in self.results]

    def record_skip(self, wallet: Wallet, reason: str):
        self.skipped_wallets += 1
        self.skip_reasons[wallet.address] = reason

    def record_drop(self, label: str, error: Exception, fatal: bool = False):
        """Record a dropped group; ``fatal`` marks the whole operation failed."""
        self.dropped_groups += 1
        self.errors.append(f"{label}: {error}")
        if fatal:
            self.success = False

    def finish(self) -> "OperationOutcome":
        self.completed_at = datetime.now()
        return self
