"""
Bonding curve AMM program layout.

Account constants, PDA derivation, pool account decoding and the buy/sell
instruction builders. Account orders are fixed by the on-chain program and
must not be changed.
"""

import struct
from typing import Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT
from spl.token.instructions import get_associated_token_address

from volumebot.errors import InvalidCurveStateError
from volumebot.solana.models import CurveState

PUMP_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
GLOBAL_ACCOUNT = Pubkey.from_string("4wTV1YmiEkRvAtNtsSGPtUrqRYQMe5SKy2uB4Jjaxnjf")
FEE_RECIPIENT = Pubkey.from_string("CebN5WGQ4jvEPvsVU4EoHEpgzq1VV7AbicfhtW4xC9iM")
EVENT_AUTHORITY = Pubkey.from_string("Ce6TQqeHC9p8KetsN6JsjHK7UTZk7nasjjnr7XxXp9F1")
RENT_SYSVAR = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

BUY_DISCRIMINATOR = 16927863322537952870
SELL_DISCRIMINATOR = 12502976635542562355

BONDING_CURVE_SEED = b"bonding-curve"
CREATOR_VAULT_SEED = b"creator-vault"

# discriminator, virtual token, virtual sol, real token, real sol, supply, complete
_CURVE_HEADER = struct.Struct("<QQQQQQ?")
_CURVE_CREATOR_OFFSET = _CURVE_HEADER.size
_CURVE_MIN_SIZE = _CURVE_CREATOR_OFFSET + 32

_SWAP_ARGS = struct.Struct("<QQQ")


def find_bonding_curve(mint: Pubkey) -> Pubkey:
    """Derive the pool account for a mint."""
    address, _ = Pubkey.find_program_address([BONDING_CURVE_SEED, bytes(mint)], PUMP_PROGRAM_ID)
    return address


def find_creator_vault(creator: Pubkey) -> Pubkey:
    """Derive the creator fee vault for a pool creator."""
    address, _ = Pubkey.find_program_address([CREATOR_VAULT_SEED, bytes(creator)], PUMP_PROGRAM_ID)
    return address


def find_pool_accounts(mint: Pubkey) -> Tuple[Pubkey, Pubkey]:
    """
    Derive the pool account and the pool's token account.

    Args:
        mint: Token mint

    Returns:
        Tuple of (bonding curve, associated bonding curve token account)
    """
    bonding_curve = find_bonding_curve(mint)
    return bonding_curve, get_associated_token_address(bonding_curve, mint)


def decode_curve_state(mint: Pubkey, data: bytes) -> CurveState:
    """
    Decode raw pool account data into a CurveState.

    Args:
        mint: Token mint the pool belongs to
        data: Raw account data

    Returns:
        CurveState snapshot

    Raises:
        InvalidCurveStateError: If the data is truncated or a reserve is zero
    """
    if len(data) < _CURVE_MIN_SIZE:
        raise InvalidCurveStateError(
            f"Pool account data is {len(data)} bytes, expected at least {_CURVE_MIN_SIZE}"
        )

    (_, virtual_token, virtual_sol, real_token, real_sol,
     supply, complete) = _CURVE_HEADER.unpack_from(data, 0)
    creator = Pubkey.from_bytes(bytes(data[_CURVE_CREATOR_OFFSET:_CURVE_MIN_SIZE]))

    if virtual_token == 0 or virtual_sol == 0:
        raise InvalidCurveStateError(f"Pool for {mint} has a zero reserve")

    bonding_curve, associated_bonding_curve = find_pool_accounts(mint)
    return CurveState(
        mint=mint,
        bonding_curve=bonding_curve,
        associated_bonding_curve=associated_bonding_curve,
        creator=creator,
        virtual_token_reserves=virtual_token,
        virtual_sol_reserves=virtual_sol,
        real_token_reserves=real_token,
        real_sol_reserves=real_sol,
        token_total_supply=supply,
        complete=complete,
    )


def encode_curve_state(virtual_token_reserves: int, virtual_sol_reserves: int, creator: Pubkey,
                       real_token_reserves: int = 0, real_sol_reserves: int = 0,
                       token_total_supply: int = 0, complete: bool = False,
                       discriminator: int = 0) -> bytes:
    """Inverse of ``decode_curve_state``, used to build fixture account data."""
    header = _CURVE_HEADER.pack(discriminator, virtual_token_reserves, virtual_sol_reserves,
                                real_token_reserves, real_sol_reserves, token_total_supply, complete)
    return header + bytes(creator)


def _swap_accounts(curve: CurveState, user: Pubkey, is_buy: bool):
    user_ata = get_associated_token_address(user, curve.mint)
    creator_vault = find_creator_vault(curve.creator)
    accounts = [
        AccountMeta(pubkey=GLOBAL_ACCOUNT, is_signer=False, is_writable=False),
        AccountMeta(pubkey=FEE_RECIPIENT, is_signer=False, is_writable=True),
        AccountMeta(pubkey=curve.mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=curve.bonding_curve, is_signer=False, is_writable=True),
        AccountMeta(pubkey=curve.associated_bonding_curve, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    token_program = AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False)
    vault = AccountMeta(pubkey=creator_vault, is_signer=False, is_writable=True)
    # Buy takes the token program before the creator vault, sell the reverse
    accounts.extend([token_program, vault] if is_buy else [vault, token_program])
    accounts.extend([
        AccountMeta(pubkey=EVENT_AUTHORITY, is_signer=False, is_writable=False),
        AccountMeta(pubkey=PUMP_PROGRAM_ID, is_signer=False, is_writable=False),
    ])
    return accounts


def build_buy_instruction(curve: CurveState, user: Pubkey, token_amount: int,
                          max_sol_cost: int) -> Instruction:
    """
    Build a buy instruction.

    Args:
        curve: Pool snapshot
        user: Buying wallet, which signs
        token_amount: Tokens to receive
        max_sol_cost: Maximum lamports the wallet accepts to pay

    Returns:
        Instruction for the AMM program
    """
    data = _SWAP_ARGS.pack(BUY_DISCRIMINATOR, token_amount, max_sol_cost)
    return Instruction(PUMP_PROGRAM_ID, data, _swap_accounts(curve, user, is_buy=True))


def build_sell_instruction(curve: CurveState, user: Pubkey, token_amount: int,
                           min_sol_output: int) -> Instruction:
    """
    Build a sell instruction.

    Args:
        curve: Pool snapshot
        user: Selling wallet, which signs
        token_amount: Tokens to sell
        min_sol_output: Minimum lamports the wallet accepts to receive

    Returns:
        Instruction for the AMM program
    """
    data = _SWAP_ARGS.pack(SELL_DISCRIMINATOR, token_amount, min_sol_output)
    return Instruction(PUMP_PROGRAM_ID, data, _swap_accounts(curve, user, is_buy=False))


def static_program_accounts():
    """Accounts every swap references regardless of wallet or mint."""
    return [
        RENT_SYSVAR,
        GLOBAL_ACCOUNT,
        FEE_RECIPIENT,
        SYSTEM_PROGRAM_ID,
        ASSOCIATED_TOKEN_PROGRAM_ID,
        TOKEN_PROGRAM_ID,
        EVENT_AUTHORITY,
        PUMP_PROGRAM_ID,
    ]


def wallet_accounts(owner: Pubkey, mint: Pubkey):
    """A wallet together with its token account and wrapped SOL account."""
    return [
        owner,
        get_associated_token_address(owner, mint),
        get_associated_token_address(owner, WRAPPED_SOL_MINT),
    ]
