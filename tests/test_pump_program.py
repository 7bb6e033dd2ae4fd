import struct

import pytest
from solders.keypair import Keypair
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from volumebot.errors import InvalidCurveStateError
from volumebot.solana.pump_program import (
    BUY_DISCRIMINATOR,
    EVENT_AUTHORITY,
    FEE_RECIPIENT,
    GLOBAL_ACCOUNT,
    PUMP_PROGRAM_ID,
    SELL_DISCRIMINATOR,
    SYSTEM_PROGRAM_ID,
    build_buy_instruction,
    build_sell_instruction,
    decode_curve_state,
    encode_curve_state,
    find_creator_vault,
    find_pool_accounts,
)


def test_decode_pool_account(mint):
    creator = Keypair().pubkey()
    data = encode_curve_state(
        1_000_000_000, 30_000_000_000, creator,
        real_token_reserves=800_000_000, real_sol_reserves=5_000_000,
        token_total_supply=1_000_000_000_000_000, discriminator=42,
    )

    curve = decode_curve_state(mint, data + b"\x00" * 16)

    bonding_curve, associated = find_pool_accounts(mint)
    assert curve.bonding_curve == bonding_curve
    assert curve.associated_bonding_curve == associated
    assert curve.creator == creator
    assert curve.virtual_token_reserves == 1_000_000_000
    assert curve.virtual_sol_reserves == 30_000_000_000
    assert curve.real_token_reserves == 800_000_000
    assert curve.token_total_supply == 1_000_000_000_000_000
    assert curve.complete is False


def test_decode_rejects_zero_reserves(mint):
    data = encode_curve_state(0, 30_000_000_000, Keypair().pubkey())
    with pytest.raises(InvalidCurveStateError):
        decode_curve_state(mint, data)


def test_decode_rejects_truncated_account(mint):
    data = encode_curve_state(1, 1, Keypair().pubkey())
    with pytest.raises(InvalidCurveStateError):
        decode_curve_state(mint, data[:60])


def test_buy_instruction_layout(curve):
    user = Keypair().pubkey()
    ix = build_buy_instruction(curve, user, 3_333_333, 150_000_000)

    assert ix.program_id == PUMP_PROGRAM_ID
    assert bytes(ix.data) == struct.pack("<QQQ", BUY_DISCRIMINATOR, 3_333_333, 150_000_000)
    assert [meta.pubkey for meta in ix.accounts] == [
        GLOBAL_ACCOUNT,
        FEE_RECIPIENT,
        curve.mint,
        curve.bonding_curve,
        curve.associated_bonding_curve,
        get_associated_token_address(user, curve.mint),
        user,
        SYSTEM_PROGRAM_ID,
        TOKEN_PROGRAM_ID,
        find_creator_vault(curve.creator),
        EVENT_AUTHORITY,
        PUMP_PROGRAM_ID,
    ]
    signers = [meta.pubkey for meta in ix.accounts if meta.is_signer]
    assert signers == [user]


def test_sell_instruction_puts_creator_vault_before_token_program(curve):
    user = Keypair().pubkey()
    ix = build_sell_instruction(curve, user, 1_000, 10)

    assert bytes(ix.data)[:8] == struct.pack("<Q", SELL_DISCRIMINATOR)
    keys = [meta.pubkey for meta in ix.accounts]
    assert keys[8] == find_creator_vault(curve.creator)
    assert keys[9] == TOKEN_PROGRAM_ID
    assert len(keys) == 12
