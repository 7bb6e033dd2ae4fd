import pytest
from solders.keypair import Keypair

from volumebot.config import validate_slippage
from volumebot.errors import ConfigurationError, InvalidCurveStateError
from volumebot.solana.models import CurveState, SwapSide
from volumebot.solana.pricing import quote_buy, quote_sell


def make_curve(token_reserves, sol_reserves):
    key = Keypair().pubkey()
    return CurveState(
        mint=key,
        bonding_curve=key,
        associated_bonding_curve=key,
        creator=key,
        virtual_token_reserves=token_reserves,
        virtual_sol_reserves=sol_reserves,
    )


def test_buy_quote_matches_reference_numbers(curve):
    quote = quote_buy(100_000_000, curve, 0.5)

    assert quote.side == SwapSide.BUY
    assert quote.input_amount == 100_000_000
    assert quote.estimated_output_amount == 3_333_333
    assert quote.worst_acceptable_amount == 150_000_000


def test_sell_quote_floors_min_output(curve):
    quote = quote_sell(3_333_333, curve, 0.5)

    assert quote.side == SwapSide.SELL
    # 3_333_333 * 30 = 99_999_990
    assert quote.estimated_output_amount == 99_999_990
    assert quote.worst_acceptable_amount == 49_999_995


@pytest.mark.parametrize("token_reserves,sol_reserves", [(0, 30_000_000_000), (1_000_000_000, 0)])
def test_zero_reserve_blocks_pricing(token_reserves, sol_reserves):
    curve = make_curve(token_reserves, sol_reserves)

    with pytest.raises(InvalidCurveStateError):
        quote_buy(1_000_000, curve, 0.1)
    with pytest.raises(InvalidCurveStateError):
        quote_sell(1_000_000, curve, 0.1)


def test_selling_bought_tokens_never_returns_more_than_spent():
    reserves = [
        (1_073_000_000_000_000, 30_000_000_000),
        (1_000_000_000, 30_000_000_000),
        (7, 13),
        (999_999_937, 1_000_003),
    ]
    amounts = [1, 999, 1_000_001, 123_456_789, 5_000_000_000]
    for token_reserves, sol_reserves in reserves:
        curve = make_curve(token_reserves, sol_reserves)
        for amount in amounts:
            tokens = quote_buy(amount, curve, 0.01).estimated_output_amount
            native_back = quote_sell(tokens, curve, 0.01).estimated_output_amount
            assert native_back <= amount


def test_slippage_bounds_are_monotonic(curve):
    slippages = [0.01, 0.05, 0.1, 0.25, 0.5]
    max_costs = [quote_buy(12_345_678, curve, s).worst_acceptable_amount for s in slippages]
    min_outputs = [quote_sell(7_654_321, curve, s).worst_acceptable_amount for s in slippages]

    assert max_costs == sorted(max_costs)
    assert min_outputs == sorted(min_outputs, reverse=True)


@pytest.mark.parametrize("slippage", [0, -0.1, 0.51, 1.0])
def test_slippage_outside_range_is_a_configuration_error(slippage):
    with pytest.raises(ConfigurationError):
        validate_slippage(slippage)


def test_slippage_upper_bound_is_inclusive():
    assert validate_slippage(0.5) == 0.5
