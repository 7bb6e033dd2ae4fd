"""
Constant-product pricing against a bonding curve snapshot.

All amounts are integers in base units (lamports, raw token units). Slippage
bounds are computed with Decimal so that the floor is exact for the fractions
the bot is configured with.
"""

from decimal import Decimal, ROUND_FLOOR

from volumebot.errors import InvalidCurveStateError
from volumebot.solana.models import CurveState, SwapQuote, SwapSide


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def _check_curve(curve: CurveState):
    if not curve.is_valid:
        raise InvalidCurveStateError(
            f"Cannot price against pool {curve.bonding_curve}: "
            f"virtual reserves are {curve.virtual_token_reserves}/{curve.virtual_sol_reserves}"
        )


def quote_buy(native_amount_in: int, curve: CurveState, slippage: float) -> SwapQuote:
    """
    Quote buying tokens with ``native_amount_in`` lamports.

    Args:
        native_amount_in: Lamports to spend
        curve: Pool snapshot
        slippage: Accepted loss fraction, validated by the caller

    Returns:
        SwapQuote whose worst acceptable amount is the maximum native cost

    Raises:
        InvalidCurveStateError: If either reserve is zero
    """
    _check_curve(curve)
    estimated = native_amount_in * curve.virtual_token_reserves // curve.virtual_sol_reserves
    max_cost = _floor(Decimal(native_amount_in) * (1 + Decimal(str(slippage))))
    return SwapQuote(
        side=SwapSide.BUY,
        input_amount=native_amount_in,
        estimated_output_amount=estimated,
        worst_acceptable_amount=max_cost,
    )


def quote_sell(token_amount_in: int, curve: CurveState, slippage: float) -> SwapQuote:
    """
    Quote selling ``token_amount_in`` tokens for lamports.

    Args:
        token_amount_in: Raw token units to sell
        curve: Pool snapshot
        slippage: Accepted loss fraction, validated by the caller

    Returns:
        SwapQuote whose worst acceptable amount is the minimum native output

    Raises:
        InvalidCurveStateError: If either reserve is zero
    """
    _check_curve(curve)
    estimated = token_amount_in * curve.virtual_sol_reserves // curve.virtual_token_reserves
    min_output = _floor(
        Decimal(token_amount_in) * (1 - Decimal(str(slippage)))
        * Decimal(curve.virtual_sol_reserves) / Decimal(curve.virtual_token_reserves)
    )
    return SwapQuote(
        side=SwapSide.SELL,
        input_amount=token_amount_in,
        estimated_output_amount=estimated,
        worst_acceptable_amount=min_output,
    )
