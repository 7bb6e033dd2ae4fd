#!/usr/bin/env python
import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from loguru import logger

from volumebot.config import BotConfig, LAMPORTS_PER_SOL, LOG_LEVEL
from volumebot.errors import VolumeBotError
from volumebot.solana.integration import VolumeOrchestrator
from volumebot.solana.models import OperationOutcome


def setup_logging(level: str = LOG_LEVEL):
    """Configure structured logging with loguru."""
    logger.remove()  # Remove default handler
    logger.add(
        "logs/volumebot_{time}.log",
        rotation="1 day",
        retention="14 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
        serialize=True,  # JSON formatting for structured logs
    )

    # Also send logs to stdout
    logger.add(
        lambda msg: print(msg, end=""),
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    # Redirect httpx / solana logging to loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def render_outcome(outcome: OperationOutcome) -> str:
    """Human readable summary of an operation outcome."""
    status = "OK" if outcome.success else "FAILED"
    lines = [f"{outcome.operation}: {status}"]
    for result in outcome.results:
        lines.append(f"  {result.label}: {result.signature} ({result.delivery_path.value})")
    if outcome.skipped_wallets:
        lines.append(f"  skipped wallets: {outcome.skipped_wallets}")
    if outcome.dropped_groups:
        lines.append(f"  dropped groups: {outcome.dropped_groups}")
    for error in outcome.errors:
        lines.append(f"  error: {error}")
    if outcome.curve:
        lines.append(
            f"  reserves: {outcome.curve.virtual_token_reserves} tokens / "
            f"{outcome.curve.virtual_sol_reserves / LAMPORTS_PER_SOL:.4f} SOL"
        )
    if outcome.lookup_table_address:
        lines.append(f"  lookup table: {outcome.lookup_table_address}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="volumebot", description="Bonding curve volume bot")
    parser.add_argument("--slippage", type=float, help="Slippage fraction in (0, 0.5]")
    parser.add_argument("--max-wallets", type=int, help="Use at most this many wallets")
    parser.add_argument("--log-level", default=LOG_LEVEL)

    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate-wallets", help="Generate and persist sub-wallets")
    generate.add_argument("--count", type=int, help="Number of wallets")

    sub.add_parser("lut", help="Create or load the lookup table and extend it")

    curve = sub.add_parser("curve", help="Show the pool reserves")
    curve.add_argument("--mint", help="Token mint, defaults to TOKEN_MINT")

    distribute = sub.add_parser("distribute", help="Fund every sub-wallet from the operator")
    distribute.add_argument("--amount-sol", type=float, help="SOL per wallet")

    sub.add_parser("collect", help="Move all sub-wallet SOL back to the operator")

    swap = sub.add_parser("swap", help="Run swap cycles until interrupted")
    swap.add_argument("--cycles", type=int, help="Stop after this many cycles")

    sub.add_parser("sell-all", help="Sell every sub-wallet's tokens")
    return parser


async def main(args: argparse.Namespace) -> int:
    """Run one command and print its outcome."""
    config = BotConfig.from_env(slippage=args.slippage)
    orchestrator = VolumeOrchestrator(config)

    try:
        if args.command == "generate-wallets":
            addresses = orchestrator.generate_wallets(args.count)
            print(f"Generated {len(addresses)} wallets in {config.wallets_file}")
            return 0

        session = await orchestrator.open_session(args.max_wallets)

        if args.command == "lut":
            outcomes = [await orchestrator.create_or_load_lookup_table(session)]
        elif args.command == "curve":
            outcomes = [await orchestrator.refresh_curve_state(session, args.mint)]
        elif args.command == "distribute":
            amount = int(args.amount_sol * LAMPORTS_PER_SOL) if args.amount_sol else None
            outcomes = [await orchestrator.distribute(session, amount)]
        elif args.command == "collect":
            outcomes = [await orchestrator.collect(session)]
        elif args.command == "swap":
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, orchestrator.request_stop, session)
            except NotImplementedError:
                logger.warning("Signal handlers are not supported here, stop with the cycle limit")
            outcomes = await orchestrator.run_volume_loop(session, args.cycles)
        else:
            outcomes = [await orchestrator.sell_all(session)]
    finally:
        await orchestrator.close()

    for outcome in outcomes:
        print(render_outcome(outcome))
    return 0 if all(o.success for o in outcomes) else 1


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, set up logging and run the command."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        return asyncio.run(main(args))
    except VolumeBotError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(run())
