import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from volumebot.errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()

# RPC / relay configuration
RPC_URL = os.getenv("RPC_URL")
RELAY_URL = os.getenv("RELAY_URL", "https://mainnet.block-engine.jito.wtf")

# Operator wallet (fee payer, collection target) as a base58 secret key
PRIVATE_KEY = os.getenv("PRIVATE_KEY")

# Token traded by the swap cycle
TOKEN_MINT = os.getenv("TOKEN_MINT")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Persisted state
WALLETS_FILE = os.getenv("WALLETS_FILE", "wallets.json")
LUT_FILE = os.getenv("LUT_FILE", "lut.json")
WALLET_COUNT = int(os.getenv("WALLET_COUNT", "10"))

# Operational defaults
DISTRIBUTE_AMOUNT_LAMPORTS = int(os.getenv("DISTRIBUTE_AMOUNT_LAMPORTS", "4000000"))  # 0.004 SOL
RELAY_TIP_LAMPORTS = int(os.getenv("RELAY_TIP_LAMPORTS", "1000000"))
SLIPPAGE = float(os.getenv("SLIPPAGE", "0.5"))
SWAP_SLEEP_SECONDS = float(os.getenv("SWAP_SLEEP_SECONDS", "5"))

# Overflow guard for sub-wallets holding more than their working range
OVERFLOW_SINK_ADDRESS = os.getenv("OVERFLOW_SINK_ADDRESS")
OVERFLOW_THRESHOLD_LAMPORTS = int(os.getenv("OVERFLOW_THRESHOLD_LAMPORTS", "500000000"))  # 0.5 SOL
OVERFLOW_RETAIN_LAMPORTS = int(os.getenv("OVERFLOW_RETAIN_LAMPORTS", "5000000"))  # 0.005 SOL

# Chain limits
LAMPORTS_PER_SOL = 1_000_000_000
MAX_TX_SIZE = 1232
MAX_LOOKUP_TABLE_ADDRESSES = 256

# Rent for a token account, reserved per wallet before it may swap
FEE_ATA_LAMPORTS = 2_039_280
LUT_CREATION_COST_LAMPORTS = 2_500_000  # 0.0025 SOL

# Wallets per compiled transaction, by operation
DISTRIBUTE_GROUP_SIZE = 20
COLLECT_GROUP_SIZE = 8
SWAP_GROUP_SIZE = 3
SELL_GROUP_SIZE = 4

# Lookup table extension
LUT_EXTEND_CHUNK_SIZE = 10
LUT_SETTLE_DELAY_SECONDS = 25
LUT_RETRIEVE_TIMEOUT_SECONDS = 60

# Swap sizing
SWAP_FRACTION_MIN = 0.6
SWAP_FRACTION_MAX = 0.8
MIN_SWAP_LAMPORTS = 1000

# Compute budget
COMPUTE_UNITS_PER_SWAP = 200_000
MAX_COMPUTE_UNITS = 1_400_000
COMPUTE_UNIT_PRICE_MICRO_LAMPORTS = 100_000

# Submission
SEND_MAX_RETRIES = 3
BUNDLE_POLL_INTERVAL = 1.0  # seconds
BUNDLE_MAX_CHECKS = 40
CONFIRM_POLL_INTERVAL = 2.0  # seconds
CONFIRM_TIMEOUT = 90.0  # seconds
RETRY_MAX_ATTEMPTS = 3
RETRY_BACKOFF = 2.0  # seconds

MAX_SLIPPAGE = 0.5


def validate_slippage(slippage: float) -> float:
    """
    Validate a slippage fraction.

    Args:
        slippage: Fraction of the quoted amount the wallet accepts to lose

    Returns:
        The validated slippage

    Raises:
        ConfigurationError: If slippage is outside (0, 0.5]
    """
    if not (0 < slippage <= MAX_SLIPPAGE):
        raise ConfigurationError(
            f"Slippage must be > 0 and <= {MAX_SLIPPAGE}, got {slippage}"
        )
    return slippage


@dataclass
class BotConfig:
    """Tunables for one bot session."""
    rpc_url: str
    private_key: str
    token_mint: str
    relay_url: str = RELAY_URL
    slippage: float = SLIPPAGE
    distribute_amount_lamports: int = DISTRIBUTE_AMOUNT_LAMPORTS
    relay_tip_lamports: int = RELAY_TIP_LAMPORTS
    swap_sleep_seconds: float = SWAP_SLEEP_SECONDS
    wallet_count: int = WALLET_COUNT
    wallets_file: str = WALLETS_FILE
    lut_file: str = LUT_FILE
    overflow_sink_address: Optional[str] = OVERFLOW_SINK_ADDRESS
    overflow_threshold_lamports: int = OVERFLOW_THRESHOLD_LAMPORTS
    overflow_retain_lamports: int = OVERFLOW_RETAIN_LAMPORTS

    def __post_init__(self):
        """Validate configuration before anything touches the network."""
        if not self.rpc_url:
            raise ConfigurationError("RPC_URL is not set")
        if not self.private_key:
            raise ConfigurationError("PRIVATE_KEY is not set")
        if not self.token_mint:
            raise ConfigurationError("TOKEN_MINT is not set")
        try:
            Pubkey.from_string(self.token_mint)
        except ValueError:
            raise ConfigurationError(f"Invalid token mint address: {self.token_mint}")
        if self.overflow_sink_address:
            try:
                Pubkey.from_string(self.overflow_sink_address)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid overflow sink address: {self.overflow_sink_address}"
                )
        if self.distribute_amount_lamports <= FEE_ATA_LAMPORTS:
            raise ConfigurationError(
                f"Distribute amount per wallet must be larger than "
                f"{FEE_ATA_LAMPORTS / LAMPORTS_PER_SOL:.5f} SOL to cover fees"
            )
        if self.overflow_retain_lamports >= self.overflow_threshold_lamports:
            raise ConfigurationError("Overflow retain amount must be below the overflow threshold")
        validate_slippage(self.slippage)

    @classmethod
    def from_env(cls, **overrides) -> "BotConfig":
        """
        Build a configuration from environment variables.

        Args:
            **overrides: Values that take precedence over the environment

        Returns:
            Validated BotConfig
        """
        values = {
            "rpc_url": RPC_URL,
            "private_key": PRIVATE_KEY,
            "token_mint": TOKEN_MINT,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
