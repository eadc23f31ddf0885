import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv import load_dotenv

from rangebot.errors import InvalidConfiguration

# Uniswap V4 contracts on Base
POOL_MANAGER = "0x498581fF718922c3f8e6A244956aF099B2652b2b"
POSITION_MANAGER = "0x7C5f5A4bBd8fD63184577525326123B519429bDc"
STATE_VIEW = "0xA3c0c9b65baD0b08107Aa264b0f3dB444b867A71"
PERMIT2 = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

# Tokens
ETH_ADDRESS = "0x0000000000000000000000000000000000000000"  # Native ETH (currency0, base)
USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"  # 6 decimals (currency1, quote)
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Token decimals
ETH_DECIMALS = 18
USDC_DECIMALS = 6

# V4 PositionManager action codes
MINT_POSITION = 0x02
BURN_POSITION = 0x03
CLOSE_CURRENCY = 0x12
SWEEP = 0x14

# Minimum base balance that must always stay in the wallet for gas
FEE_SAFETY_FLOOR = 0.01

# Block explorer used for links in notifications
DEFAULT_EXPLORER_URL = "https://basescan.org"


def load_environment(env_file: str | None = None) -> None:
    """Load a .env file into os.environ.

    override=False means Docker/shell env vars take precedence over .env.
    """
    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    """Runtime tunables for one pool and one wallet."""

    private_key: str
    rpc_url: str = "http://localhost:8545"
    expected_chain_id: int = 8453

    base_address: str = ETH_ADDRESS
    quote_address: str = USDC_ADDRESS
    base_decimals: int = ETH_DECIMALS
    quote_decimals: int = USDC_DECIMALS
    pool_fee: int = 500
    tick_spacing: int = 10
    hooks_address: str = ZERO_ADDRESS
    pool_id: str = ""

    position_manager: str = POSITION_MANAGER
    state_view: str = STATE_VIEW
    permit2: str = PERMIT2

    width_percent: float = 5.0
    min_base_reserve: float = 0.05
    check_interval_minutes: float = 5.0
    max_retry_attempts: int = 3
    retry_base_delay: float = 1.0
    confirmation_timeout: float = 60.0
    tx_deadline_seconds: int = 600

    min_base_for_position: float = 0.1
    min_quote_for_position: float = 10.0
    min_base_amount: float = 0.01
    min_quote_amount: float = 5.0
    deploy_fraction: float = 0.98
    slippage_percent: float = 1.0

    discord_webhook_url: str | None = None
    explorer_url: str = DEFAULT_EXPLORER_URL
    log_level: str = "INFO"
    data_dir: Path = field(default_factory=lambda: Path("data"))

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from os.environ; raises InvalidConfiguration."""
        raw = {
            "private_key": ("WALLET_PRIVATE_KEY", str),
            "rpc_url": ("RPC_URL", str),
            "expected_chain_id": ("EXPECTED_CHAIN_ID", int),
            "pool_fee": ("POOL_FEE", int),
            "tick_spacing": ("TICK_SPACING", int),
            "hooks_address": ("HOOKS_ADDRESS", str),
            "pool_id": ("POOL_ID", str),
            "width_percent": ("PRICE_RANGE_PERCENT", float),
            "min_base_reserve": ("MIN_BASE_RESERVE", float),
            "check_interval_minutes": ("CHECK_INTERVAL_MINUTES", float),
            "max_retry_attempts": ("MAX_RETRY_ATTEMPTS", int),
            "retry_base_delay": ("RETRY_BASE_DELAY_SECONDS", float),
            "confirmation_timeout": ("CONFIRMATION_TIMEOUT_SECONDS", float),
            "tx_deadline_seconds": ("TX_DEADLINE_SECONDS", int),
            "min_base_for_position": ("MIN_BASE_FOR_POSITION", float),
            "min_quote_for_position": ("MIN_QUOTE_FOR_POSITION", float),
            "min_base_amount": ("MIN_BASE_AMOUNT", float),
            "min_quote_amount": ("MIN_QUOTE_AMOUNT", float),
            "deploy_fraction": ("DEPLOY_FRACTION", float),
            "slippage_percent": ("SLIPPAGE_PERCENT", float),
            "discord_webhook_url": ("DISCORD_WEBHOOK_URL", str),
            "explorer_url": ("EXPLORER_URL", str),
            "log_level": ("LOG_LEVEL", str),
            "data_dir": ("DATA_DIR", Path),
        }
        kwargs = {}
        problems = []
        for attr, (env_name, convert) in raw.items():
            value = _env(env_name)
            if value is None:
                continue
            try:
                kwargs[attr] = convert(value)
            except ValueError:
                problems.append(f"{env_name}={value!r} is not a valid {convert.__name__}")

        if "private_key" not in kwargs:
            problems.append("WALLET_PRIVATE_KEY is required")
        if problems:
            raise InvalidConfiguration("; ".join(problems))

        settings = cls(**kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        problems = []
        if not self.private_key:
            problems.append("WALLET_PRIVATE_KEY is required")
        if not self.rpc_url:
            problems.append("RPC_URL must not be empty")
        if self.width_percent <= 0:
            problems.append("PRICE_RANGE_PERCENT must be greater than 0")
        if self.width_percent >= 100:
            problems.append("PRICE_RANGE_PERCENT must be below 100")
        if self.min_base_reserve < FEE_SAFETY_FLOOR:
            problems.append(
                f"MIN_BASE_RESERVE must be at least {FEE_SAFETY_FLOOR} for transaction fees"
            )
        if self.check_interval_minutes < 1:
            problems.append("CHECK_INTERVAL_MINUTES must be at least 1 minute")
        if self.max_retry_attempts < 1:
            problems.append("MAX_RETRY_ATTEMPTS must be at least 1")
        if self.retry_base_delay < 0:
            problems.append("RETRY_BASE_DELAY_SECONDS must not be negative")
        if self.confirmation_timeout <= 0:
            problems.append("CONFIRMATION_TIMEOUT_SECONDS must be greater than 0")
        if self.tx_deadline_seconds <= 0:
            problems.append("TX_DEADLINE_SECONDS must be greater than 0")
        if self.tick_spacing < 1:
            problems.append("TICK_SPACING must be at least 1")
        for name in (
            "min_base_for_position",
            "min_quote_for_position",
            "min_base_amount",
            "min_quote_amount",
        ):
            if getattr(self, name) < 0:
                problems.append(f"{name.upper()} must not be negative")
        if not 0 < self.deploy_fraction <= 1:
            problems.append("DEPLOY_FRACTION must be in (0, 1]")
        if not 0 <= self.slippage_percent < 100:
            problems.append("SLIPPAGE_PERCENT must be in [0, 100)")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            problems.append(f"LOG_LEVEL {self.log_level!r} is not a logging level")
        if self.pool_id and len(self.pool_id.removeprefix("0x")) != 64:
            problems.append("POOL_ID must be a 32-byte hex string")
        if problems:
            raise InvalidConfiguration("; ".join(problems))

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval_minutes * 60

    @property
    def decimal_shift(self) -> int:
        """Decimal difference applied when turning raw pool prices into human prices."""
        return self.base_decimals - self.quote_decimals

    @property
    def positions_file(self) -> Path:
        return Path(self.data_dir) / "positions.json"

    @property
    def journal_file(self) -> Path:
        return Path(self.data_dir) / "events.jsonl"

    def resolved_pool_id(self) -> str:
        return self.pool_id or compute_pool_id(self)

    def redacted(self) -> dict:
        """Settings as a dict with secrets masked, for startup logging."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in ("private_key", "discord_webhook_url") and value:
                value = "***"
            out[f.name] = str(value) if isinstance(value, Path) else value
        return out


def build_pool_key(settings: Settings) -> tuple:
    """Returns (currency0, currency1, fee, tickSpacing, hooks) as a tuple.

    Currencies are sorted by address, so native ETH (0x0) is always currency0.
    """
    from eth_utils import to_checksum_address

    currency0 = to_checksum_address(settings.base_address)
    currency1 = to_checksum_address(settings.quote_address)
    if int(currency0, 16) > int(currency1, 16):
        currency0, currency1 = currency1, currency0

    return (
        currency0,
        currency1,
        settings.pool_fee,
        settings.tick_spacing,
        to_checksum_address(settings.hooks_address),
    )


def compute_pool_id(settings: Settings) -> str:
    from eth_abi import encode
    from eth_utils import keccak

    pool_key_encoded = encode(
        ["address", "address", "uint24", "int24", "address"],
        list(build_pool_key(settings)),
    )
    return "0x" + keccak(pool_key_encoded).hex()
