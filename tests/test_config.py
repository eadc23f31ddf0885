from pathlib import Path

import pytest

from rangebot.config import Settings, build_pool_key, compute_pool_id
from rangebot.errors import InvalidConfiguration

from conftest import TEST_PRIVATE_KEY, make_settings

ENV_NAMES = [
    "WALLET_PRIVATE_KEY",
    "RPC_URL",
    "EXPECTED_CHAIN_ID",
    "POOL_FEE",
    "TICK_SPACING",
    "HOOKS_ADDRESS",
    "POOL_ID",
    "PRICE_RANGE_PERCENT",
    "MIN_BASE_RESERVE",
    "CHECK_INTERVAL_MINUTES",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_BASE_DELAY_SECONDS",
    "CONFIRMATION_TIMEOUT_SECONDS",
    "TX_DEADLINE_SECONDS",
    "MIN_BASE_FOR_POSITION",
    "MIN_QUOTE_FOR_POSITION",
    "MIN_BASE_AMOUNT",
    "MIN_QUOTE_AMOUNT",
    "DEPLOY_FRACTION",
    "SLIPPAGE_PERCENT",
    "DISCORD_WEBHOOK_URL",
    "EXPLORER_URL",
    "LOG_LEVEL",
    "DATA_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WALLET_PRIVATE_KEY", TEST_PRIVATE_KEY)
    return monkeypatch


def test_from_env_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.width_percent == 5.0
    assert settings.min_base_reserve == 0.05
    assert settings.check_interval_seconds == 300
    assert settings.max_retry_attempts == 3
    assert settings.discord_webhook_url is None
    assert settings.explorer_url == "https://basescan.org"
    assert settings.positions_file == Path("data") / "positions.json"


def test_from_env_overrides(clean_env):
    clean_env.setenv("PRICE_RANGE_PERCENT", "2.5")
    clean_env.setenv("CHECK_INTERVAL_MINUTES", "10")
    clean_env.setenv("MAX_RETRY_ATTEMPTS", "5")
    clean_env.setenv("DATA_DIR", "/tmp/rangebot-test")
    clean_env.setenv("DISCORD_WEBHOOK_URL", "  ")
    clean_env.setenv("EXPLORER_URL", "https://sepolia.basescan.org")

    settings = Settings.from_env()

    assert settings.width_percent == 2.5
    assert settings.check_interval_seconds == 600
    assert settings.max_retry_attempts == 5
    assert settings.journal_file == Path("/tmp/rangebot-test/events.jsonl")
    assert settings.discord_webhook_url is None
    assert settings.explorer_url == "https://sepolia.basescan.org"


def test_missing_private_key(clean_env):
    clean_env.delenv("WALLET_PRIVATE_KEY")

    with pytest.raises(InvalidConfiguration, match="WALLET_PRIVATE_KEY"):
        Settings.from_env()


def test_non_numeric_value(clean_env):
    clean_env.setenv("MAX_RETRY_ATTEMPTS", "three")

    with pytest.raises(InvalidConfiguration, match="MAX_RETRY_ATTEMPTS"):
        Settings.from_env()


@pytest.mark.parametrize(
    "name,value",
    [
        ("PRICE_RANGE_PERCENT", "0"),
        ("PRICE_RANGE_PERCENT", "-3"),
        ("PRICE_RANGE_PERCENT", "100"),
        ("MIN_BASE_RESERVE", "0.001"),
        ("CHECK_INTERVAL_MINUTES", "0.5"),
        ("MAX_RETRY_ATTEMPTS", "0"),
        ("DEPLOY_FRACTION", "1.5"),
        ("LOG_LEVEL", "CHATTY"),
        ("POOL_ID", "0x1234"),
    ],
)
def test_invalid_values_are_rejected(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(InvalidConfiguration, match=name):
        Settings.from_env()


def test_validate_reports_every_problem():
    settings = make_settings(width_percent=0, min_base_reserve=0, check_interval_minutes=0)

    with pytest.raises(InvalidConfiguration) as excinfo:
        settings.validate()

    message = str(excinfo.value)
    assert "PRICE_RANGE_PERCENT" in message
    assert "MIN_BASE_RESERVE" in message
    assert "CHECK_INTERVAL_MINUTES" in message


def test_redacted_masks_secrets():
    settings = make_settings(discord_webhook_url="https://discord.test/hook")

    redacted = settings.redacted()

    assert redacted["private_key"] == "***"
    assert redacted["discord_webhook_url"] == "***"
    assert TEST_PRIVATE_KEY not in str(redacted)


def test_pool_key_sorts_currencies():
    settings = make_settings(
        base_address="0x" + "ff" * 20, quote_address="0x" + "01" * 20, pool_id=""
    )

    currency0, currency1, fee, spacing, _ = build_pool_key(settings)

    assert int(currency0, 16) < int(currency1, 16)
    assert (fee, spacing) == (500, 10)


def test_pool_id_is_derived_when_not_configured():
    settings = make_settings(pool_id="")

    pool_id = settings.resolved_pool_id()

    assert pool_id == compute_pool_id(settings)
    assert pool_id.startswith("0x")
    assert len(pool_id) == 66
    assert make_settings(pool_id="0x" + "cd" * 32).resolved_pool_id() == "0x" + "cd" * 32
