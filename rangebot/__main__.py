#!/usr/bin/env python3
"""Entry point: wire the collaborators and run the rebalance loop."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import replace

from rangebot.agent import RebalanceAgent
from rangebot.chain import ChainClient
from rangebot.config import Settings, load_environment
from rangebot.errors import InvalidConfiguration, RangeBotError
from rangebot.logs import setup_logging
from rangebot.lp_manager import LPManager
from rangebot.models import BotStarted, BotStopped
from rangebot.notifications import DiscordWebhookSink, FanoutSink, JournalSink, LoggingSink
from rangebot.positions import PositionStore, PositionTracker
from rangebot.state_reader import StateReader
from rangebot.tx_submitter import TransactionSubmitter
from rangebot.wallet import Wallet, load_account

logger = logging.getLogger("rangebot.main")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep a CLMM position around the pool price")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument(
        "--skip-approvals",
        action="store_true",
        help="Do not check/send token approvals at startup",
    )
    return parser.parse_args(argv)


def build_sink(settings: Settings) -> FanoutSink:
    sinks = [LoggingSink(), JournalSink(settings.journal_file)]
    if settings.discord_webhook_url:
        sinks.append(
            DiscordWebhookSink(settings.discord_webhook_url, explorer_url=settings.explorer_url)
        )
    return FanoutSink(sinks)


def main(argv=None) -> int:
    args = parse_args(argv)
    load_environment(args.env_file)

    try:
        settings = Settings.from_env()
        if args.log_level:
            settings = replace(settings, log_level=args.log_level)
            settings.validate()
    except InvalidConfiguration as e:
        setup_logging("INFO")
        logger.error("Configuration error: %s", e)
        return 2

    setup_logging(settings.log_level, settings.data_dir)
    logger.debug("Settings: %s", settings.redacted())

    stop_event = threading.Event()

    def _request_stop(signum, _frame):
        logger.info("Received signal %d, shutting down gracefully...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    sink = build_sink(settings)
    try:
        account = load_account(settings.private_key)
        chain = ChainClient.connect(settings.rpc_url, settings.expected_chain_id)
    except (InvalidConfiguration, ConnectionError) as e:
        logger.error("Fatal error during initialization: %s", e)
        return 1
    logger.info("Agent address: %s", account.address)

    submitter = TransactionSubmitter(
        chain,
        max_attempts=settings.max_retry_attempts,
        base_delay=settings.retry_base_delay,
        confirmation_timeout=settings.confirmation_timeout,
        stop_event=stop_event,
    )
    oracle = StateReader(chain.w3, settings)
    wallet = Wallet(chain.w3, account, settings)
    lp_manager = LPManager(chain.w3, account, settings, submitter)
    tracker = PositionTracker(
        chain.w3, settings, PositionStore(settings.positions_file), state_reader=oracle
    )

    if not args.skip_approvals:
        try:
            lp_manager.ensure_approvals()
        except RangeBotError as e:
            logger.error("Token approval setup failed: %s", e)
            return 1

    agent = RebalanceAgent(
        settings, oracle, tracker, wallet, lp_manager, sink=sink, stop_event=stop_event
    )
    sink.emit(
        BotStarted(
            network=chain.network_name(),
            pool_id=settings.resolved_pool_id(),
            width_percent=settings.width_percent,
            wallet=account.address,
        )
    )

    reason = "single cycle completed" if args.once else "shutdown requested"
    try:
        agent.run(stop_event, once=args.once)
    except Exception as e:
        logger.error("Unhandled error in agent loop: %s", e, exc_info=True)
        reason = f"crashed: {type(e).__name__}: {e}"
        return 1
    finally:
        sink.emit(BotStopped(reason=reason))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
