"""
Event sinks for rebalancer lifecycle events.

Sinks are fire-and-forget from the agent's point of view: FanoutSink isolates
each child and only logs its failures.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Protocol

import requests

from rangebot.config import DEFAULT_EXPLORER_URL
from rangebot.models import (
    BalancesChanged,
    BotStarted,
    BotStopped,
    Event,
    OperationFailed,
    PositionClosed,
    PositionOpened,
    PriceUpdate,
)

logger = logging.getLogger(__name__)

# Discord embed colors
COLOR_SUCCESS = 0x2ECC71
COLOR_WARNING = 0xE67E22
COLOR_ERROR = 0xE74C3C
COLOR_INFO = 0x3498DB
COLOR_DEFAULT = 0x7289DA


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class LoggingSink:
    """One log line per event."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def emit(self, event: Event) -> None:
        if isinstance(event, OperationFailed):
            self.log.error("EVENT %s: %s: %s", event.kind, event.context, event.error)
            return
        fields = " ".join(
            f"{k}={v}" for k, v in event.to_dict().items() if k != "kind"
        )
        self.log.info("EVENT %s %s", event.kind, fields)


class JournalSink:
    """Appends each event as a JSON line (events.jsonl)."""

    def __init__(self, path):
        self.path = Path(path)

    def emit(self, event: Event) -> None:
        record = {"ts": datetime.now(timezone.utc).isoformat(), **event.to_dict()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")


class DiscordWebhookSink:
    """Posts events to a Discord webhook as embeds."""

    def __init__(
        self,
        webhook_url: str,
        bot_name: str = "Range Rebalancer",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        explorer_url: str = DEFAULT_EXPLORER_URL,
    ):
        self.webhook_url = webhook_url
        self.bot_name = bot_name
        self.timeout = timeout
        self.session = session or requests.Session()
        self.explorer_url = explorer_url.rstrip("/")

    def emit(self, event: Event) -> None:
        payload = {"username": self.bot_name, "embeds": [self.format_embed(event)]}
        resp = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        resp.raise_for_status()

    def format_embed(self, event: Event) -> dict:
        title, color, fields = _describe(event, self.explorer_url)
        return {
            "title": title,
            "color": color,
            "fields": [{"name": n, "value": v, "inline": True} for n, v in fields],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _describe(
    event: Event, explorer_url: str = DEFAULT_EXPLORER_URL
) -> tuple[str, int, list[tuple[str, str]]]:
    if isinstance(event, PriceUpdate):
        return (
            "📊 Price Update",
            COLOR_INFO,
            [
                ("Current Price", f"${event.current:.4f}"),
                ("Target Range", f"${event.lower_bound:.4f} - ${event.upper_bound:.4f}"),
            ],
        )
    if isinstance(event, (PositionOpened, PositionClosed)):
        opened = isinstance(event, PositionOpened)
        fields = [
            ("Position ID", event.id),
            ("Price Range", f"${event.range.lower_bound:.4f} - ${event.range.upper_bound:.4f}"),
            ("Base Amount", f"{event.base_amount:.4f}"),
            ("Quote Amount", f"{event.quote_amount:.2f}"),
        ]
        if event.signature:
            tx_url = f"{explorer_url}/tx/{event.signature}"
            fields.append(("Transaction", _link(event.signature, tx_url)))
        if opened:
            return "🔵 Liquidity Position Created", COLOR_INFO, fields
        return "🟠 Liquidity Position Withdrawn", COLOR_WARNING, fields
    if isinstance(event, BalancesChanged):
        return (
            "💰 Wallet Balance Update",
            COLOR_DEFAULT,
            [("Base", f"{event.base:.4f}"), ("Quote", f"{event.quote:.2f}")],
        )
    if isinstance(event, OperationFailed):
        return (
            "❌ Error",
            COLOR_ERROR,
            [("Context", event.context), ("Error", event.error[:1000] or "unknown")],
        )
    if isinstance(event, BotStarted):
        return (
            "🚀 Bot Started",
            COLOR_SUCCESS,
            [
                ("Network", event.network),
                ("Wallet", _link(event.wallet, f"{explorer_url}/address/{event.wallet}")),
                ("Pool", f"`{event.pool_id[:10]}...`"),
                ("Price Range", f"±{event.width_percent}%"),
            ],
        )
    if isinstance(event, BotStopped):
        return "🛑 Bot Stopped", COLOR_WARNING, [("Reason", event.reason)]
    return event.kind, COLOR_DEFAULT, []


def _link(value: str, url: str) -> str:
    return f"[{value[:10]}...]({url})"


class FanoutSink:
    """Delivers to every child; a failing child is logged and skipped."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: Event) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(
                    "Event sink %s failed on %s: %s", type(sink).__name__, event.kind, e
                )
