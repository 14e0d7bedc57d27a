"""Webhook notifications for portfolio events (Discord embed format)."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.models import TradeDirection, TradeRecord

logger = logging.getLogger(__name__)

MAX_EMBED_FIELDS = 25


class NotificationKind(Enum):
    INVEST = "INVEST"
    REBALANCE_MARKET_CAP = "REBALANCE_MARKET_CAP"
    REBALANCE_OVERPERFORMERS = "REBALANCE_OVERPERFORMERS"
    REBALANCE_UNDERPERFORMERS = "REBALANCE_UNDERPERFORMERS"
    ARMED = "ARMED"
    TRAILING_STOP = "TRAILING_STOP"
    CONTINUE = "CONTINUE"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()


@dataclass(frozen=True)
class InvestMessage:
    investment: float
    remaining_funds: float
    coin_count: int
    portfolio_worth: float


@dataclass(frozen=True)
class RebalanceMessage:
    portfolio_worth: float
    trades: List[TradeRecord] = field(default_factory=list)


Payload = Union[InvestMessage, RebalanceMessage, None]

_PAYLOAD_TYPES = {
    NotificationKind.INVEST: InvestMessage,
    NotificationKind.REBALANCE_MARKET_CAP: RebalanceMessage,
    NotificationKind.REBALANCE_OVERPERFORMERS: RebalanceMessage,
    NotificationKind.REBALANCE_UNDERPERFORMERS: RebalanceMessage,
}

# post toggle per kind (NotificationPostConfig attribute)
_POST_KEYS = {
    NotificationKind.INVEST: "invest",
    NotificationKind.REBALANCE_MARKET_CAP: "rebalance_market_cap",
    NotificationKind.REBALANCE_OVERPERFORMERS: "rebalance_overperformers",
    NotificationKind.REBALANCE_UNDERPERFORMERS: "rebalance_underperformers",
    NotificationKind.ARMED: "armed",
    NotificationKind.TRAILING_STOP: "trailing_stop",
    NotificationKind.CONTINUE: "resumed",
}

_COLOR_INVEST = 0x0B8F19
_COLOR_REBALANCE = 0x0B8F8F
_COLOR_ARMED = 0xFFA500
_COLOR_STOP = 0xFF0000
_COLOR_CONTINUE = 0xFFFF00


def currency_decimals(quote: str) -> int:
    quote = quote.upper()
    if quote in ("USDT", "USDC"):
        return 2
    if quote == "BTC":
        return 6
    return 5


def format_currency(value: float, quote: str) -> str:
    """Fixed decimals for the quote currency, thousands separated by spaces."""
    return f"{value:,.{currency_decimals(quote)}f}".replace(",", " ")


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    quote: str
    dry_run: bool
    timeout: float = 5.0
    post: Dict[NotificationKind, bool] = field(default_factory=dict)


class AlertService:
    """
    Fire-and-forget webhook notifier.

    Each message kind carries its own payload type; kinds switched off in the
    post settings are dropped. Delivery runs on a daemon thread and failures
    are logged, never raised to the caller.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Notifications enabled but no webhook URL set; disabling notifications")

    @classmethod
    def from_config(cls, notifications, quote: str) -> "AlertService":
        """
        Build from NotificationsConfig.

        The URL may reference environment variables (``${VAR}``) or be left
        empty and read from ``webhook_env``.
        """
        webhook_url = notifications.webhook_url
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(notifications.webhook_env, "")

        post = {kind: bool(getattr(notifications.post, key)) for kind, key in _POST_KEYS.items()}
        config = AlertConfig(
            enabled=notifications.enabled,
            webhook_url=webhook_url or None,
            quote=quote,
            dry_run=notifications.dry_run,
            timeout=notifications.timeout_seconds,
            post=post,
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def should_post(self, kind: NotificationKind) -> bool:
        return self._enabled and self._config.post.get(kind, True)

    def notify(self, kind: NotificationKind, payload: Payload = None) -> Optional[threading.Thread]:
        """
        Queue a message for delivery.

        Returns:
            The delivery thread, or None when the message was dropped
        """
        expected = _PAYLOAD_TYPES.get(kind)
        if expected is not None and not isinstance(payload, expected):
            raise TypeError(f"{kind.name} requires {expected.__name__}, got {type(payload).__name__}")

        if not self.should_post(kind):
            return None

        message = self.build_payload(kind, payload, self._config.quote)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s", kind.name, json.dumps(message, sort_keys=True))
            return None

        thread = threading.Thread(
            target=self._send,
            args=(kind, message),
            name=f"notify-{kind.value.lower()}",
            daemon=True,
        )
        thread.start()
        return thread

    def _send(self, kind: NotificationKind, message: Dict[str, Any]) -> None:
        data = json.dumps(message).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver %s notification: %s", kind.name, exc)

    @staticmethod
    def build_payload(kind: NotificationKind, payload: Payload, quote: str) -> Dict[str, Any]:
        """Discord webhook body with a single embed."""
        def money(value: float) -> str:
            return f"{format_currency(value, quote)} {quote}"

        fields: List[Dict[str, Any]] = []

        if kind == NotificationKind.INVEST:
            embed = {
                "color": _COLOR_INVEST,
                "title": "New Investment",
                "description": "More coins have been bought and were added to your portfolio.",
            }
            fields = [
                {"name": "Investment", "value": f"{money(payload.investment)} [{payload.coin_count} coins]", "inline": True},
                {"name": "Remaining Funds", "value": money(payload.remaining_funds), "inline": True},
                {"name": "Portfolio Worth", "value": money(payload.portfolio_worth), "inline": True},
            ]
        elif kind in (NotificationKind.REBALANCE_MARKET_CAP,
                      NotificationKind.REBALANCE_OVERPERFORMERS,
                      NotificationKind.REBALANCE_UNDERPERFORMERS):
            reason = {
                NotificationKind.REBALANCE_MARKET_CAP:
                    "Your portfolio has been rebalanced, because one or more coins fell out of the defined **market cap**.",
                NotificationKind.REBALANCE_OVERPERFORMERS: "Coins in your portfolio were **overperforming**.",
                NotificationKind.REBALANCE_UNDERPERFORMERS: "Coins in your portfolio were **underperforming**.",
            }[kind]
            embed = {
                "color": _COLOR_REBALANCE,
                "title": "Portfolio rebalanced",
                "description": f"{reason}\nCurrent portfolio worth is **{money(payload.portfolio_worth)}**.",
            }
            for trade in payload.trades[:MAX_EMBED_FIELDS]:
                name = trade.symbol
                if kind != NotificationKind.REBALANCE_MARKET_CAP:
                    arrow = "▲" if trade.direction == TradeDirection.SELL else "▼"
                    name = f"{trade.symbol} ({arrow} {trade.percentage:.2f}%)"
                fields.append({
                    "name": name,
                    "value": f"{trade.direction.value} for {money(abs(trade.amount))}",
                    "inline": True,
                })
        elif kind == NotificationKind.ARMED:
            embed = {
                "color": _COLOR_ARMED,
                "title": "Trailing stop armed",
                "description": "Your portfolio reached the minimum profit, the trailing stop is now active.",
            }
        elif kind == NotificationKind.TRAILING_STOP:
            embed = {
                "color": _COLOR_STOP,
                "title": "Trailing stop has been hit",
                "description": "Your portfolio has been sold!",
            }
        else:
            embed = {
                "color": _COLOR_CONTINUE,
                "title": "Trading resumed",
                "description": "The bot has resumed its trading activity after the trailing stop had been hit!",
            }

        if fields:
            embed["fields"] = fields
        return {"embeds": [embed]}


__all__ = [
    "AlertConfig",
    "AlertService",
    "InvestMessage",
    "NotificationKind",
    "RebalanceMessage",
    "format_currency",
]
