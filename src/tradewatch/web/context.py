"""Per-app service container stored on ``app.extensions``."""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from tradewatch.config import Settings
from tradewatch.infrastructure.transport import ChangeTransport
from tradewatch.services.publisher import EventPublisher
from tradewatch.services.store import TradingStore

EXTENSION_KEY = "tradewatch"


@dataclass
class Services:
    settings: Settings
    store: TradingStore
    transport: ChangeTransport
    publisher: EventPublisher


def services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
