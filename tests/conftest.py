from __future__ import annotations

import pytest

from tradewatch import create_app
from tradewatch.config import Settings
from tradewatch.infrastructure.db import init_schema, make_engine
from tradewatch.infrastructure.transport import LocalBroadcaster
from tradewatch.services.publisher import EventPublisher
from tradewatch.services.store import TradingStore


def snapshot_payload(acc_number=1001, day="2024-01-15", balance=1000.0,
                     equity=1050.0, **history):
    """Ingest body shaped like the writer's payload."""
    hist = {
        "total_trade": 10,
        "profit": 120.5,
        "lot": 1.2,
        "order_buy_count": 6,
        "order_sell_count": 4,
        "win": 7,
        "loss": 3,
    }
    hist.update(history)
    return {
        "acc_number": acc_number,
        "date": day,
        "balance": balance,
        "equity": equity,
        "current": {
            "total_trade": 2,
            "profit": equity - balance,
            "lot": 0.3,
            "order_buy_count": 1,
            "order_sell_count": 1,
        },
        "history": hist,
    }


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> TradingStore:
    return TradingStore(engine)


@pytest.fixture
def broadcaster() -> LocalBroadcaster:
    return LocalBroadcaster()


@pytest.fixture
def publisher(broadcaster) -> EventPublisher:
    return EventPublisher(broadcaster, "trading")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        secret_key="test-secret",
        sse_ping_sec=1,
    )


@pytest.fixture
def app(settings, engine, broadcaster):
    app = create_app(settings, engine=engine, transport=broadcaster)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
