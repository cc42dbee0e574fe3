from __future__ import annotations

import secrets
from typing import Optional

from flask import Flask
from sqlalchemy.engine import Engine

from tradewatch.config import Settings
from tradewatch.core.logs import set_level
from tradewatch.infrastructure.db import init_schema, make_engine
from tradewatch.infrastructure.transport import ChangeTransport, transport_for
from tradewatch.services.publisher import EventPublisher
from tradewatch.services.store import TradingStore
from tradewatch.web.api import api_bp
from tradewatch.web.auth import check_basic_auth
from tradewatch.web.context import EXTENSION_KEY, Services
from tradewatch.web.pages import pages_bp
from tradewatch.web.routes import register_request_hooks, stream_bp

__all__ = ["create_app"]


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    transport: Optional[ChangeTransport] = None,
) -> Flask:
    """Flask application factory."""

    settings = settings or Settings.from_env()
    set_level(settings.log_level)
    engine = engine or make_engine(settings.database_url)
    init_schema(engine)
    transport = transport or transport_for(engine)

    app = Flask(
        __name__,
        template_folder="web/templates",
        static_folder=None,
    )
    app.secret_key = settings.secret_key or secrets.token_hex(32)
    app.extensions[EXTENSION_KEY] = Services(
        settings=settings,
        store=TradingStore(engine),
        transport=transport,
        publisher=EventPublisher(transport, settings.channel),
    )

    app.before_request(check_basic_auth)
    register_request_hooks(app)

    app.register_blueprint(api_bp)
    app.register_blueprint(stream_bp)
    app.register_blueprint(pages_bp)

    return app
