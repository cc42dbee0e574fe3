"""SQLAlchemy engine construction and schema bootstrap.

Connection strings may be SQLAlchemy URLs (``postgresql+psycopg2://…``,
``sqlite:///…``) or libpq-style DSNs (``host=… user=… dbname=…``). The
same SQL runs on Postgres and SQLite, so local deployments and the test
suite can use a SQLite file or ``sqlite://`` in memory.
"""

from __future__ import annotations

from sqlalchemy import URL, create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool


def _url_from_libpq(dsn: str) -> URL:
    """Convert a libpq-style DSN to an SQLAlchemy URL."""
    parts = {}
    for tok in dsn.split():
        if "=" in tok:
            k, v = tok.split("=", 1)
            parts[k.strip()] = v.strip()
    port = parts.pop("port", None)
    return URL.create(
        drivername="postgresql+psycopg2",
        username=parts.pop("user", None),
        password=parts.pop("password", None),
        host=parts.pop("host", "localhost"),
        port=int(port) if port else None,
        database=parts.pop("dbname", None),
        # sslmode, connect_timeout and friends pass through as query args
        query=parts,
    )


def libpq_url(engine: Engine) -> str:
    """Return a driver-less Postgres URL usable by ``psycopg2.connect``.

    Credentials stay percent-encoded and query args (``sslmode`` etc.)
    are kept.
    """
    return engine.url.set(drivername="postgresql").render_as_string(
        hide_password=False
    )


def make_engine(raw: str) -> Engine:
    """Return an engine created from a URL or libpq DSN."""
    if "://" not in raw:
        url = _url_from_libpq(raw)
    else:
        url = make_url(raw)

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection so every request sees the same memory DB.
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=5,
        pool_recycle=1800,
    )


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def init_schema(engine: Engine) -> None:
    """Create the categories, accounts and history tables if missing."""
    if is_postgres(engine):
        pk = "BIGSERIAL PRIMARY KEY"
        ts = "TIMESTAMPTZ"
    else:
        pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
        ts = "TEXT"

    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS categories (
            id          {pk},
            title       TEXT NOT NULL,
            created_at  {ts} NOT NULL,
            updated_at  {ts} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS accounts (
            id           {pk},
            acc_number   BIGINT NOT NULL UNIQUE,
            name         TEXT,
            email        TEXT,
            balance      DOUBLE PRECISION NOT NULL DEFAULT 0,
            equity       DOUBLE PRECISION NOT NULL DEFAULT 0,
            category_id  BIGINT REFERENCES categories(id),
            updated_at   {ts} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS history (
            id                         {pk},
            account_id                 BIGINT NOT NULL REFERENCES accounts(id),
            date                       DATE NOT NULL,
            current_total_trade        INTEGER NOT NULL DEFAULT 0,
            current_profit             DOUBLE PRECISION NOT NULL DEFAULT 0,
            current_lot                DOUBLE PRECISION NOT NULL DEFAULT 0,
            current_order_buy_count    INTEGER NOT NULL DEFAULT 0,
            current_order_sell_count   INTEGER NOT NULL DEFAULT 0,
            history_total_trade        INTEGER NOT NULL DEFAULT 0,
            history_profit             DOUBLE PRECISION NOT NULL DEFAULT 0,
            history_lot                DOUBLE PRECISION NOT NULL DEFAULT 0,
            history_order_buy_count    INTEGER NOT NULL DEFAULT 0,
            history_order_sell_count   INTEGER NOT NULL DEFAULT 0,
            history_win                INTEGER NOT NULL DEFAULT 0,
            history_loss               INTEGER NOT NULL DEFAULT 0,
            updated_at                 {ts} NOT NULL,
            UNIQUE (account_id, date)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_history_date ON history (date)",
        "CREATE INDEX IF NOT EXISTS idx_accounts_category "
        "ON accounts (category_id)",
    ]
    with engine.begin() as conn:
        for sql in statements:
            conn.execute(text(sql))
