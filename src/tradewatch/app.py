from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import timedelta
from typing import Optional, Sequence

import requests

from tradewatch import create_app
from tradewatch.config import Settings
from tradewatch.core.date_utils import DATE_FILTERS
from tradewatch.core.logs import get_logger, set_level
from tradewatch.infrastructure.db import init_schema, make_engine
from tradewatch.live.session import LiveDashboard
from tradewatch.live.view import (
    DashboardView,
    FilterState,
    SortDirection,
    SortField,
    SortState,
    floating_pl,
)

log = get_logger("TradewatchApp")


def run_web(
    settings: Optional[Settings] = None,
    host: str = "0.0.0.0",
    port: Optional[int] = None,
) -> None:
    """Run the Flask web app in a simple local development mode."""

    app = create_app(settings)
    app.run(
        host=host,
        port=port or int(os.getenv("PORT", "5000")),
        debug=False,
        threaded=True,
    )


def run_init_db(settings: Settings) -> None:
    init_schema(make_engine(settings.database_url))
    log.info("schema ready")


def run_ingest(path: str, url: str) -> int:
    """POST one snapshot (or a JSON list of snapshots) to the ingest API.

    ``path`` may be ``-`` to read from stdin.
    """
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    items = data if isinstance(data, list) else [data]
    failures = 0
    for item in items:
        rsp = requests.post(
            f"{url.rstrip('/')}/api/trades", json=item, timeout=30
        )
        if rsp.ok:
            body = rsp.json()
            log.info(
                "ingested acc=%s op=%s",
                item.get("acc_number") if isinstance(item, dict) else "?",
                body.get("operation"),
            )
        else:
            failures += 1
            log.error("ingest failed status=%s body=%s", rsp.status_code, rsp.text)
    return 1 if failures else 0


def _render_dashboard(view: DashboardView) -> None:
    s = view.stats
    sys.stdout.write(
        f"\n== rev {view.revision}  accounts {s.get('total_accounts', 0)}  "
        f"balance {s.get('total_balance', 0):.2f}  "
        f"equity {s.get('total_equity', 0):.2f}  "
        f"win rate {s.get('win_rate', 0)}%\n"
    )
    for r in view.visible():
        sys.stdout.write(
            f"{r.get('acc_number'):>10}  {(r.get('name') or '')[:20]:<20}  "
            f"{r.get('balance') or 0:>12.2f}  {r.get('equity') or 0:>12.2f}  "
            f"{floating_pl(r):>+10.2f}\n"
        )
    sys.stdout.flush()


def _build_view(args: argparse.Namespace, settings: Settings) -> DashboardView:
    return DashboardView(
        sort=SortState(SortField(args.sort), SortDirection(
            "desc" if args.desc else "asc"
        )),
        filters=FilterState(
            category_id=args.category, inactive_only=args.inactive
        ),
        date_filter=args.date_filter,
        inactive_after=timedelta(seconds=settings.inactive_after_sec),
    )


async def _watch(args: argparse.Namespace, settings: Settings) -> None:
    view = _build_view(args, settings)
    async with LiveDashboard(
        args.url,
        view,
        settings=settings,
        render=_render_dashboard,
        on_connection=lambda st: log.info("stream %s", st.value),
    ) as live:
        await live.run()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradewatch")
    sub = parser.add_subparsers(dest="command", required=True)

    web = sub.add_parser("web", help="serve the dashboard and API")
    web.add_argument("--host", default="0.0.0.0")
    web.add_argument("--port", type=int, default=None)
    sub.add_parser("init-db", help="create tables and indexes")

    watch = sub.add_parser("watch", help="follow the dashboard in a terminal")
    watch.add_argument("--url", default="http://localhost:5000")
    watch.add_argument("--date-filter", choices=DATE_FILTERS, default="today")
    watch.add_argument("--category", type=int, default=None)
    watch.add_argument("--inactive", action="store_true")
    watch.add_argument(
        "--sort", choices=[f.value for f in SortField], default="account"
    )
    watch.add_argument("--desc", action="store_true")

    ingest = sub.add_parser("ingest", help="post snapshot JSON to the API")
    ingest.add_argument("file", help="snapshot JSON file, or - for stdin")
    ingest.add_argument("--url", default="http://localhost:5000")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    set_level(settings.log_level)

    if args.command == "web":
        run_web(settings, args.host, args.port)
    elif args.command == "init-db":
        run_init_db(settings)
    elif args.command == "ingest":
        return run_ingest(args.file, args.url)
    elif args.command == "watch":
        try:
            asyncio.run(_watch(args, settings))
        except KeyboardInterrupt:
            pass
    return 0


__all__ = ["main", "run_web", "run_init_db", "run_ingest"]
