"""Server-rendered dashboard pages.

Each page is rendered from the same reconciled view state the live client
uses; the inline stream script reloads the page after the quiet period.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from flask import Blueprint, Response, render_template, request

from tradewatch.core.date_utils import DATE_FILTERS, date_range_for
from tradewatch.core.utils import _parse_bool, _to_int
from tradewatch.live.refresh import AccountSnapshot, DashboardSnapshot
from tradewatch.live.view import (
    PAGE_SIZE_ALL,
    AccountDetailView,
    DashboardView,
    FilterState,
    SortDirection,
    SortField,
    SortState,
    floating_pl,
    is_inactive,
    paginate,
)
from tradewatch.services.store import ALL_ROWS
from tradewatch.web.context import services

pages_bp = Blueprint("pages", __name__)

PAGE_SIZES = (25, 50, 100, PAGE_SIZE_ALL)


def _enum_arg(name: str, enum_cls, default):
    try:
        return enum_cls(request.args.get(name, default.value))
    except ValueError:
        return default


def _quiet_ms() -> dict:
    settings = services().settings
    return {
        "history": int(settings.history_quiet_sec * 1000),
        "accounts": int(settings.accounts_quiet_sec * 1000),
    }


@pages_bp.route("/")
def dashboard() -> str:
    svc = services()
    date_filter = request.args.get("date", "today")
    if date_filter not in DATE_FILTERS:
        date_filter = "today"
    start, end = date_range_for(date_filter)

    raw_category = request.args.get("category")
    category_id: Optional[int] = (
        _to_int(raw_category) if raw_category not in (None, "") else None
    )

    view = DashboardView(
        sort=SortState(
            _enum_arg("sort", SortField, SortField.ACCOUNT),
            _enum_arg("dir", SortDirection, SortDirection.ASC),
        ),
        filters=FilterState(
            category_id=category_id,
            inactive_only=_parse_bool(request.args.get("inactive")),
        ),
        date_filter=date_filter,
        inactive_after=timedelta(seconds=svc.settings.inactive_after_sec),
    )
    view.apply(
        DashboardSnapshot(
            accounts=svc.store.accounts_with_history(start, end),
            stats=svc.store.stats().to_dict(),
        )
    )
    return render_template(
        "dashboard.html",
        view=view,
        rows=view.visible(),
        inactive_count=view.inactive_count(),
        categories=svc.store.list_categories(),
        date_filters=DATE_FILTERS,
        floating_pl=floating_pl,
        is_inactive=is_inactive,
        quiet_ms=_quiet_ms(),
    )


@pages_bp.route("/account/<int:acc_number>")
def account_detail(acc_number: int) -> str:
    svc = services()
    page_size = _to_int(request.args.get("size"), 100)
    if page_size not in PAGE_SIZES:
        page_size = 100
    view = AccountDetailView(acc_number=acc_number)
    view.set_page_size(page_size)
    view.set_page(_to_int(request.args.get("page"), 1))

    account = svc.store.get_account(acc_number)
    # the page count needs the full set; history is per-day so it stays small
    rows = svc.store.history(acc_number=acc_number, limit=ALL_ROWS)
    view.apply(AccountSnapshot(account=account, history=rows))
    page = paginate(view.history, view.page, view.page_size)
    return render_template(
        "account.html",
        view=view,
        page=page,
        page_sizes=PAGE_SIZES,
        stats=svc.store.stats(acc_number=acc_number).to_dict(),
        floating_pl=floating_pl,
        quiet_ms=_quiet_ms(),
    )


@pages_bp.route("/categories")
def categories() -> str:
    store = services().store
    rows = [
        {**c, "accounts": store.count_accounts(c["id"])}
        for c in store.list_categories()
    ]
    return render_template(
        "categories.html", categories=rows, quiet_ms=_quiet_ms()
    )


@pages_bp.route("/favicon.ico")
def favicon() -> Response:
    return Response(status=204)
