"""JSON API: ingest, listings, stats and mutations."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from flask import Blueprint, Response, jsonify, request

from tradewatch.core.date_utils import parse_date
from tradewatch.core.events import ChangeEvent, Operation, SourceTable
from tradewatch.errors import ValidationError
from tradewatch.services.ingest import ingest_payload
from tradewatch.services.store import ALL_ROWS
from tradewatch.web.context import services

api_bp = Blueprint("api", __name__, url_prefix="/api")


def _arg_int(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def _arg_date(name: str, default: Optional[date] = None) -> Optional[date]:
    raw = request.args.get(name)
    if not raw:
        return default
    try:
        return parse_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a YYYY-MM-DD date") from None


def _required_acc_number() -> int:
    acc_number = _arg_int("acc_number")
    if acc_number is None:
        raise ValidationError("Account number is required")
    return acc_number


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _publish_accounts(
    op: Operation,
    new_state: Optional[dict] = None,
    old_state: Optional[dict] = None,
) -> None:
    services().publisher.publish(
        ChangeEvent(
            source_table=SourceTable.ACCOUNTS,
            operation=op,
            new_state=new_state,
            old_state=old_state,
        )
    )


# ── ingest ────────────────────────────────────────────────────────


@api_bp.route("/trades", methods=["POST"])
def post_trade() -> Response:
    svc = services()
    result = ingest_payload(
        svc.store, svc.publisher, request.get_json(silent=True)
    )
    return jsonify(
        {
            "success": True,
            "account_id": result.account_id,
            "operation": result.operation.value,
            "published": result.published,
            "message": "Trade data saved successfully",
        }
    )


# ── accounts ──────────────────────────────────────────────────────


@api_bp.route("/trading/accounts", methods=["GET"])
def get_accounts() -> Response:
    return jsonify(services().store.list_accounts(_arg_int("acc_number")))


@api_bp.route("/trading/accounts", methods=["PUT"])
def put_account() -> Response:
    acc_number = _required_acc_number()
    body = _json_body()
    category_id = body.get("category_id")
    if category_id in ("", None):
        category_id = None
    else:
        try:
            category_id = int(category_id)
        except (TypeError, ValueError):
            raise ValidationError("category_id must be an integer") from None

    old, new = services().store.update_account(
        acc_number,
        body.get("name") or None,
        body.get("email") or None,
        category_id,
    )
    _publish_accounts(Operation.UPDATE, new_state=new, old_state=old)
    return jsonify(
        {
            "success": True,
            "account": new,
            "message": "Account updated successfully",
        }
    )


@api_bp.route("/trading/accounts", methods=["DELETE"])
def delete_account() -> Response:
    old = services().store.delete_account(_required_acc_number())
    _publish_accounts(Operation.DELETE, old_state=old)
    return jsonify(
        {
            "success": True,
            "message": "Account and all related history deleted successfully",
        }
    )


@api_bp.route("/trading/accounts-with-history", methods=["GET"])
def get_accounts_with_history() -> Response:
    today = date.today()
    start = _arg_date("start_date", today)
    end = _arg_date("end_date", today)
    return jsonify(services().store.accounts_with_history(start, end))


@api_bp.route("/trading/history", methods=["GET"])
def get_history() -> Response:
    limit = _arg_int("limit", 30)
    offset = _arg_int("offset", 0)
    rows = services().store.history(
        acc_number=_arg_int("acc_number"),
        start=_arg_date("start_date"),
        end=_arg_date("end_date"),
        limit=limit if limit is not None else 30,
        offset=0 if limit == ALL_ROWS else (offset or 0),
    )
    return jsonify(rows)


@api_bp.route("/trading/stats", methods=["GET"])
def get_stats() -> Response:
    stats = services().store.stats(acc_number=_arg_int("acc_number"))
    return jsonify(stats.to_dict())


# ── categories ────────────────────────────────────────────────────


@api_bp.route("/categories", methods=["GET"])
def get_categories() -> Response:
    return jsonify(services().store.list_categories())


@api_bp.route("/categories", methods=["POST"])
def post_category() -> Response:
    title = (_json_body().get("title") or "").strip()
    category = services().store.create_category(title)
    return jsonify(
        {
            "success": True,
            "category": category,
            "message": "Category created successfully",
        }
    )


@api_bp.route("/categories/<int:category_id>", methods=["PUT"])
def put_category(category_id: int) -> Response:
    title = (_json_body().get("title") or "").strip()
    category = services().store.update_category(category_id, title)
    _publish_accounts(Operation.UPDATE, new_state={"category": category})
    return jsonify(
        {
            "success": True,
            "category": category,
            "message": "Category updated successfully",
        }
    )


@api_bp.route("/categories/<int:category_id>", methods=["DELETE"])
def delete_category(category_id: int) -> Response:
    services().store.delete_category(category_id)
    _publish_accounts(
        Operation.UPDATE, old_state={"category_id": category_id}
    )
    return jsonify(
        {"success": True, "message": "Category deleted successfully"}
    )


@api_bp.route("/categories/accounts-count", methods=["GET"])
def get_category_accounts_count() -> Response:
    category_id = _arg_int("category_id")
    if category_id is None:
        raise ValidationError("category_id is required")
    return jsonify({"count": services().store.count_accounts(category_id)})
