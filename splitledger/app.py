from __future__ import annotations

import logging
from datetime import date
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

import click
from flask import Flask, jsonify, request, session
from flask_cors import CORS

from .allocator import allocate, build_policy, validate_payments
from .balances import aggregate
from .config import config
from .errors import InvalidAmount, SplitLedgerError
from .money import to_decimal
from .recurring import Frequency, RecurringTemplate, materialize_due, next_execution_date
from .storage import ExpenseStore

logger = logging.getLogger(__name__)


def create_app(store: Optional[ExpenseStore] = None) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
    app.config["SPLIT_FALLBACK_TO_EQUAL"] = config.SPLIT_FALLBACK_TO_EQUAL

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    store = store or ExpenseStore()
    register_routes(app, store)
    register_commands(app, store)
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_routes(app: Flask, store: ExpenseStore) -> None:
    @app.errorhandler(SplitLedgerError)
    def handle_split_error(exc: SplitLedgerError):
        logger.info("Rejected request: %s", exc)
        return jsonify(exc.to_dict()), 400

    @app.get("/api/session")
    def get_session():
        if "user_id" in session:
            return jsonify({"authenticated": True, "user": {"id": session["user_id"]}})
        return jsonify({"authenticated": False})

    @app.get("/api/groups/<int:group_id>/members")
    @require_login
    def get_group_members(group_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        return jsonify(store.list_members(group_id))

    @app.get("/api/groups/<int:group_id>/expenses")
    @require_login
    def get_group_expenses(group_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        return jsonify(store.list_expenses(group_id))

    @app.post("/api/groups/<int:group_id>/expenses")
    @require_login
    def add_expense(group_id: int):
        payload = _json_object()

        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        parsed, error = _parse_expense_payload(
            payload, group_id, store, default_payer=payload.get("paid_by") or session["user_id"]
        )
        if error:
            return jsonify({"error": error}), 400

        shares, payments = _compute_expense(app, parsed)
        expense_id = store.create_expense(
            group_id,
            parsed["description"],
            parsed["amount"],
            parsed["category"],
            payments,
            shares,
        )
        logger.info("Created expense %s in group %s (%s)", expense_id, group_id, parsed["amount"])

        return jsonify(_expense_response(expense_id, parsed, payments, shares)), 201

    @app.get("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def get_expense_detail(group_id: int, expense_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        expense = store.get_expense(group_id, expense_id)
        if not expense:
            return jsonify({"error": "expense_not_found"}), 404

        detail = dict(expense)
        detail["amount"] = float(to_decimal(expense["amount"]))
        if isinstance(detail.get("expense_date"), date):
            detail["expense_date"] = detail["expense_date"].isoformat()
        detail["payments"] = [payment.to_dict() for payment in store.list_payments(expense_id)]
        detail["participants"] = [share.to_dict() for share in store.list_shares(expense_id)]
        return jsonify(detail)

    @app.put("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def update_expense(group_id: int, expense_id: int):
        expense = store.get_expense(group_id, expense_id)
        if not expense:
            return jsonify({"error": "expense_not_found"}), 404
        if not _can_modify_expense(store, group_id, expense_id, session["user_id"]):
            return jsonify({"error": "forbidden_only_creator_or_payer"}), 403

        payload = _json_object()
        parsed, error = _parse_expense_payload(payload, group_id, store)
        if error:
            return jsonify({"error": error}), 400

        shares, payments = _compute_expense(app, parsed)
        store.update_expense(
            expense_id,
            parsed["description"],
            parsed["amount"],
            parsed["category"],
            payments,
            shares,
        )
        logger.info("Updated expense %s in group %s", expense_id, group_id)

        return jsonify(_expense_response(expense_id, parsed, payments, shares))

    @app.put("/api/groups/<int:group_id>/expenses/<int:expense_id>/redistribute")
    @require_login
    def redistribute_expense(group_id: int, expense_id: int):
        expense = store.get_expense(group_id, expense_id)
        if not expense:
            return jsonify({"error": "expense_not_found"}), 404
        if not _can_modify_expense(store, group_id, expense_id, session["user_id"]):
            return jsonify({"error": "forbidden_only_creator_or_payer"}), 403

        payload = _json_object()
        try:
            participants = _parse_ids(payload.get("participants"))
            custom_shares = _parse_custom_shares(payload.get("custom_shares"))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        if not participants:
            return jsonify({"error": "missing_fields"}), 400
        if not all(store.is_member(group_id, user_id) for user_id in participants):
            return jsonify({"error": "invalid_split_members"}), 400

        policy = build_policy(
            payload.get("split_type"),
            custom_shares,
            fallback_to_equal=app.config["SPLIT_FALLBACK_TO_EQUAL"],
        )
        shares = allocate(expense["amount"], participants, policy)
        store.replace_shares(expense_id, shares)
        logger.info("Redistributed expense %s across %d participants", expense_id, len(shares))

        return jsonify({"id": expense_id, "participants": [share.to_dict() for share in shares]})

    @app.delete("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def delete_expense(group_id: int, expense_id: int):
        expense = store.get_expense(group_id, expense_id)
        if not expense:
            return jsonify({"error": "expense_not_found"}), 404
        if not _can_modify_expense(store, group_id, expense_id, session["user_id"]):
            return jsonify({"error": "forbidden_only_creator_or_payer"}), 403

        if not store.delete_expense(expense_id):
            return jsonify({"error": "expense_not_found"}), 404
        return jsonify({"status": "deleted"}), 200

    @app.get("/api/groups/<int:group_id>/balances")
    @require_login
    def get_group_balances(group_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        members = store.list_members(group_id)
        balances = aggregate(
            [member["id"] for member in members],
            store.list_group_payments(group_id),
            store.list_group_shares(group_id),
        )

        report = []
        for member in members:
            entry = balances[member["id"]].to_dict()
            entry["name"] = member.get("name")
            entry["email"] = member.get("email")
            report.append(entry)
        return jsonify({"balances": report})

    @app.get("/api/groups/<int:group_id>/recurring")
    @require_login
    def list_recurring(group_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        templates = store.list_templates(group_id)
        return jsonify({"recurring_expenses": [template.to_dict() for template in templates]})

    @app.post("/api/groups/<int:group_id>/recurring")
    @require_login
    def create_recurring(group_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403

        template, error = _parse_recurring_payload(
            _json_object(), group_id, store, app.config["SPLIT_FALLBACK_TO_EQUAL"]
        )
        if error:
            return jsonify({"error": error}), 400

        template.id = store.create_template(template)
        logger.info("Created recurring expense %s in group %s", template.id, group_id)
        return jsonify(template.to_dict()), 201

    @app.put("/api/groups/<int:group_id>/recurring/<int:template_id>")
    @require_login
    def update_recurring(group_id: int, template_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        existing = store.get_template(group_id, template_id)
        if existing is None:
            return jsonify({"error": "recurring_expense_not_found"}), 404

        payload = _json_object()
        if not payload:
            return jsonify({"error": "missing_fields"}), 400

        template, error = _parse_recurring_payload(
            payload, group_id, store, app.config["SPLIT_FALLBACK_TO_EQUAL"], existing=existing
        )
        if error:
            return jsonify({"error": error}), 400

        store.update_template(template)
        logger.info("Updated recurring expense %s in group %s", template_id, group_id)
        return jsonify(template.to_dict())

    @app.put("/api/groups/<int:group_id>/recurring/<int:template_id>/toggle")
    @require_login
    def toggle_recurring(group_id: int, template_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        existing = store.get_template(group_id, template_id)
        if existing is None:
            return jsonify({"error": "recurring_expense_not_found"}), 404

        # no body flips the current state
        is_active = _json_object().get("is_active", not existing.is_active)
        if not isinstance(is_active, bool):
            return jsonify({"error": "invalid_recurring_payload"}), 400
        if not store.set_template_active(group_id, template_id, is_active):
            return jsonify({"error": "recurring_expense_not_found"}), 404
        return jsonify({"id": template_id, "is_active": is_active})

    @app.delete("/api/groups/<int:group_id>/recurring/<int:template_id>")
    @require_login
    def delete_recurring(group_id: int, template_id: int):
        if not store.is_member(group_id, session["user_id"]):
            return jsonify({"error": "not_authorized"}), 403
        if not store.delete_template(group_id, template_id):
            return jsonify({"error": "recurring_expense_not_found"}), 404
        return jsonify({"status": "deleted"})


def register_commands(app: Flask, store: ExpenseStore) -> None:
    @app.cli.command("run-recurring")
    @click.option("--date", "run_date", default=None, help="Process as of this day (YYYY-MM-DD).")
    def run_recurring(run_date: Optional[str]):
        """Create expenses for every recurring template that is due."""
        today = date.fromisoformat(run_date) if run_date else date.today()
        report = materialize_due(store, today, fallback_to_equal=app.config["SPLIT_FALLBACK_TO_EQUAL"])
        click.echo(
            f"created={len(report.created)} failed={len(report.failed)} skipped={len(report.skipped)}"
        )


def _json_object() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    return payload if isinstance(payload, dict) else {}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _can_modify_expense(store: ExpenseStore, group_id: int, expense_id: int, user_id: Any) -> bool:
    return store.is_group_creator(group_id, user_id) or store.is_payer(expense_id, user_id)


def _positive_amount(value: Any):
    amount = to_decimal(value)
    if amount <= 0:
        raise InvalidAmount(f"Expense amount must be positive, got {amount}.", value)
    return amount


def _parse_ids(values: Any) -> List[int]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValueError("invalid_participants")

    ids: List[int] = []
    for value in values:
        if isinstance(value, bool):
            raise ValueError("invalid_participants")
        try:
            user_id = int(value)
        except (TypeError, ValueError):
            raise ValueError("invalid_participants") from None
        if user_id in ids:
            raise ValueError("duplicate_participant")
        ids.append(user_id)
    return ids


def _parse_custom_shares(raw: Any) -> Optional[Dict[int, Any]]:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValueError("invalid_custom_shares")
    try:
        return {int(user_id): value for user_id, value in raw.items()}
    except (TypeError, ValueError):
        raise ValueError("invalid_custom_shares") from None


def _parse_payments(payload: Any, default_payer: Any, amount) -> List[Tuple[int, Any]]:
    if not payload:
        try:
            return [(int(default_payer), amount)]
        except (TypeError, ValueError):
            raise ValueError("invalid_payment_payload") from None
    if not isinstance(payload, list):
        raise ValueError("invalid_payment_payload")

    payments: List[Tuple[int, Any]] = []
    seen = set()
    for item in payload:
        try:
            user_id = int(item["user_id"])
            amount_paid = item.get("amount_paid", item.get("amount"))
        except (KeyError, TypeError, ValueError, AttributeError):
            raise ValueError("invalid_payment_payload") from None
        if user_id in seen:
            raise ValueError("duplicate_payment_entry")
        seen.add(user_id)
        payments.append((user_id, amount_paid))
    return payments


def _parse_expense_payload(
    payload: Dict[str, Any], group_id: int, store: ExpenseStore, default_payer: Any = None
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Validate an expense body. Without ``default_payer`` the body must list its payments."""
    description = _text(payload.get("description")) or _text(payload.get("title"))
    amount = payload.get("amount")
    if not description or amount is None:
        return {}, "missing_fields"
    if not payload.get("payments") and default_payer is None:
        return {}, "missing_fields"

    amount_decimal = _positive_amount(amount)

    try:
        participants = _parse_ids(payload.get("participants"))
        custom_shares = _parse_custom_shares(payload.get("custom_shares"))
        payments = _parse_payments(payload.get("payments"), default_payer, amount_decimal)
    except ValueError as exc:
        return {}, str(exc)

    if not participants:
        return {}, "missing_fields"
    if not all(store.is_member(group_id, user_id) for user_id, _ in payments):
        return {}, "payer_not_in_group"
    if not all(store.is_member(group_id, user_id) for user_id in participants):
        return {}, "invalid_split_members"

    return (
        {
            "description": description,
            "amount": amount_decimal,
            "category": payload.get("category") or "general",
            "participants": participants,
            "payments": payments,
            "split_type": payload.get("split_type"),
            "custom_shares": custom_shares,
        },
        None,
    )


def _parse_recurring_payload(
    payload: Dict[str, Any],
    group_id: int,
    store: ExpenseStore,
    fallback_to_equal: bool,
    existing: Optional[RecurringTemplate] = None,
) -> Tuple[Optional[RecurringTemplate], Optional[str]]:
    """
    Build a template from a request body. With ``existing`` the body is a
    partial update over the stored template, and the merged result is
    validated the same way a new template is.
    """
    fields = existing.to_dict() if existing else {}
    fields.update(payload)

    name = _text(fields.get("name"))
    amount = fields.get("amount")
    payer_id = fields.get("payer_id")
    if not name or amount is None or payer_id is None:
        return None, "missing_fields"

    amount_decimal = _positive_amount(amount)

    try:
        payer_id = int(payer_id)
        participants = _parse_ids(fields.get("participant_ids"))
        custom_shares = _parse_custom_shares(fields.get("custom_shares"))
        frequency = Frequency(str(fields.get("frequency") or Frequency.MONTHLY.value).lower())
    except (TypeError, ValueError):
        return None, "invalid_recurring_payload"

    try:
        start_date = date.fromisoformat(fields["start_date"]) if fields.get("start_date") else date.today()
        end_date = date.fromisoformat(fields["end_date"]) if fields.get("end_date") else None
    except (TypeError, ValueError):
        return None, "invalid_date"
    if end_date is not None and end_date < start_date:
        return None, "invalid_date"

    if not participants:
        return None, "missing_fields"
    if not store.is_member(group_id, payer_id):
        return None, "payer_not_in_group"
    if not all(store.is_member(group_id, user_id) for user_id in participants):
        return None, "invalid_split_members"

    policy = build_policy(fields.get("split_type") or "equal", custom_shares, fallback_to_equal=fallback_to_equal)
    # Reject bad shares now rather than at the first scheduled run
    allocate(amount_decimal, participants, policy)

    if existing is None or "start_date" in payload or "frequency" in payload:
        next_execution = next_execution_date(start_date, frequency.value)
    else:
        next_execution = existing.next_execution

    return (
        RecurringTemplate(
            id=existing.id if existing else None,
            group_id=group_id,
            name=name,
            amount=amount_decimal,
            payer_id=payer_id,
            participant_ids=participants,
            next_execution=next_execution,
            frequency=frequency.value,
            category=_text(fields.get("category")) or "general",
            split_type=policy.split_type.value,
            custom_shares={str(key): value for key, value in custom_shares.items()} if custom_shares else None,
            start_date=start_date,
            end_date=end_date,
            last_executed=existing.last_executed if existing else None,
            is_active=existing.is_active if existing else True,
        ),
        None,
    )


def _compute_expense(app: Flask, parsed: Dict[str, Any]):
    payments = validate_payments(parsed["amount"], parsed["payments"])
    policy = build_policy(
        parsed["split_type"],
        parsed["custom_shares"],
        fallback_to_equal=app.config["SPLIT_FALLBACK_TO_EQUAL"],
    )
    shares = allocate(parsed["amount"], parsed["participants"], policy)
    return shares, payments


def _expense_response(expense_id: int, parsed: Dict[str, Any], payments, shares) -> Dict[str, Any]:
    return {
        "id": expense_id,
        "description": parsed["description"],
        "amount": float(parsed["amount"]),
        "category": parsed["category"],
        "payments": [payment.to_dict() for payment in payments],
        "participants": [share.to_dict() for share in shares],
    }


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
