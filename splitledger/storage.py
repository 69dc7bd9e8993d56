"""MySQL-backed storage for groups, expenses, payments, shares and recurring templates.

Every write that touches an expense's amount, payments or shares runs inside a
single ``db.cursor()`` block so it commits or rolls back as a whole.
"""
import json
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .allocator import PaymentRecord, ShareRecord
from .db import Database, db as default_db
from .money import to_basis_points, to_cents, to_decimal
from .recurring import RecurringTemplate


class ExpenseStore:
    def __init__(self, database: Optional[Database] = None) -> None:
        self.db = database or default_db

    # -- membership ---------------------------------------------------------

    def is_member(self, group_id: int, user_id: Any) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, user_id),
        )
        return record is not None

    def list_members(self, group_id: int) -> List[Dict[str, Any]]:
        return list(
            self.db.fetch_all(
                """
                SELECT u.id, u.name, u.email
                FROM group_members gm
                JOIN users u ON gm.user_id = u.id
                WHERE gm.group_id=%s
                ORDER BY u.name
                """,
                (group_id,),
            )
        )

    def is_group_creator(self, group_id: int, user_id: Any) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM `groups` WHERE id=%s AND created_by=%s",
            (group_id, user_id),
        )
        return record is not None

    # -- expenses -----------------------------------------------------------

    def get_expense(self, group_id: int, expense_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            """
            SELECT id, group_id, description, amount, category, expense_date
            FROM expenses
            WHERE id=%s AND group_id=%s
            """,
            (expense_id, group_id),
        )

    def is_payer(self, expense_id: int, user_id: Any) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM expense_payments WHERE expense_id=%s AND user_id=%s",
            (expense_id, user_id),
        )
        return record is not None

    def list_expenses(self, group_id: int) -> List[Dict[str, Any]]:
        expenses = list(
            self.db.fetch_all(
                """
                SELECT id, description, amount, category, expense_date
                FROM expenses
                WHERE group_id=%s
                ORDER BY expense_date DESC, id DESC
                """,
                (group_id,),
            )
        )

        expense_ids = [expense["id"] for expense in expenses]
        payments_map: Dict[int, List[Dict[str, Any]]] = {}
        shares_map: Dict[int, List[Dict[str, Any]]] = {}

        if expense_ids:
            placeholders = ", ".join(["%s"] * len(expense_ids))
            payments = self.db.fetch_all(
                f"""
                SELECT ep.expense_id, ep.user_id, ep.amount_paid, u.name
                FROM expense_payments ep
                JOIN users u ON ep.user_id = u.id
                WHERE ep.expense_id IN ({placeholders})
                ORDER BY ep.id
                """,
                expense_ids,
            )
            for payment in payments:
                payments_map.setdefault(payment["expense_id"], []).append(
                    {
                        "user_id": payment["user_id"],
                        "name": payment["name"],
                        "amount_paid": float(to_decimal(payment["amount_paid"])),
                    }
                )

            shares = self.db.fetch_all(
                f"""
                SELECT es.expense_id, es.user_id, es.share_amount, es.share_percentage, u.name
                FROM expense_participants es
                JOIN users u ON es.user_id = u.id
                WHERE es.expense_id IN ({placeholders})
                ORDER BY es.id
                """,
                expense_ids,
            )
            for share in shares:
                shares_map.setdefault(share["expense_id"], []).append(
                    {
                        "user_id": share["user_id"],
                        "name": share["name"],
                        "share_amount": float(to_decimal(share["share_amount"])),
                        "share_percentage": float(to_decimal(share["share_percentage"])),
                    }
                )

        for expense in expenses:
            expense["amount"] = float(to_decimal(expense["amount"]))
            if isinstance(expense.get("expense_date"), date):
                expense["expense_date"] = expense["expense_date"].isoformat()
            expense["payments"] = payments_map.get(expense["id"], [])
            expense["participants"] = shares_map.get(expense["id"], [])

        return expenses

    def list_payments(self, expense_id: int) -> List[PaymentRecord]:
        rows = self.db.fetch_all(
            "SELECT user_id, amount_paid FROM expense_payments WHERE expense_id=%s ORDER BY id",
            (expense_id,),
        )
        return [PaymentRecord(row["user_id"], to_cents(row["amount_paid"])) for row in rows]

    def list_shares(self, expense_id: int) -> List[ShareRecord]:
        rows = self.db.fetch_all(
            """
            SELECT user_id, share_amount, share_percentage
            FROM expense_participants
            WHERE expense_id=%s
            ORDER BY id
            """,
            (expense_id,),
        )
        return [
            ShareRecord(row["user_id"], to_cents(row["share_amount"]), to_basis_points(row["share_percentage"] or 0))
            for row in rows
        ]

    def list_group_payments(self, group_id: int) -> List[Tuple[Any, Decimal]]:
        rows = self.db.fetch_all(
            """
            SELECT ep.user_id, ep.amount_paid
            FROM expense_payments ep
            JOIN expenses e ON ep.expense_id = e.id
            WHERE e.group_id=%s
            """,
            (group_id,),
        )
        return [(row["user_id"], row["amount_paid"]) for row in rows]

    def list_group_shares(self, group_id: int) -> List[Tuple[Any, Decimal]]:
        rows = self.db.fetch_all(
            """
            SELECT es.user_id, es.share_amount
            FROM expense_participants es
            JOIN expenses e ON es.expense_id = e.id
            WHERE e.group_id=%s
            """,
            (group_id,),
        )
        return [(row["user_id"], row["share_amount"]) for row in rows]

    def create_expense(
        self,
        group_id: int,
        description: str,
        amount: Decimal,
        category: str,
        payments: Iterable[PaymentRecord],
        shares: Iterable[ShareRecord],
        expense_date: Optional[date] = None,
    ) -> int:
        with self.db.cursor() as cursor:
            expense_id = _insert_expense(cursor, group_id, description, amount, category, expense_date)
            _insert_payments(cursor, expense_id, payments)
            _insert_shares(cursor, expense_id, shares)
        return expense_id

    def update_expense(
        self,
        expense_id: int,
        description: str,
        amount: Decimal,
        category: str,
        payments: Iterable[PaymentRecord],
        shares: Iterable[ShareRecord],
    ) -> None:
        with self.db.cursor() as cursor:
            cursor.execute(
                "UPDATE expenses SET description=%s, amount=%s, category=%s WHERE id=%s",
                (description, str(to_decimal(amount)), category, expense_id),
            )
            cursor.execute("DELETE FROM expense_participants WHERE expense_id=%s", (expense_id,))
            _insert_shares(cursor, expense_id, shares)
            cursor.execute("DELETE FROM expense_payments WHERE expense_id=%s", (expense_id,))
            _insert_payments(cursor, expense_id, payments)

    def replace_shares(self, expense_id: int, shares: Iterable[ShareRecord]) -> None:
        with self.db.cursor() as cursor:
            cursor.execute("DELETE FROM expense_participants WHERE expense_id=%s", (expense_id,))
            _insert_shares(cursor, expense_id, shares)

    def replace_payments(self, expense_id: int, payments: Iterable[PaymentRecord]) -> None:
        with self.db.cursor() as cursor:
            cursor.execute("DELETE FROM expense_payments WHERE expense_id=%s", (expense_id,))
            _insert_payments(cursor, expense_id, payments)

    def delete_expense(self, expense_id: int) -> bool:
        with self.db.cursor() as cursor:
            cursor.execute("DELETE FROM expense_payments WHERE expense_id=%s", (expense_id,))
            cursor.execute("DELETE FROM expense_participants WHERE expense_id=%s", (expense_id,))
            cursor.execute("DELETE FROM expenses WHERE id=%s", (expense_id,))
            return cursor.rowcount > 0

    # -- recurring templates ------------------------------------------------

    def list_templates(self, group_id: int) -> List[RecurringTemplate]:
        rows = self.db.fetch_all(
            "SELECT * FROM recurring_expenses WHERE group_id=%s ORDER BY next_execution",
            (group_id,),
        )
        return [RecurringTemplate.from_row(row) for row in rows]

    def create_template(self, template: RecurringTemplate) -> int:
        return self.db.execute(
            """
            INSERT INTO recurring_expenses
                (group_id, name, amount, category, frequency, start_date, end_date,
                 next_execution, payer_id, participant_ids, split_type, custom_shares, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                template.group_id,
                template.name,
                str(template.amount),
                template.category,
                template.frequency,
                template.start_date,
                template.end_date,
                template.next_execution,
                template.payer_id,
                json.dumps(template.participant_ids),
                template.split_type,
                json.dumps(template.custom_shares) if template.custom_shares else None,
                template.is_active,
            ),
        )

    def get_template(self, group_id: int, template_id: int) -> Optional[RecurringTemplate]:
        row = self.db.fetch_one(
            "SELECT * FROM recurring_expenses WHERE id=%s AND group_id=%s",
            (template_id, group_id),
        )
        return RecurringTemplate.from_row(row) if row else None

    def update_template(self, template: RecurringTemplate) -> None:
        self.db.execute(
            """
            UPDATE recurring_expenses
            SET name=%s, amount=%s, category=%s, frequency=%s, start_date=%s, end_date=%s,
                next_execution=%s, payer_id=%s, participant_ids=%s, split_type=%s,
                custom_shares=%s, is_active=%s
            WHERE id=%s AND group_id=%s
            """,
            (
                template.name,
                str(template.amount),
                template.category,
                template.frequency,
                template.start_date,
                template.end_date,
                template.next_execution,
                template.payer_id,
                json.dumps(template.participant_ids),
                template.split_type,
                json.dumps(template.custom_shares) if template.custom_shares else None,
                template.is_active,
                template.id,
                template.group_id,
            ),
        )

    def set_template_active(self, group_id: int, template_id: int, is_active: bool) -> bool:
        with self.db.cursor() as cursor:
            cursor.execute(
                "UPDATE recurring_expenses SET is_active=%s WHERE id=%s AND group_id=%s",
                (is_active, template_id, group_id),
            )
            return cursor.rowcount > 0

    def delete_template(self, group_id: int, template_id: int) -> bool:
        with self.db.cursor() as cursor:
            cursor.execute(
                "DELETE FROM recurring_expenses WHERE id=%s AND group_id=%s",
                (template_id, group_id),
            )
            return cursor.rowcount > 0

    def list_due_templates(self, today: date) -> List[RecurringTemplate]:
        rows = self.db.fetch_all(
            """
            SELECT *
            FROM recurring_expenses
            WHERE is_active = TRUE
              AND next_execution <= %s
              AND (start_date IS NULL OR start_date <= %s)
              AND (end_date IS NULL OR end_date >= %s)
            ORDER BY next_execution, id
            """,
            (today, today, today),
        )
        return [RecurringTemplate.from_row(row) for row in rows]

    def create_recurring_expense(
        self,
        template: RecurringTemplate,
        payments: Iterable[PaymentRecord],
        shares: Iterable[ShareRecord],
        executed_on: date,
        next_execution: date,
    ) -> int:
        with self.db.cursor() as cursor:
            expense_id = _insert_expense(
                cursor, template.group_id, template.name, template.amount, template.category, executed_on
            )
            _insert_payments(cursor, expense_id, payments)
            _insert_shares(cursor, expense_id, shares)
            cursor.execute(
                "UPDATE recurring_expenses SET next_execution=%s, last_executed=%s WHERE id=%s",
                (next_execution, executed_on, template.id),
            )
        return expense_id


def _insert_expense(cursor, group_id, description, amount, category, expense_date) -> int:
    cursor.execute(
        """
        INSERT INTO expenses (group_id, description, amount, category, expense_date)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (group_id, description, str(to_decimal(amount)), category, expense_date or date.today()),
    )
    return cursor.lastrowid


def _insert_payments(cursor, expense_id: int, payments: Iterable[PaymentRecord]) -> None:
    for payment in payments:
        cursor.execute(
            "INSERT INTO expense_payments (expense_id, user_id, amount_paid) VALUES (%s, %s, %s)",
            (expense_id, payment.participant, str(payment.amount_paid)),
        )


def _insert_shares(cursor, expense_id: int, shares: Iterable[ShareRecord]) -> None:
    for share in shares:
        cursor.execute(
            """
            INSERT INTO expense_participants (expense_id, user_id, share_amount, share_percentage)
            VALUES (%s, %s, %s, %s)
            """,
            (expense_id, share.participant, str(share.share_amount), str(share.share_percentage)),
        )
