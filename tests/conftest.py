from dataclasses import replace
from datetime import date

import pytest

from splitledger.app import create_app
from splitledger.money import to_decimal


class FakeStore:
    """In-memory stand-in for ExpenseStore."""

    def __init__(self):
        self.members = {}
        self.creators = {}
        self.expenses = {}
        self.payments = {}
        self.shares = {}
        self.templates = {}
        self._next_expense_id = 1
        self._next_template_id = 1

    def add_group(self, group_id, creator_id, member_ids):
        self.creators[group_id] = creator_id
        self.members[group_id] = [
            {"id": user_id, "name": f"user{user_id}", "email": f"user{user_id}@example.com"}
            for user_id in member_ids
        ]

    # membership
    def is_member(self, group_id, user_id):
        return any(member["id"] == user_id for member in self.members.get(group_id, []))

    def list_members(self, group_id):
        return list(self.members.get(group_id, []))

    def is_group_creator(self, group_id, user_id):
        return self.creators.get(group_id) == user_id

    # expenses
    def get_expense(self, group_id, expense_id):
        expense = self.expenses.get(expense_id)
        if expense is None or expense["group_id"] != group_id:
            return None
        return dict(expense)

    def is_payer(self, expense_id, user_id):
        return any(payment.participant == user_id for payment in self.payments.get(expense_id, []))

    def list_expenses(self, group_id):
        return [
            {
                **expense,
                "amount": float(expense["amount"]),
                "payments": [payment.to_dict() for payment in self.payments[expense_id]],
                "participants": [share.to_dict() for share in self.shares[expense_id]],
            }
            for expense_id, expense in self.expenses.items()
            if expense["group_id"] == group_id
        ]

    def list_payments(self, expense_id):
        return list(self.payments.get(expense_id, []))

    def list_shares(self, expense_id):
        return list(self.shares.get(expense_id, []))

    def list_group_payments(self, group_id):
        return [
            (payment.participant, payment.amount_paid)
            for expense_id, expense in self.expenses.items()
            if expense["group_id"] == group_id
            for payment in self.payments[expense_id]
        ]

    def list_group_shares(self, group_id):
        return [
            (share.participant, share.share_amount)
            for expense_id, expense in self.expenses.items()
            if expense["group_id"] == group_id
            for share in self.shares[expense_id]
        ]

    def create_expense(self, group_id, description, amount, category, payments, shares, expense_date=None):
        expense_id = self._next_expense_id
        self._next_expense_id += 1
        self.expenses[expense_id] = {
            "id": expense_id,
            "group_id": group_id,
            "description": description,
            "amount": to_decimal(amount),
            "category": category,
            "expense_date": (expense_date or date.today()).isoformat(),
        }
        self.payments[expense_id] = list(payments)
        self.shares[expense_id] = list(shares)
        return expense_id

    def update_expense(self, expense_id, description, amount, category, payments, shares):
        self.expenses[expense_id].update(
            {"description": description, "amount": to_decimal(amount), "category": category}
        )
        self.payments[expense_id] = list(payments)
        self.shares[expense_id] = list(shares)

    def replace_shares(self, expense_id, shares):
        self.shares[expense_id] = list(shares)

    def replace_payments(self, expense_id, payments):
        self.payments[expense_id] = list(payments)

    def delete_expense(self, expense_id):
        if expense_id not in self.expenses:
            return False
        del self.expenses[expense_id]
        self.payments.pop(expense_id, None)
        self.shares.pop(expense_id, None)
        return True

    # recurring
    def list_templates(self, group_id):
        return [template for template in self.templates.values() if template.group_id == group_id]

    def create_template(self, template):
        template_id = self._next_template_id
        self._next_template_id += 1
        template.id = template_id
        self.templates[template_id] = template
        return template_id

    def get_template(self, group_id, template_id):
        template = self.templates.get(template_id)
        if template is None or template.group_id != group_id:
            return None
        return replace(template)

    def update_template(self, template):
        self.templates[template.id] = template

    def set_template_active(self, group_id, template_id, is_active):
        template = self.templates.get(template_id)
        if template is None or template.group_id != group_id:
            return False
        template.is_active = is_active
        return True

    def delete_template(self, group_id, template_id):
        template = self.templates.get(template_id)
        if template is None or template.group_id != group_id:
            return False
        del self.templates[template_id]
        return True

    def list_due_templates(self, today):
        # Unfiltered on purpose so materialize_due's own checks are exercised
        return list(self.templates.values())

    def create_recurring_expense(self, template, payments, shares, executed_on, next_execution):
        expense_id = self.create_expense(
            template.group_id, template.name, template.amount, template.category, payments, shares, executed_on
        )
        template.next_execution = next_execution
        template.last_executed = executed_on
        return expense_id


@pytest.fixture
def store():
    fake = FakeStore()
    fake.add_group(1, creator_id=1, member_ids=[1, 2, 3])
    fake.add_group(2, creator_id=4, member_ids=[4, 5])
    return fake


@pytest.fixture
def app(store):
    app = create_app(store=store)
    app.config.update(TESTING=True, SPLIT_FALLBACK_TO_EQUAL=False)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
        return client

    return _login
