"""
Recurring expense materialization.

Each due template becomes a regular expense: its shares come from the same
allocator used for interactive expenses, and its single payment is the full
amount paid by the template's payer. Templates are processed one by one and
a failure on one is logged without stopping the others.
"""
import calendar
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .allocator import allocate, build_policy, validate_payments
from .money import to_decimal

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


def _add_months(current: date, months: int) -> date:
    month_index = current.month - 1 + months
    year = current.year + month_index // 12
    month = month_index % 12 + 1

    # Jan 31 + 1 month -> Feb 28/29
    max_day = calendar.monthrange(year, month)[1]
    return current.replace(year=year, month=month, day=min(current.day, max_day))


def next_execution_date(current: date, frequency: Optional[str]) -> date:
    """Advance ``current`` by one period; unknown frequencies count as monthly."""
    try:
        resolved = Frequency(str(frequency).strip().lower())
    except ValueError:
        logger.debug("Unknown frequency %r, treating as monthly", frequency)
        resolved = Frequency.MONTHLY

    if resolved is Frequency.DAILY:
        return current + timedelta(days=1)
    if resolved is Frequency.WEEKLY:
        return current + timedelta(days=7)
    if resolved is Frequency.YEARLY:
        return _add_months(current, 12)
    return _add_months(current, 1)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class RecurringTemplate:
    id: Any
    group_id: Any
    name: str
    amount: Decimal
    payer_id: Any
    participant_ids: List[Any]
    next_execution: date
    frequency: str = Frequency.MONTHLY.value
    category: str = "general"
    split_type: str = "equal"
    custom_shares: Optional[Dict[str, Any]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    last_executed: Optional[date] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RecurringTemplate":
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            name=row["name"],
            amount=to_decimal(row["amount"]),
            payer_id=row["payer_id"],
            participant_ids=list(_parse_json(row.get("participant_ids"), [])),
            next_execution=_parse_date(row["next_execution"]),
            frequency=row.get("frequency") or Frequency.MONTHLY.value,
            category=row.get("category") or "general",
            split_type=row.get("split_type") or "equal",
            custom_shares=_parse_json(row.get("custom_shares"), None),
            start_date=_parse_date(row.get("start_date")),
            end_date=_parse_date(row.get("end_date")),
            last_executed=_parse_date(row.get("last_executed")),
            is_active=bool(row.get("is_active", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "name": self.name,
            "amount": float(self.amount),
            "category": self.category,
            "frequency": self.frequency,
            "payer_id": self.payer_id,
            "participant_ids": self.participant_ids,
            "split_type": self.split_type,
            "custom_shares": self.custom_shares,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "next_execution": self.next_execution.isoformat() if self.next_execution else None,
            "last_executed": self.last_executed.isoformat() if self.last_executed else None,
            "is_active": self.is_active,
        }


def is_due(template: RecurringTemplate, today: date) -> bool:
    if not template.is_active or template.next_execution is None:
        return False
    if template.next_execution > today:
        return False
    if template.start_date is not None and template.start_date > today:
        return False
    if template.end_date is not None and template.end_date < today:
        return False
    return True


@dataclass
class MaterializationReport:
    created: List[Any] = field(default_factory=list)
    failed: List[Any] = field(default_factory=list)
    skipped: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"created": self.created, "failed": self.failed, "skipped": self.skipped}


def materialize_template(store, template: RecurringTemplate, today: date, fallback_to_equal: bool = False):
    """Create one expense from ``template`` and move it to its next run date."""
    policy = build_policy(template.split_type, template.custom_shares, fallback_to_equal)
    shares = allocate(template.amount, template.participant_ids, policy)
    payments = validate_payments(template.amount, [(template.payer_id, template.amount)])
    next_run = next_execution_date(template.next_execution, template.frequency)

    expense_id = store.create_recurring_expense(
        template,
        payments=payments,
        shares=shares,
        executed_on=today,
        next_execution=next_run,
    )
    logger.info("Created expense %s for %r - next execution: %s", expense_id, template.name, next_run)
    return expense_id


def materialize_due(store, today: Optional[date] = None, fallback_to_equal: bool = False) -> MaterializationReport:
    today = today or date.today()
    report = MaterializationReport()

    templates = store.list_due_templates(today)
    logger.info("Found %d recurring expenses to process", len(templates))

    for template in templates:
        if not is_due(template, today):
            report.skipped.append(template.id)
            continue
        try:
            expense_id = materialize_template(store, template, today, fallback_to_equal)
        except Exception:
            logger.exception("Error processing recurring expense %s (%r)", template.id, template.name)
            report.failed.append(template.id)
            continue
        report.created.append(expense_id)

    logger.info(
        "Recurring expenses processed: %d created, %d failed, %d skipped",
        len(report.created),
        len(report.failed),
        len(report.skipped),
    )
    return report
