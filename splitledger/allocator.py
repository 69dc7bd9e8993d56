"""
Share allocation for a single expense.

Splits a total across an ordered list of participants under one of three
policies:

- equal: the total is divided evenly, leftover cents land on the first
  participants in input order, then percentages are derived from the final
  amounts and their leftover hundredths are placed the same way
- custom: the caller gives an amount per participant
- percentage: the caller gives a percentage per participant

Equal splits always conserve the total to the cent and 100% to the
hundredth. Custom and percentage inputs are taken as final once they pass
the 0.01 tolerance check.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import InvalidAmount, InvalidPolicy, PaymentMismatch, ShareMismatch
from .money import (
    FULL_PERCENT_BP,
    MONEY_TOLERANCE_CENTS,
    PERCENT_TOLERANCE_BP,
    divide_half_up,
    from_basis_points,
    from_cents,
    to_basis_points,
    to_cents,
)

logger = logging.getLogger(__name__)

Participant = Hashable


class SplitType(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class EqualSplit:
    split_type: ClassVar[SplitType] = SplitType.EQUAL


@dataclass(frozen=True)
class CustomSplit:
    amounts: Mapping[Any, Any]
    split_type: ClassVar[SplitType] = SplitType.CUSTOM


@dataclass(frozen=True)
class PercentageSplit:
    percentages: Mapping[Any, Any]
    split_type: ClassVar[SplitType] = SplitType.PERCENTAGE


SplitPolicy = Union[EqualSplit, CustomSplit, PercentageSplit]


@dataclass(frozen=True)
class ShareRecord:
    participant: Participant
    amount_cents: int
    percentage_bp: int

    @property
    def share_amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def share_percentage(self) -> Decimal:
        return from_basis_points(self.percentage_bp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.participant,
            "share_amount": float(self.share_amount),
            "share_percentage": float(self.share_percentage),
        }


@dataclass(frozen=True)
class PaymentRecord:
    participant: Participant
    amount_cents: int

    @property
    def amount_paid(self) -> Decimal:
        return from_cents(self.amount_cents)

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.participant, "amount_paid": float(self.amount_paid)}


@dataclass(frozen=True)
class RemainderPlan:
    participant_index: int
    delta_cents: int


def plan_remainder(diff: int, count: int) -> List[RemainderPlan]:
    """
    Spread ``diff`` units over ``count`` slots, one unit per slot starting
    from the first.

    Equal splits never leave more than ``count`` units over, so in practice
    each planned slot moves by exactly one; a larger ``diff`` wraps around
    instead of looping.
    """
    if diff == 0 or count <= 0:
        return []

    sign = 1 if diff > 0 else -1
    per_slot, extra = divmod(abs(diff), count)
    plan = []
    for index in range(count):
        delta = per_slot + (1 if index < extra else 0)
        if delta:
            plan.append(RemainderPlan(index, sign * delta))
    return plan


def _apply_plan(values: List[int], plan: Sequence[RemainderPlan]) -> None:
    for step in plan:
        values[step.participant_index] += step.delta_cents


def _percentage_of(amount_cents: int, total_cents: int) -> int:
    if total_cents <= 0:
        return 0
    return divide_half_up(amount_cents * FULL_PERCENT_BP, total_cents)


def _raw_value(raw_inputs: Mapping[Any, Any], participant: Participant) -> Any:
    # JSON object keys arrive as strings while participant ids are usually ints
    if participant in raw_inputs:
        value = raw_inputs[participant]
    else:
        value = raw_inputs.get(str(participant))
    if value is None or value == "":
        return 0
    return value


def _allocate_equal(total_cents: int, participants: Sequence[Participant]) -> List[ShareRecord]:
    count = len(participants)
    base = divide_half_up(total_cents, count)

    amounts = [base] * count
    _apply_plan(amounts, plan_remainder(total_cents - base * count, count))

    if count == 1:
        percentages = [FULL_PERCENT_BP]
    elif total_cents == 0:
        percentages = [0] * count
    else:
        percentages = [_percentage_of(amount, total_cents) for amount in amounts]
        _apply_plan(percentages, plan_remainder(FULL_PERCENT_BP - sum(percentages), count))

    return [
        ShareRecord(participant, amount, percentage)
        for participant, amount, percentage in zip(participants, amounts, percentages)
    ]


def _allocate_custom(
    total_cents: int, participants: Sequence[Participant], raw_amounts: Mapping[Any, Any]
) -> List[ShareRecord]:
    amounts = []
    for participant in participants:
        cents = to_cents(_raw_value(raw_amounts, participant))
        if cents < 0:
            raise InvalidAmount(f"Share for participant {participant} must not be negative.", cents)
        amounts.append(cents)

    share_total = sum(amounts)
    if abs(share_total - total_cents) > MONEY_TOLERANCE_CENTS:
        raise ShareMismatch(
            f"Custom shares ({from_cents(share_total)}) must add up to the "
            f"total expense amount ({from_cents(total_cents)}).",
            expected=from_cents(total_cents),
            actual=from_cents(share_total),
        )

    return [
        ShareRecord(participant, amount, _percentage_of(amount, total_cents))
        for participant, amount in zip(participants, amounts)
    ]


def _allocate_percentage(
    total_cents: int, participants: Sequence[Participant], raw_percentages: Mapping[Any, Any]
) -> List[ShareRecord]:
    percentages = []
    for participant in participants:
        basis_points = to_basis_points(_raw_value(raw_percentages, participant))
        if basis_points < 0:
            raise InvalidAmount(f"Percentage for participant {participant} must not be negative.", basis_points)
        percentages.append(basis_points)

    percentage_total = sum(percentages)
    if abs(percentage_total - FULL_PERCENT_BP) > PERCENT_TOLERANCE_BP:
        raise ShareMismatch(
            f"Custom percentages ({from_basis_points(percentage_total)}%) must add up to 100%.",
            expected=from_basis_points(FULL_PERCENT_BP),
            actual=from_basis_points(percentage_total),
        )

    return [
        ShareRecord(participant, divide_half_up(total_cents * percentage, FULL_PERCENT_BP), percentage)
        for participant, percentage in zip(participants, percentages)
    ]


def allocate(total_amount: Any, participants: Iterable[Participant], policy: SplitPolicy) -> List[ShareRecord]:
    """
    Allocate ``total_amount`` across ``participants`` under ``policy``.

    Args:
        total_amount: Expense total, zero or positive
        participants: Ordered participant ids; order decides who absorbs
            leftover cents in an equal split
        policy: One of EqualSplit, CustomSplit or PercentageSplit

    Returns:
        One ShareRecord per participant, in input order

    Raises:
        InvalidAmount: total or a raw input is negative or not numeric
        ShareMismatch: custom amounts or percentages miss their target
            by more than 0.01
        InvalidPolicy: ``policy`` is not a split policy
    """
    participants = list(participants)
    if not participants:
        return []

    total_cents = to_cents(total_amount)
    if total_cents < 0:
        raise InvalidAmount(f"Expense amount must not be negative, got {from_cents(total_cents)}.", total_amount)

    if isinstance(policy, EqualSplit):
        shares = _allocate_equal(total_cents, participants)
    elif isinstance(policy, CustomSplit):
        shares = _allocate_custom(total_cents, participants, policy.amounts)
    elif isinstance(policy, PercentageSplit):
        shares = _allocate_percentage(total_cents, participants, policy.percentages)
    else:
        raise InvalidPolicy(f"Unsupported split policy: {policy!r}")

    logger.debug(
        "Allocated %s across %d participants (%s)",
        from_cents(total_cents),
        len(shares),
        policy.split_type.value,
    )
    return shares


def build_policy(
    split_type: Optional[str],
    raw_inputs: Optional[Mapping[Any, Any]] = None,
    fallback_to_equal: bool = False,
) -> SplitPolicy:
    """
    Turn the wire form (``split_type`` string plus optional raw inputs) into
    a split policy.

    An unknown split type, or a custom/percentage split without raw inputs,
    raises InvalidPolicy unless ``fallback_to_equal`` is set.
    """
    if split_type is None:
        split_type = SplitType.EQUAL.value

    try:
        resolved = SplitType(str(split_type).strip().lower())
    except ValueError:
        if fallback_to_equal:
            logger.warning("Unknown split type %r, defaulting to equal split", split_type)
            return EqualSplit()
        raise InvalidPolicy(f"Unknown split type: {split_type!r}", str(split_type)) from None

    if resolved is SplitType.EQUAL:
        return EqualSplit()

    if not raw_inputs:
        if fallback_to_equal:
            logger.warning("Missing shares for %s split, defaulting to equal split", resolved.value)
            return EqualSplit()
        raise InvalidPolicy(f"A {resolved.value} split requires per-participant shares.", resolved.value)

    if resolved is SplitType.CUSTOM:
        return CustomSplit(dict(raw_inputs))
    return PercentageSplit(dict(raw_inputs))


def validate_payments(total_amount: Any, payments: Iterable[Tuple[Participant, Any]]) -> List[PaymentRecord]:
    """Round each payment and check they add up to the expense total."""
    total_cents = to_cents(total_amount)

    records = []
    for participant, amount_paid in payments:
        cents = to_cents(amount_paid)
        if cents < 0:
            raise InvalidAmount(f"Payment by participant {participant} must not be negative.", amount_paid)
        records.append(PaymentRecord(participant, cents))

    paid_total = sum(record.amount_cents for record in records)
    if abs(paid_total - total_cents) > MONEY_TOLERANCE_CENTS:
        raise PaymentMismatch(
            f"Total amount paid ({from_cents(paid_total)}) must equal the "
            f"expense amount ({from_cents(total_cents)}).",
            expected=from_cents(total_cents),
            actual=from_cents(paid_total),
        )
    return records
