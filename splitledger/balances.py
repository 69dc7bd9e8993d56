"""Per-member balances recomputed from a group's full payment and share history."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Hashable, Iterable, Mapping, Tuple

from .errors import InvalidAmount
from .money import ZERO, from_cents, to_cents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceRecord:
    member: Hashable
    paid_cents: int
    owed_cents: int

    @property
    def total_paid(self) -> Decimal:
        return from_cents(self.paid_cents)

    @property
    def total_owed(self) -> Decimal:
        return from_cents(self.owed_cents)

    @property
    def balance(self) -> Decimal:
        # positive: the group owes this member
        return from_cents(self.paid_cents - self.owed_cents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.member,
            "total_paid": float(self.total_paid),
            "total_owed": float(self.total_owed),
            "balance": float(self.balance),
        }


def _coerce_cents(amount: Any, member: Hashable, kind: str) -> int:
    try:
        return to_cents(amount)
    except InvalidAmount:
        logger.warning("Ignoring non-numeric %s amount %r for member %s", kind, amount, member)
        return 0


def _accumulate(
    totals: Dict[Hashable, int], records: Iterable[Tuple[Hashable, Any]], kind: str
) -> None:
    for member, amount in records:
        if member not in totals:
            logger.debug("Skipping %s for non-member %s", kind, member)
            continue
        totals[member] += _coerce_cents(amount, member, kind)


def aggregate(
    members: Iterable[Hashable],
    payments: Iterable[Tuple[Hashable, Any]],
    shares: Iterable[Tuple[Hashable, Any]],
) -> Dict[Hashable, BalanceRecord]:
    """
    Sum payments into ``total_paid`` and shares into ``total_owed`` for every
    member, in the order ``members`` was given.

    Records for participants outside ``members`` are ignored. Non-numeric
    amounts count as zero.
    """
    paid = {member: 0 for member in members}
    owed = dict.fromkeys(paid, 0)

    _accumulate(paid, payments, "payment")
    _accumulate(owed, shares, "share")

    return {member: BalanceRecord(member, paid[member], owed[member]) for member in paid}


def total_balance(balances: Mapping[Hashable, BalanceRecord]) -> Decimal:
    if not balances:
        return ZERO
    return from_cents(sum(record.paid_cents - record.owed_cents for record in balances.values()))
