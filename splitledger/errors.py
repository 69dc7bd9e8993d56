"""Errors raised by the split and balance engine.

Every error carries a short ``code`` that the HTTP layer returns verbatim in
its ``{"error": ...}`` payload.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class SplitLedgerError(ValueError):
    code = "split_ledger_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class InvalidAmount(SplitLedgerError):
    """A total, share or payment amount is negative or not a number."""

    code = "invalid_amount"

    def __init__(self, message: str, value: Any = None) -> None:
        super().__init__(message)
        self.value = value


class ShareMismatch(SplitLedgerError):
    """Custom amounts or percentages do not add up to their target."""

    code = "share_total_mismatch"

    def __init__(self, message: str, expected: Decimal, actual: Decimal) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["expected"] = float(self.expected)
        payload["actual"] = float(self.actual)
        return payload


class PaymentMismatch(ShareMismatch):
    code = "payment_total_mismatch"


class InvalidPolicy(SplitLedgerError):
    code = "invalid_split_policy"

    def __init__(self, message: str, split_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.split_type = split_type
