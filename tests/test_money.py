from decimal import Decimal

import pytest

from splitledger.errors import InvalidAmount
from splitledger.money import (
    amounts_close,
    divide_half_up,
    from_basis_points,
    from_cents,
    round2,
    to_basis_points,
    to_cents,
    to_decimal,
)


def test_to_decimal_rounds_half_up():
    assert to_decimal("0.125") == Decimal("0.13")
    assert to_decimal(2.675) == Decimal("2.68")
    assert to_decimal("-0.125") == Decimal("-0.13")
    assert to_decimal(10) == Decimal("10.00")
    assert round2(Decimal("3.333")) == Decimal("3.33")


@pytest.mark.parametrize("value", [None, True, "abc", "", float("nan"), float("inf"), [1], {"a": 1}])
def test_to_decimal_rejects_non_numeric(value):
    with pytest.raises(InvalidAmount):
        to_decimal(value)


def test_invalid_amount_is_a_value_error():
    with pytest.raises(ValueError):
        to_decimal("twelve")


def test_cents_conversion():
    assert to_cents("10") == 1000
    assert to_cents(3.335) == 334
    assert from_cents(334) == Decimal("3.34")
    assert from_cents(-5) == Decimal("-0.05")
    assert str(from_cents(1000)) == "10.00"


def test_basis_points_conversion():
    assert to_basis_points("33.33") == 3333
    assert from_basis_points(10000) == Decimal("100.00")


def test_divide_half_up():
    assert divide_half_up(1000, 3) == 333
    assert divide_half_up(2000, 3) == 667
    assert divide_half_up(5, 2) == 3
    assert divide_half_up(-5, 2) == -3
    assert divide_half_up(0, 4) == 0
    with pytest.raises(ValueError):
        divide_half_up(1, 0)


def test_amounts_close_uses_one_cent_tolerance():
    assert amounts_close(100, "99.99")
    assert amounts_close("100.01", 100)
    assert not amounts_close(100, "99.98")
