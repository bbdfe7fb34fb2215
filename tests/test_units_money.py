from decimal import Decimal

import pytest

from qahwa.errors import UnitConversionError
from qahwa.models.core import Unit, UnitConversion
from qahwa.services.money import D, _money, _pct, margin
from qahwa.services.units import convert, factor, parse_unit


def test_money_rounds_half_up():
    assert _money(Decimal("1.005")) == 1.01
    assert _money(Decimal("2.344")) == 2.34
    assert _money(None) == 0.0


def test_decimal_from_float_has_no_binary_noise():
    assert D(0.1) + D(0.2) == Decimal("0.3")


def test_margin_is_zero_without_revenue():
    assert margin(Decimal("-5"), Decimal("0")) == 0
    assert _pct(0, 0) == 0.0


def test_margin_percentage():
    assert _pct(Decimal("146"), Decimal("150")) == 97.33
    assert _pct(Decimal("-2"), Decimal("8")) == -25.0


def test_parse_unit_aliases():
    assert parse_unit("Liter") == Unit.L
    assert parse_unit("litre") == Unit.L
    assert parse_unit("piece") == Unit.PCS
    assert parse_unit(Unit.G) == Unit.G


def test_parse_unit_unknown():
    with pytest.raises(UnitConversionError):
        parse_unit("cup")


def test_builtin_conversions():
    assert convert(200, "ml", "l") == Decimal("0.200")
    assert convert("1.5", "kg", "g") == Decimal("1500.0")
    assert convert(7, "pcs", "pcs") == Decimal("7")


def test_tenant_conversion_direct_and_inverse():
    rows = [UnitConversion(tenant_id="t", from_unit=Unit.PCS, to_unit=Unit.G, conversion_factor=Decimal("50"))]
    assert convert(2, "pcs", "g", rows) == Decimal("100")
    assert convert(100, "g", "pcs", rows) == Decimal("2")


def test_tenant_conversion_wins_over_builtin():
    rows = [UnitConversion(tenant_id="t", from_unit=Unit.KG, to_unit=Unit.G, conversion_factor=Decimal("999"))]
    assert factor("kg", "g", rows) == Decimal("999")


def test_missing_conversion_fails():
    with pytest.raises(UnitConversionError):
        convert(1, "g", "ml")
