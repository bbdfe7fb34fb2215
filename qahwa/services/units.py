from decimal import Decimal
from typing import Iterable

from qahwa.errors import UnitConversionError
from qahwa.models.core import Unit, UnitConversion
from qahwa.services.money import D

ALIASES = {
    "liter": "l",
    "litre": "l",
    "piece": "pcs",
    "pc": "pcs",
}

# 1 <from> == factor <to>
BUILTIN_FACTORS: dict[tuple[Unit, Unit], Decimal] = {
    (Unit.KG, Unit.G): Decimal("1000"),
    (Unit.G, Unit.KG): Decimal("0.001"),
    (Unit.L, Unit.ML): Decimal("1000"),
    (Unit.ML, Unit.L): Decimal("0.001"),
}


def parse_unit(value) -> Unit:
    if isinstance(value, Unit):
        return value
    u = str(value or "").strip().lower()
    u = ALIASES.get(u, u)
    try:
        return Unit(u)
    except ValueError:
        raise UnitConversionError(f'Unit "{value}" not supported')


def factor(from_unit, to_unit, conversions: Iterable[UnitConversion] = ()) -> Decimal:
    src, dst = parse_unit(from_unit), parse_unit(to_unit)
    if src == dst:
        return Decimal("1")
    for c in conversions:
        if c.from_unit == src and c.to_unit == dst:
            return D(c.conversion_factor)
        if c.from_unit == dst and c.to_unit == src and D(c.conversion_factor) != 0:
            return Decimal("1") / D(c.conversion_factor)
    if (src, dst) in BUILTIN_FACTORS:
        return BUILTIN_FACTORS[(src, dst)]
    raise UnitConversionError(f"No conversion rule for {src.value} -> {dst.value}")


def convert(quantity, from_unit, to_unit, conversions: Iterable[UnitConversion] = ()) -> Decimal:
    return D(quantity) * factor(from_unit, to_unit, conversions)
