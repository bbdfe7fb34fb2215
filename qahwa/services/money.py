from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def D(x) -> Decimal:
    if x is None:
        return ZERO
    if isinstance(x, Decimal):
        return x
    # use string to avoid float binary artifacts
    return Decimal(str(x))


def _q2(x) -> Decimal:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def _money(x) -> float:
    return float(_q2(x))


def margin(profit, revenue) -> Decimal:
    """Profit as a percentage of revenue; 0 when there is no revenue."""
    revenue = D(revenue)
    if revenue == 0:
        return ZERO
    return D(profit) / revenue * HUNDRED


def _pct(profit, revenue) -> float:
    return _money(margin(profit, revenue))
