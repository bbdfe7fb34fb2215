"""
Operational accounting for café owners: daily snapshot, profit per item and
per category, best/worst sellers and waste valuation.

Everything here is read-side aggregation over completed orders and the
stock movement ledger, recomputed on every call. Sums are kept as Decimal
and only rounded to 2 dp in the returned rows.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from qahwa.config import settings
from qahwa.errors import UnitConversionError
from qahwa.models.core import (
    AccountingSnapshot, MovementType, Order, OrderItem, RawItem, SOLD_STATUSES, StockMovement,
)
from qahwa.services.money import D, ZERO, _money, _pct
from qahwa.services.recipes import compute_item_cost

logger = logging.getLogger(__name__)

LOW_VOLUME = 5


# ---------- date helpers ----------

def _tz() -> ZoneInfo:
    return ZoneInfo(settings.BUSINESS_TZ)


def today() -> date:
    return datetime.now(_tz()).date()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a business day in UTC."""
    start = datetime.combine(day, time.min, tzinfo=_tz())
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def date_range(start: date | None, end: date | None) -> tuple[date, date]:
    """Fill in the default window and put the dates in order."""
    end = end or today()
    start = start or (end - timedelta(days=settings.REPORT_DEFAULT_DAYS))
    if start > end:
        start, end = end, start
    return start, end


def range_bounds(start: date | None, end: date | None) -> tuple[datetime, datetime]:
    start, end = date_range(start, end)
    return day_bounds(start)[0], day_bounds(end)[1]


# ---------- order lines ----------

def _sold_lines(db: Session, branch_id: str, start: datetime, end: datetime) -> list[tuple[OrderItem, Order]]:
    return (
        db.query(OrderItem, Order)
          .join(Order, Order.id == OrderItem.order_id)
          .filter(
              Order.branch_id == branch_id,
              Order.status.in_(SOLD_STATUSES),
              Order.completed_at.isnot(None),
              Order.completed_at >= start,
              Order.completed_at < end,
              OrderItem.deleted_at.is_(None),
          )
          .all()
    )


def _unit_cost(db: Session, line: OrderItem, cache: dict) -> Decimal:
    if line.unit_cost is not None:
        return D(line.unit_cost)
    # orders completed before costing existed: fall back to today's recipe
    if line.item_id not in cache:
        try:
            cache[line.item_id] = compute_item_cost(db, line.item_id)
        except UnitConversionError as e:
            logger.warning(f"Cannot cost item {line.item_id}: {e}")
            cache[line.item_id] = ZERO
    return cache[line.item_id]


def _item_stats(db: Session, branch_id: str, start: datetime, end: datetime) -> dict[str, dict]:
    stats: dict[str, dict] = {}
    cache: dict[str, Decimal] = {}
    for line, _order in _sold_lines(db, branch_id, start, end):
        s = stats.setdefault(line.item_id, {
            "name": line.name or "Unknown Item",
            "category": line.category or "Uncategorized",
            "quantity": 0,
            "revenue": ZERO,
            "cogs": ZERO,
        })
        qty = int(line.quantity or 0)
        s["quantity"] += qty
        s["revenue"] += D(line.unit_price) * qty
        s["cogs"] += _unit_cost(db, line, cache) * qty
    return stats


def _item_row(item_id: str, s: dict) -> dict:
    profit = s["revenue"] - s["cogs"]
    return {
        "item_id": item_id,
        "item_name": s["name"],
        "category": s["category"],
        "quantity_sold": s["quantity"],
        "total_revenue": _money(s["revenue"]),
        "total_cogs": _money(s["cogs"]),
        "total_profit": _money(profit),
        "profit_margin": _pct(profit, s["revenue"]),
        "profit_per_unit": _money(profit / s["quantity"]) if s["quantity"] else 0.0,
        "_profit": profit,
    }


def _public(row: dict) -> dict:
    return {k: v for k, v in row.items() if not k.startswith("_")}


# ---------- waste ----------

def _waste_rows(db: Session, branch_id: str, start: datetime, end: datetime) -> list[dict]:
    rows = (
        db.query(StockMovement, RawItem)
          .join(RawItem, RawItem.id == StockMovement.raw_item_id)
          .filter(
              StockMovement.branch_id == branch_id,
              StockMovement.movement_type == MovementType.WASTE,
              StockMovement.created_at >= start,
              StockMovement.created_at < end,
          )
          .all()
    )
    out = []
    for mv, raw in rows:
        qty = abs(D(mv.quantity))
        unit_cost = D(mv.unit_cost) if mv.unit_cost is not None else D(raw.unit_cost)
        out.append({
            "movement_id": mv.id,
            "raw_item_id": raw.id,
            "raw_item_name": raw.name_ar or "Unknown",
            "quantity": float(qty),
            "unit": raw.unit.value,
            "unit_cost": float(unit_cost),
            "waste_amount": _money(qty * unit_cost),
            "notes": mv.notes or "No reason specified",
            "created_at": mv.created_at.isoformat() if mv.created_at else None,
            "_amount": qty * unit_cost,
        })
    out.sort(key=lambda r: r["_amount"], reverse=True)
    return out


def get_waste_report(db: Session, branch_id: str, start: datetime, end: datetime) -> list[dict]:
    return [_public(r) for r in _waste_rows(db, branch_id, start, end)]


# ---------- reports ----------

def get_daily_snapshot(db: Session, branch_id: str, day: date | None = None) -> dict:
    day = day or today()
    start, end = day_bounds(day)

    lines = _sold_lines(db, branch_id, start, end)
    cache: dict[str, Decimal] = {}
    order_ids = set()
    items_sold = 0
    revenue = ZERO
    cogs = ZERO
    for line, order in lines:
        qty = int(line.quantity or 0)
        order_ids.add(order.id)
        items_sold += qty
        revenue += D(line.unit_price) * qty
        cogs += _unit_cost(db, line, cache) * qty

    waste = _waste_rows(db, branch_id, start, end)
    waste_amount = sum((r["_amount"] for r in waste), ZERO)
    profit = revenue - cogs

    return {
        "date": day.isoformat(),
        "branch_id": branch_id,
        "sales_count": len(order_ids),
        "items_sold": items_sold,
        "total_revenue": _money(revenue),
        "total_cogs": _money(cogs),
        "total_profit": _money(profit),
        "profit_margin": _pct(profit, revenue),
        "waste_amount": _money(waste_amount),
        "waste_percentage": _pct(waste_amount, revenue),
        "waste_details": [_public(r) for r in waste],
        "currency": settings.CURRENCY,
    }


def get_profit_per_drink(db: Session, branch_id: str, start: datetime, end: datetime) -> list[dict]:
    rows = [_item_row(item_id, s) for item_id, s in _item_stats(db, branch_id, start, end).items()]
    rows.sort(key=lambda r: r["item_name"])
    return [_public(r) for r in rows]


def get_profit_per_category(db: Session, branch_id: str, start: datetime, end: datetime) -> list[dict]:
    cats: dict[str, dict] = {}
    for s in _item_stats(db, branch_id, start, end).values():
        c = cats.setdefault(s["category"] or "Other", {"quantity": 0, "revenue": ZERO, "cogs": ZERO})
        c["quantity"] += s["quantity"]
        c["revenue"] += s["revenue"]
        c["cogs"] += s["cogs"]

    out = []
    for category, c in sorted(cats.items()):
        profit = c["revenue"] - c["cogs"]
        out.append({
            "category": category,
            "quantity_sold": c["quantity"],
            "total_revenue": _money(c["revenue"]),
            "total_cogs": _money(c["cogs"]),
            "total_profit": _money(profit),
            "profit_margin": _pct(profit, c["revenue"]),
        })
    return out


def get_top_profitable_items(db: Session, branch_id: str, start: datetime, end: datetime, limit: int = 10) -> list[dict]:
    rows = [_item_row(item_id, s) for item_id, s in _item_stats(db, branch_id, start, end).items()]
    rows.sort(key=lambda r: r["_profit"], reverse=True)
    return [
        {k: r[k] for k in ("item_id", "item_name", "category", "quantity_sold", "total_revenue", "total_profit", "profit_margin")}
        for r in rows[:max(limit, 0)]
    ]


def _reason_for_loss(row: dict) -> str:
    m = row["profit_margin"]
    if m < 0:
        return "Loss - selling below cost"
    if m < 10:
        return "Very low margin (< 10%)"
    if m < 30:
        return "Low margin (10-30%)"
    if row["quantity_sold"] < LOW_VOLUME:
        return "Low sales volume"
    return ""


def get_worst_items(db: Session, branch_id: str, start: datetime, end: datetime, limit: int = 10) -> list[dict]:
    rows = [_item_row(item_id, s) for item_id, s in _item_stats(db, branch_id, start, end).items()]
    rows.sort(key=lambda r: r["_profit"])
    out = []
    for r in rows[:max(limit, 0)]:
        item = {k: r[k] for k in ("item_id", "item_name", "category", "quantity_sold", "total_revenue", "total_profit", "profit_margin")}
        item["reason_for_loss"] = _reason_for_loss(r)
        out.append(item)
    return out


# ---------- persisted snapshots ----------

def save_daily_snapshot(db: Session, tenant_id: str, branch_id: str, user_id: str | None, day: date | None = None) -> AccountingSnapshot:
    """Compute the day's snapshot and store it as a new row. Does not commit."""
    day = day or today()
    snap = get_daily_snapshot(db, branch_id, day)
    start, end = day_bounds(day)
    items = [_item_row(item_id, s) for item_id, s in _item_stats(db, branch_id, start, end).items()]
    items.sort(key=lambda r: D(r["total_revenue"]), reverse=True)
    top_products = [
        {"product_id": r["item_id"], "product_name": r["item_name"], "quantity": r["quantity_sold"], "revenue": r["total_revenue"]}
        for r in items[:5]
    ]
    revenue = D(snap["total_revenue"])
    orders = snap["sales_count"]

    row = AccountingSnapshot(
        tenant_id=tenant_id,
        branch_id=branch_id,
        snapshot_date=day,
        snapshot_type="daily",
        total_revenue=revenue,
        total_orders=orders,
        average_order_value=(revenue / orders) if orders else ZERO,
        total_cogs=D(snap["total_cogs"]),
        total_profit=D(snap["total_profit"]),
        profit_margin=D(snap["profit_margin"]),
        items_sold=snap["items_sold"],
        waste_amount=D(snap["waste_amount"]),
        waste_percentage=D(snap["waste_percentage"]),
        waste_details=snap["waste_details"],
        top_products=top_products,
        created_by=user_id,
    )
    db.add(row)
    db.flush()
    logger.info(f"Saved daily snapshot {row.id} for branch {branch_id} on {day}: revenue {snap['total_revenue']}, profit {snap['total_profit']}")
    return row


def list_snapshots(db: Session, tenant_id: str | None, branch_id: str, start: date, end: date) -> list[AccountingSnapshot]:
    q = db.query(AccountingSnapshot).filter(
        AccountingSnapshot.branch_id == branch_id,
        AccountingSnapshot.snapshot_date >= start,
        AccountingSnapshot.snapshot_date <= end,
    )
    if tenant_id:
        q = q.filter(AccountingSnapshot.tenant_id == tenant_id)
    return q.order_by(AccountingSnapshot.snapshot_date.desc(), AccountingSnapshot.created_at.desc()).all()


def snapshot_out(s: AccountingSnapshot) -> dict:
    return {
        "id": s.id,
        "tenant_id": s.tenant_id,
        "branch_id": s.branch_id,
        "snapshot_date": s.snapshot_date.isoformat(),
        "snapshot_type": s.snapshot_type,
        "total_revenue": _money(s.total_revenue),
        "total_orders": s.total_orders,
        "average_order_value": _money(s.average_order_value),
        "total_cogs": _money(s.total_cogs),
        "total_profit": _money(s.total_profit),
        "profit_margin": _money(s.profit_margin),
        "items_sold": s.items_sold,
        "waste_amount": _money(s.waste_amount),
        "waste_percentage": _money(s.waste_percentage),
        "waste_details": s.waste_details or [],
        "top_products": s.top_products or [],
        "created_by": s.created_by,
        "is_approved": bool(s.is_approved),
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
