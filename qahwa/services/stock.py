"""Stock ledger: per-branch running balances, the append-only movement log
and low-stock alerts.

A balance change reads ``(current_quantity, version)``, computes the new
balance in Decimal at the column scale, and writes it back with
``UPDATE ... WHERE id = :id AND version = :version`` in the same
transaction as the ``stock_movement`` insert. A concurrent writer bumps the
version, so the loser re-reads and retries instead of overwriting.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from qahwa.config import settings
from qahwa.errors import (
    InsufficientStockError, NotFoundError, StockConflictError, UnitConversionError, ValidationError,
)
from qahwa.models.core import (
    AlertType, BranchStock, MovementType, Order, OrderItem, RawItem, RecipeItem,
    ReferenceType, StockAlert, StockMovement,
)
from qahwa.services.money import D, ZERO
from qahwa.services.recipes import tenant_conversions
from qahwa.services.units import convert, parse_unit

logger = logging.getLogger(__name__)


def signed_delta(movement_type: MovementType, quantity) -> Decimal:
    qty = D(quantity)
    if movement_type == MovementType.ADJUSTMENT:
        if qty == 0:
            raise ValidationError("adjustment quantity must be non-zero")
        return qty
    if qty <= 0:
        raise ValidationError("quantity must be positive")
    if movement_type == MovementType.IN:
        return qty
    return -qty


def _stock_row(db: Session, branch_id: str, raw_item_id: str) -> BranchStock:
    stock = (
        db.query(BranchStock)
          .filter(BranchStock.branch_id == branch_id, BranchStock.raw_item_id == raw_item_id)
          .first()
    )
    if stock:
        return stock
    try:
        with db.begin_nested():
            stock = BranchStock(branch_id=branch_id, raw_item_id=raw_item_id, current_quantity=ZERO)
            db.add(stock)
    except IntegrityError:
        # another request created it first
        stock = (
            db.query(BranchStock)
              .filter(BranchStock.branch_id == branch_id, BranchStock.raw_item_id == raw_item_id)
              .one()
        )
    return stock


QTY = Decimal("0.001")  # branch_stock.current_quantity scale
MAX_ATTEMPTS = 3


def _read_balance(db: Session, stock_id: str) -> tuple[Decimal, int]:
    cur, version = db.execute(
        select(BranchStock.current_quantity, BranchStock.version).where(BranchStock.id == stock_id)
    ).one()
    return D(cur).quantize(QTY), version


def _apply_delta(db: Session, stock: BranchStock, delta: Decimal) -> Decimal:
    for _ in range(MAX_ATTEMPTS):
        current, version = _read_balance(db, stock.id)
        new_qty = (current + delta).quantize(QTY)
        if new_qty < 0:
            raise InsufficientStockError(stock.raw_item_id, current, -delta)
        res = db.execute(
            update(BranchStock)
            .where(BranchStock.id == stock.id, BranchStock.version == version)
            .values(current_quantity=new_qty, version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            db.expire(stock)
            return new_qty
        logger.info(f"Stock row {stock.id} changed concurrently (version {version}), retrying")
    raise StockConflictError(stock.raw_item_id)


def record_movement(
    db: Session,
    branch_id: str,
    raw_item_id: str,
    movement_type,
    quantity,
    notes: str | None = None,
    actor: str | None = None,
    unit=None,
    reference_type: ReferenceType = ReferenceType.MANUAL,
    reference_id: str | None = None,
) -> StockMovement:
    """Apply a stock change and append its ledger row. Does not commit.

    ``quantity`` is a positive magnitude for in/out/waste and a signed delta
    for adjustments. When ``unit`` differs from the raw item's unit the
    quantity is converted first.
    """
    if not branch_id:
        raise ValidationError("branch_id is required")
    try:
        mtype = movement_type if isinstance(movement_type, MovementType) else MovementType(movement_type)
    except ValueError:
        raise ValidationError(f"invalid movement_type: {movement_type}")
    try:
        reference_type = ReferenceType(reference_type)
    except ValueError:
        raise ValidationError(f"invalid reference_type: {reference_type}")
    if reference_type == ReferenceType.PURCHASE and mtype != MovementType.IN:
        raise ValidationError("purchase receipts must be `in` movements")

    raw = db.get(RawItem, raw_item_id)
    if not raw:
        raise NotFoundError("raw item not found")
    if not raw.is_active and reference_type != ReferenceType.ORDER:
        raise ValidationError("raw item is inactive")

    if unit is not None and parse_unit(unit) != raw.unit:
        quantity = convert(quantity, unit, raw.unit, tenant_conversions(db, raw.tenant_id))

    delta = signed_delta(mtype, quantity).quantize(QTY)
    if delta == 0:
        raise ValidationError("quantity is below the stock precision (0.001)")
    stock = _stock_row(db, branch_id, raw_item_id)
    try:
        new_qty = _apply_delta(db, stock, delta)
    except InsufficientStockError as e:
        logger.warning(f"Rejected {mtype.value} of {-delta} {raw.unit.value} for {raw.code} at branch {branch_id}: only {e.available} available")
        raise

    mv = StockMovement(
        branch_id=branch_id,
        raw_item_id=raw_item_id,
        movement_type=mtype,
        quantity=delta,
        previous_quantity=new_qty - delta,
        new_quantity=new_qty,
        unit_cost=D(raw.unit_cost),
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=actor,
    )
    db.add(mv)
    db.flush()
    logger.info(f"Stock {mtype.value} {raw.code} at branch {branch_id}: {mv.previous_quantity} -> {new_qty}")

    check_alerts(db, branch_id, raw, new_qty)
    return mv


def check_alerts(db: Session, branch_id: str, raw: RawItem, current) -> StockAlert | None:
    current = D(current)
    threshold = D(raw.min_stock_threshold)
    if current == 0:
        alert_type = AlertType.OUT_OF_STOCK
    elif current <= threshold:
        alert_type = AlertType.LOW_STOCK
    else:
        return None

    alert = (
        db.query(StockAlert)
          .filter(StockAlert.branch_id == branch_id, StockAlert.raw_item_id == raw.id, StockAlert.is_resolved.is_(False))
          .first()
    )
    if alert:
        alert.alert_type = alert_type
        alert.current_quantity = current
        alert.threshold_quantity = threshold
    else:
        alert = StockAlert(
            branch_id=branch_id,
            raw_item_id=raw.id,
            alert_type=alert_type,
            current_quantity=current,
            threshold_quantity=threshold,
        )
        db.add(alert)
        logger.info(f"Opened {alert_type.value} alert for {raw.code} at branch {branch_id} ({current} <= {threshold})")
    db.flush()
    return alert


def list_movements(db: Session, branch_id: str, limit: int | None = None, raw_item_id: str | None = None) -> list[StockMovement]:
    if limit is None:
        limit = settings.MOVEMENTS_DEFAULT_LIMIT
    limit = max(1, min(int(limit), settings.MOVEMENTS_MAX_LIMIT))
    q = db.query(StockMovement).filter(StockMovement.branch_id == branch_id)
    if raw_item_id:
        q = q.filter(StockMovement.raw_item_id == raw_item_id)
    return q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()


def list_alerts(db: Session, branch_id: str, unresolved_only: bool = False, limit: int | None = None) -> list[StockAlert]:
    q = db.query(StockAlert).filter(StockAlert.branch_id == branch_id)
    if unresolved_only:
        q = q.filter(StockAlert.is_resolved.is_(False))
    return q.order_by(StockAlert.created_at.desc()).limit(limit or settings.ALERTS_LIMIT).all()


def resolve_alert(db: Session, alert_id: str, action_taken: str | None, actor: str | None) -> tuple[StockAlert, bool]:
    """Mark an alert resolved. Returns ``(alert, changed)``; resolving an
    already resolved alert changes nothing."""
    alert = db.get(StockAlert, alert_id)
    if not alert:
        raise NotFoundError("alert not found")
    if alert.is_resolved:
        return alert, False
    alert.is_resolved = True
    alert.resolved_by = actor
    alert.resolved_at = datetime.now(timezone.utc)
    alert.action_taken = action_taken
    db.flush()
    logger.info(f"Alert {alert.id} resolved by {actor}")
    return alert, True


def get_stock_level(db: Session, branch_id: str, raw_item_id: str) -> dict | None:
    raw = db.get(RawItem, raw_item_id)
    if not raw:
        return None
    stock = (
        db.query(BranchStock)
          .filter(BranchStock.branch_id == branch_id, BranchStock.raw_item_id == raw_item_id)
          .first()
    )
    current = D(stock.current_quantity) if stock else ZERO
    threshold = D(raw.min_stock_threshold)
    if current == 0:
        status = "out_of_stock"
    elif current <= threshold:
        status = "low"
    else:
        status = "sufficient"
    return {
        "branch_id": branch_id,
        "raw_item_id": raw_item_id,
        "current_quantity": current,
        "unit": raw.unit.value,
        "min_threshold": threshold,
        "status": status,
    }


def deduct_for_order(db: Session, order: Order, actor: str | None) -> dict:
    """Consume recipe ingredients for every line of a completed order.

    One ``out`` movement per raw item. A raw item that cannot be deducted
    (no stock, missing unit conversion) is reported in ``errors`` and the
    remaining deductions still go through.
    """
    lines = db.query(OrderItem).filter(OrderItem.order_id == order.id).all()
    conversions = tenant_conversions(db, order.tenant_id)

    needed: dict[str, Decimal] = {}
    errors: list[str] = []
    for line in lines:
        rows = (
            db.query(RecipeItem, RawItem)
              .join(RawItem, RawItem.id == RecipeItem.raw_item_id)
              .filter(RecipeItem.coffee_item_id == line.item_id)
              .all()
        )
        for recipe, raw in rows:
            try:
                qty = convert(recipe.quantity, recipe.unit, raw.unit, conversions) * line.quantity
            except UnitConversionError as e:
                errors.append(f"{raw.id}: {e}")
                continue
            needed[raw.id] = needed.get(raw.id, ZERO) + qty

    deductions = []
    for raw_item_id, qty in needed.items():
        try:
            with db.begin_nested():
                mv = record_movement(
                    db, order.branch_id, raw_item_id, MovementType.OUT, qty,
                    notes=f"Order: {order.order_no}", actor=actor,
                    reference_type=ReferenceType.ORDER, reference_id=order.id,
                )
        except (InsufficientStockError, StockConflictError, ValidationError, NotFoundError) as e:
            errors.append(f"{raw_item_id}: {e}")
            continue
        deductions.append({
            "raw_item_id": raw_item_id,
            "previous_qty": mv.previous_quantity,
            "deducted_qty": qty,
            "new_qty": mv.new_quantity,
        })

    if errors:
        logger.warning(f"Order {order.id}: {len(errors)} ingredient deduction(s) failed: {errors}")
    return {"success": not errors, "deductions": deductions, "errors": errors}
