import logging
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from qahwa.db import get_db
from qahwa.deps import require_auth
from qahwa.errors import UnitConversionError
from qahwa.models.core import MenuCategory, MenuItem, Order, OrderItem, OrderStatus, SOLD_STATUSES
from qahwa.schemas.orders import OrderCompleteIn, OrderIn
from qahwa.services.money import D, ZERO, _money
from qahwa.services.recipes import compute_item_cost
from qahwa.services.stock import deduct_for_order
from qahwa.util.audit import audit

router = APIRouter(prefix="/orders", tags=["orders"])
logger = logging.getLogger(__name__)


def _order_out(db: Session, o: Order) -> dict:
    lines = db.query(OrderItem).filter(OrderItem.order_id == o.id).all()
    return {
        "id": o.id,
        "tenant_id": o.tenant_id,
        "branch_id": o.branch_id,
        "order_no": o.order_no,
        "status": o.status.value,
        "total_amount": _money(o.total_amount),
        "cost_of_goods": _money(o.cost_of_goods) if o.cost_of_goods is not None else None,
        "completed_at": o.completed_at.isoformat() if o.completed_at else None,
        "items": [
            {
                "id": l.id,
                "item_id": l.item_id,
                "name": l.name,
                "category": l.category,
                "quantity": l.quantity,
                "unit_price": _money(l.unit_price),
                "unit_cost": float(l.unit_cost) if l.unit_cost is not None else None,
            }
            for l in lines
        ],
    }


@router.post("/")
def open_order(body: OrderIn, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    o = Order(
        tenant_id=body.tenant_id,
        branch_id=body.branch_id,
        order_no=body.order_no or f"ORD-{int(datetime.now(timezone.utc).timestamp() * 1000)}",
        status=OrderStatus.PENDING,
        created_by=sub,
    )
    db.add(o)
    db.flush()

    total = ZERO
    for line in body.lines:
        mitem = db.get(MenuItem, line.item_id)
        if not mitem or mitem.deleted_at is not None:
            db.rollback()
            raise HTTPException(404, detail=f"menu item not found: {line.item_id}")
        category = db.get(MenuCategory, mitem.category_id) if mitem.category_id else None
        price = D(line.unit_price) if line.unit_price is not None else D(mitem.price)
        db.add(OrderItem(
            order_id=o.id,
            item_id=mitem.id,
            name=mitem.name_en or mitem.name_ar,
            category=category.name if category else None,
            quantity=line.quantity,
            unit_price=price,
        ))
        total += price * line.quantity

    o.total_amount = total
    db.commit()
    db.refresh(o)
    return _order_out(db, o)


@router.post("/{order_id}/complete")
def complete_order(
    order_id: str,
    body: OrderCompleteIn | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    """
    Close an order: freeze each line's recipe cost, set the order COGS and
    deduct ingredients from branch stock. Ingredient shortfalls do not block
    the sale; they come back in `inventory.errors`.
    """
    o = db.get(Order, order_id)
    if not o:
        raise HTTPException(404, detail="order not found")

    try:
        target = OrderStatus((body.status if body else "completed").lower())
    except ValueError:
        raise HTTPException(400, detail="invalid status")
    if target not in SOLD_STATUSES:
        raise HTTPException(400, detail="status must be completed or delivered")

    if o.status in SOLD_STATUSES:
        # already closed: nothing to deduct twice
        return {**_order_out(db, o), "inventory": None}
    if o.status == OrderStatus.CANCELLED:
        raise HTTPException(400, detail="order is cancelled")

    lines = db.query(OrderItem).filter(OrderItem.order_id == o.id).all()
    costs: dict[str, Decimal] = {}
    cogs = ZERO
    try:
        for l in lines:
            if l.item_id not in costs:
                costs[l.item_id] = compute_item_cost(db, l.item_id)
            l.unit_cost = costs[l.item_id]
            cogs += D(l.unit_cost) * l.quantity
    except UnitConversionError as e:
        db.rollback()
        raise HTTPException(400, detail=str(e))

    o.cost_of_goods = cogs
    o.status = target
    o.completed_at = datetime.now(timezone.utc)
    inventory = deduct_for_order(db, o, sub)
    audit(db, sub, "order", o.id, "COMPLETE", after={"cogs": cogs, "status": target.value})
    db.commit()
    db.refresh(o)
    logger.info(f"Order {o.order_no} {target.value}: total {o.total_amount}, COGS {cogs}")

    return {
        **_order_out(db, o),
        "inventory": {
            "success": inventory["success"],
            "deductions": [
                {k: (float(v) if k != "raw_item_id" else v) for k, v in d.items()}
                for d in inventory["deductions"]
            ],
            "errors": inventory["errors"],
        },
    }


@router.post("/{order_id}/cancel")
def cancel_order(order_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    o = db.get(Order, order_id)
    if not o:
        raise HTTPException(404, detail="order not found")
    if o.status in SOLD_STATUSES:
        raise HTTPException(400, detail="completed orders cannot be cancelled")
    o.status = OrderStatus.CANCELLED
    audit(db, sub, "order", o.id, "CANCEL")
    db.commit()
    return {"id": o.id, "status": o.status.value}


@router.get("/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    o = db.get(Order, order_id)
    if not o:
        raise HTTPException(404, detail="order not found")
    return _order_out(db, o)
