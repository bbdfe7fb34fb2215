import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from qahwa.db import get_db
from qahwa.deps import require_auth, require_perm
from qahwa.errors import (
    InsufficientStockError, NotFoundError, StockConflictError, UnitConversionError, ValidationError,
)
from qahwa.models.core import (
    RawItem, RawItemCategory, RecipeVersion, StockAlert, StockMovement, Unit, UnitConversion,
)
from qahwa.schemas.inventory import AlertResolveIn, MovementIn, RawItemIn, RecipeIn, UnitConversionIn
from qahwa.services import recipes, stock
from qahwa.services.money import D
from qahwa.util.audit import audit

router = APIRouter(prefix="/api/inventory", tags=["inventory"])
logger = logging.getLogger(__name__)


# ---------- helpers ----------

def _num(x: Decimal | float | None) -> float | None:
    return None if x is None else float(x)

def _raw_out(r: RawItem) -> dict:
    return {
        "id": r.id,
        "tenant_id": r.tenant_id,
        "code": r.code,
        "name_ar": r.name_ar,
        "name_en": r.name_en,
        "category": r.category.value,
        "unit": r.unit.value,
        "unit_cost": _num(r.unit_cost),
        "min_stock_threshold": _num(r.min_stock_threshold),
        "max_stock_level": _num(r.max_stock_level),
        "is_active": bool(r.is_active),
    }

def _movement_out(m: StockMovement) -> dict:
    return {
        "id": m.id,
        "branch_id": m.branch_id,
        "raw_item_id": m.raw_item_id,
        "movement_type": m.movement_type.value,
        "quantity": _num(m.quantity),
        "previous_quantity": _num(m.previous_quantity),
        "new_quantity": _num(m.new_quantity),
        "unit_cost": _num(m.unit_cost),
        "reference_type": m.reference_type.value,
        "reference_id": m.reference_id,
        "notes": m.notes,
        "created_by": m.created_by,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }

def _alert_out(a: StockAlert) -> dict:
    return {
        "id": a.id,
        "branch_id": a.branch_id,
        "raw_item_id": a.raw_item_id,
        "alert_type": a.alert_type.value,
        "current_quantity": _num(a.current_quantity),
        "threshold_quantity": _num(a.threshold_quantity),
        "is_resolved": bool(a.is_resolved),
        "resolved_by": a.resolved_by,
        "resolved_at": a.resolved_at.isoformat() if a.resolved_at else None,
        "action_taken": a.action_taken,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }

def _conversion_out(c: UnitConversion) -> dict:
    return {
        "id": c.id,
        "tenant_id": c.tenant_id,
        "from_unit": c.from_unit.value,
        "to_unit": c.to_unit.value,
        "conversion_factor": _num(c.conversion_factor),
    }

def _http(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(404, detail=str(e))
    if isinstance(e, StockConflictError):
        return HTTPException(409, detail=str(e))
    return HTTPException(400, detail=str(e))


# ---------- RAW ITEMS ----------

@router.post("/raw-items", status_code=201)
def add_raw_item(body: RawItemIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    r = RawItem(
        tenant_id=body.tenant_id,
        code=body.code,
        name_ar=body.name_ar,
        name_en=body.name_en,
        category=RawItemCategory(body.category),
        unit=Unit(body.unit),
        unit_cost=D(body.unit_cost),
        min_stock_threshold=D(body.min_stock_threshold),
        max_stock_level=D(body.max_stock_level) if body.max_stock_level is not None else None,
    )
    db.add(r)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, detail=f"raw item code already exists: {body.code}")
    db.refresh(r)
    return _raw_out(r)

@router.get("/raw-items")
def list_raw_items(
    tenant_id: str | None = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    q = db.query(RawItem)
    if tenant_id is not None:
        q = q.filter(RawItem.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(RawItem.is_active.is_(True))
    return [_raw_out(r) for r in q.order_by(RawItem.code.asc()).all()]

@router.post("/raw-items/{raw_item_id}/deactivate")
def deactivate_raw_item(raw_item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    r = db.get(RawItem, raw_item_id)
    if not r:
        raise HTTPException(404, detail="raw item not found")
    if r.is_active:
        r.is_active = False
        audit(db, sub, "raw_item", r.id, "DEACTIVATE")
        db.commit()
    return _raw_out(r)

@router.get("/stock/{branch_id}/{raw_item_id}")
def stock_level(branch_id: str, raw_item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    level = stock.get_stock_level(db, branch_id, raw_item_id)
    if level is None:
        raise HTTPException(404, detail="raw item not found")
    return {**level, "current_quantity": _num(level["current_quantity"]), "min_threshold": _num(level["min_threshold"])}


# ---------- RECIPES ----------

@router.put("/recipes/{coffee_item_id}")
def set_recipe(coffee_item_id: str, body: RecipeIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    try:
        recipes.set_recipe(db, coffee_item_id, [l.model_dump() for l in body.lines], actor=sub, reason=body.reason)
    except (NotFoundError, ValidationError, UnitConversionError) as e:
        db.rollback()
        raise _http(e)
    audit(db, sub, "recipe", coffee_item_id, "SET", after={"lines": len(body.lines)})
    db.commit()
    return _recipe_out(recipes.get_recipe(db, coffee_item_id))

@router.get("/recipes/{coffee_item_id}")
def get_recipe(coffee_item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    try:
        return _recipe_out(recipes.get_recipe(db, coffee_item_id))
    except (NotFoundError, UnitConversionError) as e:
        raise _http(e)

@router.get("/recipes/{coffee_item_id}/cost")
def recipe_cost(coffee_item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    try:
        cost = recipes.compute_item_cost(db, coffee_item_id)
    except UnitConversionError as e:
        raise _http(e)
    return {"coffee_item_id": coffee_item_id, "unit_cost": float(cost.quantize(Decimal("0.0001")))}

def _recipe_out(r: dict) -> dict:
    return {
        "coffee_item_id": r["coffee_item_id"],
        "version": r["version"],
        "lines": [
            {**l, "quantity": _num(l["quantity"]), "unit_cost": _num(l["unit_cost"]), "line_cost": _num(l["line_cost"])}
            for l in r["lines"]
        ],
        "total_cost": _num(r["total_cost"]),
    }


def _version_out(v: RecipeVersion) -> dict:
    return {
        "id": v.id,
        "coffee_item_id": v.coffee_item_id,
        "version": v.version_no,
        "is_active": bool(v.is_active),
        "lines": v.lines or [],
        "total_cost": _num(v.total_cost),
        "reason": v.reason,
        "created_by": v.created_by,
        "created_at": v.created_at.isoformat() if v.created_at else None,
    }

@router.get("/recipes/{coffee_item_id}/history")
def recipe_history(coffee_item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    try:
        rows = recipes.recipe_history(db, coffee_item_id)
    except NotFoundError as e:
        raise _http(e)
    return {"success": True, "count": len(rows), "versions": [_version_out(v) for v in rows]}

@router.get("/recipes/{coffee_item_id}/versions/{version_no}")
def recipe_version(coffee_item_id: str, version_no: int, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    try:
        v = recipes.get_recipe_version(db, coffee_item_id, version_no)
    except NotFoundError as e:
        raise _http(e)
    return {"success": True, "version": _version_out(v)}

@router.post("/recipes/{coffee_item_id}/restore/{version_no}")
def restore_recipe(coffee_item_id: str, version_no: int, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    try:
        v = recipes.restore_recipe(db, coffee_item_id, version_no, actor=sub)
    except (NotFoundError, ValidationError, UnitConversionError) as e:
        db.rollback()
        raise _http(e)
    audit(db, sub, "recipe", coffee_item_id, "RESTORE", after={"from_version": version_no, "version": v.version_no})
    db.commit()
    db.refresh(v)
    return {
        "success": True,
        "message": f"Recipe restored to version {version_no}, saved as version {v.version_no}",
        "version": _version_out(v),
    }


# ---------- MOVEMENTS ----------

@router.post("/movements", status_code=201)
def record_movement(body: MovementIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    try:
        mv = stock.record_movement(
            db, body.branch_id, body.raw_item_id, body.movement_type, body.quantity,
            notes=body.notes, actor=sub, unit=body.unit,
            reference_type=body.reference_type, reference_id=body.reference_id,
        )
    except (InsufficientStockError, StockConflictError, NotFoundError, ValidationError, UnitConversionError) as e:
        db.rollback()
        raise _http(e)
    db.commit()
    db.refresh(mv)
    return {"success": True, "movement": _movement_out(mv)}

@router.get("/movements/{branch_id}")
def list_movements(
    branch_id: str,
    limit: int | None = None,
    raw_item_id: str | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    rows = stock.list_movements(db, branch_id, limit, raw_item_id)
    return {"success": True, "count": len(rows), "movements": [_movement_out(m) for m in rows]}


# ---------- ALERTS ----------

@router.get("/alerts/{branch_id}")
def list_alerts(
    branch_id: str,
    unresolved: bool = False,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    rows = stock.list_alerts(db, branch_id, unresolved_only=unresolved)
    return {"success": True, "count": len(rows), "alerts": [_alert_out(a) for a in rows]}

@router.patch("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    body: AlertResolveIn | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_perm("INVENTORY_MANAGE")),
):
    try:
        alert, changed = stock.resolve_alert(db, alert_id, body.action_taken if body else None, sub)
    except NotFoundError as e:
        raise _http(e)
    if changed:
        audit(db, sub, "stock_alert", alert.id, "RESOLVE", after={"action_taken": alert.action_taken})
        db.commit()
        db.refresh(alert)
    return {"success": True, "alert": _alert_out(alert)}


# ---------- UNITS ----------

@router.get("/units/{tenant_id}")
def list_units(tenant_id: str, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    rows = db.query(UnitConversion).filter(UnitConversion.tenant_id == tenant_id).all()
    return {"success": True, "conversions": [_conversion_out(c) for c in rows]}

@router.post("/units", status_code=201)
def add_unit(body: UnitConversionIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("INVENTORY_MANAGE"))):
    if body.from_unit == body.to_unit:
        raise HTTPException(400, detail="from_unit and to_unit must differ")
    c = UnitConversion(
        tenant_id=body.tenant_id,
        from_unit=Unit(body.from_unit),
        to_unit=Unit(body.to_unit),
        conversion_factor=D(body.conversion_factor),
    )
    db.add(c)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, detail=f"conversion {body.from_unit} -> {body.to_unit} already exists")
    db.refresh(c)
    logger.info(f"Unit conversion added for tenant {body.tenant_id}: 1 {body.from_unit} = {body.conversion_factor} {body.to_unit}")
    return {"success": True, "conversion": _conversion_out(c)}
