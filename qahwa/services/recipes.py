import logging
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from qahwa.errors import NotFoundError, ValidationError
from qahwa.models.core import MenuItem, RawItem, RecipeItem, RecipeVersion, UnitConversion
from qahwa.services.money import D, ZERO
from qahwa.services.units import convert, parse_unit

logger = logging.getLogger(__name__)


def tenant_conversions(db: Session, tenant_id: str | None) -> list[UnitConversion]:
    if not tenant_id:
        return []
    return db.query(UnitConversion).filter(UnitConversion.tenant_id == tenant_id).all()


def recipe_rows(db: Session, coffee_item_id: str) -> list[tuple[RecipeItem, RawItem]]:
    return (
        db.query(RecipeItem, RawItem)
          .join(RawItem, RawItem.id == RecipeItem.raw_item_id)
          .filter(RecipeItem.coffee_item_id == coffee_item_id)
          .order_by(RawItem.code.asc())
          .all()
    )


def line_cost(recipe: RecipeItem, raw: RawItem, conversions) -> Decimal:
    """Cost of one recipe line: raw unit cost times the recipe quantity
    expressed in the raw item's unit. Raises UnitConversionError when the
    two units cannot be reconciled."""
    qty = convert(recipe.quantity, recipe.unit, raw.unit, conversions)
    return D(raw.unit_cost) * qty


def compute_item_cost(db: Session, coffee_item_id: str) -> Decimal:
    item = db.get(MenuItem, coffee_item_id)
    conversions = tenant_conversions(db, item.tenant_id if item else None)
    total = ZERO
    for recipe, raw in recipe_rows(db, coffee_item_id):
        total += line_cost(recipe, raw, conversions)
    return total


def get_recipe(db: Session, coffee_item_id: str) -> dict:
    item = db.get(MenuItem, coffee_item_id)
    if not item:
        raise NotFoundError("menu item not found")
    conversions = tenant_conversions(db, item.tenant_id)
    lines = []
    total = ZERO
    for recipe, raw in recipe_rows(db, coffee_item_id):
        cost = line_cost(recipe, raw, conversions)
        total += cost
        lines.append({
            "raw_item_id": raw.id,
            "raw_item_code": raw.code,
            "raw_item_name": raw.name_ar,
            "quantity": D(recipe.quantity),
            "unit": recipe.unit.value,
            "unit_cost": D(raw.unit_cost),
            "raw_unit": raw.unit.value,
            "line_cost": cost,
        })
    active = active_version(db, coffee_item_id)
    return {
        "coffee_item_id": coffee_item_id,
        "version": active.version_no if active else None,
        "lines": lines,
        "total_cost": total,
    }


def set_recipe(
    db: Session,
    coffee_item_id: str,
    lines: list[dict],
    actor: str | None = None,
    reason: str | None = None,
) -> list[RecipeItem]:
    """Replace the bill of materials of a menu item and record it as the
    next recipe version. Does not commit."""
    item = db.get(MenuItem, coffee_item_id)
    if not item:
        raise NotFoundError("menu item not found")

    seen: set[str] = set()
    for line in lines:
        if line["raw_item_id"] in seen:
            raise ValidationError(f"duplicate raw item in recipe: {line['raw_item_id']}")
        seen.add(line["raw_item_id"])
        if D(line["quantity"]) <= 0:
            raise ValidationError("recipe quantity must be positive")

    conversions = tenant_conversions(db, item.tenant_id)
    raws = {r.id: r for r in db.query(RawItem).filter(RawItem.id.in_(seen)).all()} if seen else {}
    missing = seen - set(raws)
    if missing:
        raise NotFoundError(f"raw item not found: {sorted(missing)[0]}")

    db.query(RecipeItem).filter(RecipeItem.coffee_item_id == coffee_item_id).delete()
    rows = []
    total = ZERO
    for line in lines:
        unit = parse_unit(line.get("unit") or raws[line["raw_item_id"]].unit)
        row = RecipeItem(
            coffee_item_id=coffee_item_id,
            raw_item_id=line["raw_item_id"],
            quantity=D(line["quantity"]),
            unit=unit,
            notes=line.get("notes"),
        )
        # reject recipes that could never be costed
        total += line_cost(row, raws[line["raw_item_id"]], conversions)
        db.add(row)
        rows.append(row)

    version = _record_version(db, coffee_item_id, rows, total, actor, reason)
    db.flush()
    logger.info(f"Recipe for item {coffee_item_id} set to version {version.version_no} with {len(rows)} line(s)")
    return rows


# ---------- versions ----------

def _record_version(db: Session, coffee_item_id: str, rows: list[RecipeItem], total: Decimal,
                    actor: str | None, reason: str | None) -> RecipeVersion:
    last = (
        db.query(func.max(RecipeVersion.version_no))
          .filter(RecipeVersion.coffee_item_id == coffee_item_id)
          .scalar()
    )
    db.query(RecipeVersion).filter(
        RecipeVersion.coffee_item_id == coffee_item_id, RecipeVersion.is_active.is_(True)
    ).update({RecipeVersion.is_active: False}, synchronize_session="fetch")
    version = RecipeVersion(
        coffee_item_id=coffee_item_id,
        version_no=(last or 0) + 1,
        is_active=True,
        lines=[
            {"raw_item_id": r.raw_item_id, "quantity": str(r.quantity), "unit": r.unit.value, "notes": r.notes}
            for r in rows
        ],
        total_cost=total,
        reason=reason,
        created_by=actor,
    )
    db.add(version)
    return version


def active_version(db: Session, coffee_item_id: str) -> RecipeVersion | None:
    return (
        db.query(RecipeVersion)
          .filter(RecipeVersion.coffee_item_id == coffee_item_id, RecipeVersion.is_active.is_(True))
          .first()
    )


def recipe_history(db: Session, coffee_item_id: str) -> list[RecipeVersion]:
    if not db.get(MenuItem, coffee_item_id):
        raise NotFoundError("menu item not found")
    return (
        db.query(RecipeVersion)
          .filter(RecipeVersion.coffee_item_id == coffee_item_id)
          .order_by(RecipeVersion.version_no.desc())
          .all()
    )


def get_recipe_version(db: Session, coffee_item_id: str, version_no: int) -> RecipeVersion:
    v = (
        db.query(RecipeVersion)
          .filter(RecipeVersion.coffee_item_id == coffee_item_id, RecipeVersion.version_no == version_no)
          .first()
    )
    if not v:
        raise NotFoundError(f"recipe version {version_no} not found")
    return v


def restore_recipe(db: Session, coffee_item_id: str, version_no: int, actor: str | None = None) -> RecipeVersion:
    """Bring back an earlier version's lines. The restore is saved as a new
    version; history is never rewritten. Does not commit."""
    target = get_recipe_version(db, coffee_item_id, version_no)
    set_recipe(db, coffee_item_id, [dict(l) for l in target.lines], actor=actor,
               reason=f"Restored from version {version_no}")
    return active_version(db, coffee_item_id)
