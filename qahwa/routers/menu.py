from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime, timezone
from decimal import Decimal

from qahwa.db import get_db
from qahwa.schemas.menu import MenuCategoryIn, MenuCategoryOut, MenuItemIn, MenuItemOut
from qahwa.models.core import MenuCategory, MenuItem
from qahwa.deps import require_auth, require_perm
from qahwa.services.money import D

router = APIRouter(prefix="/menu", tags=["menu"])


# ---------- helpers ----------

def _as_float(val: Decimal | float | int | None) -> float | None:
    if val is None:
        return None
    return float(val)

def _ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


# ---------- CATEGORIES ----------

@router.post("/categories", response_model=MenuCategoryOut)
def create_category(body: MenuCategoryIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("MENU_EDIT"))):
    c = MenuCategory(**body.model_dump())
    db.add(c)
    db.commit()
    db.refresh(c)
    return MenuCategoryOut(id=c.id, **body.model_dump())

@router.get("/categories")
def list_categories(tenant_id: Optional[str] = None, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    q = db.query(MenuCategory).filter(MenuCategory.deleted_at.is_(None))
    if tenant_id is not None:
        q = q.filter(MenuCategory.tenant_id == tenant_id)
    return [
        {"id": c.id, "tenant_id": c.tenant_id, "name": c.name, "position": c.position}
        for c in q.order_by(MenuCategory.position.asc(), MenuCategory.name.asc()).all()
    ]


# ---------- ITEMS ----------

@router.get("/items")
def list_items(
    category_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    q = db.query(MenuItem).filter(MenuItem.deleted_at.is_(None))
    if category_id:
        q = q.filter(MenuItem.category_id == category_id)
    if tenant_id is not None:
        q = q.filter(MenuItem.tenant_id == tenant_id)

    rows: List[MenuItem] = q.all()
    out = []
    for m in rows:
        out.append({
            "id": m.id,
            "tenant_id": m.tenant_id,
            "category_id": m.category_id,
            "name_ar": m.name_ar,
            "name_en": m.name_en,
            "price": _as_float(m.price) or 0.0,
            "is_active": bool(m.is_active),
            "created_at": _ts(m.created_at),
            "updated_at": _ts(m.updated_at),
        })
    return out

@router.post("/items", response_model=MenuItemOut)
def create_item(body: MenuItemIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("MENU_EDIT"))):
    if body.category_id and not db.get(MenuCategory, body.category_id):
        raise HTTPException(404, detail="category not found")
    data = body.model_dump()
    data["price"] = D(body.price)
    it = MenuItem(**data)
    db.add(it)
    db.commit()
    db.refresh(it)
    return MenuItemOut(id=it.id, **body.model_dump())

@router.delete("/items/{item_id}")
def delete_item(item_id: str, db: Session = Depends(get_db), sub: str = Depends(require_perm("MENU_EDIT"))):
    """Soft-delete an item by setting deleted_at."""
    it: MenuItem | None = db.get(MenuItem, item_id)
    if not it or it.deleted_at is not None:
        raise HTTPException(status_code=404, detail="item not found")
    it.deleted_at = datetime.now(timezone.utc)
    it.is_active = False
    db.commit()
    return {"ok": True, "id": item_id}
