from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from qahwa.db import get_db
from qahwa.deps import require_auth, require_perm
from qahwa.schemas.accounting import SnapshotIn
from qahwa.services import accounting
from qahwa.services.money import D, ZERO, _money
from qahwa.util.audit import audit

router = APIRouter(prefix="/api/accounting", tags=["accounting"])


@router.get("/daily-snapshot/{branch_id}")
def daily_snapshot(branch_id: str, day: date | None = None, db: Session = Depends(get_db), sub: str = Depends(require_auth)):
    return accounting.get_daily_snapshot(db, branch_id, day)


@router.get("/profit-by-item/{branch_id}")
def profit_by_item(
    branch_id: str,
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    s, e = accounting.range_bounds(start, end)
    items = accounting.get_profit_per_drink(db, branch_id, s, e)
    return {"success": True, "count": len(items), "items": items}


@router.get("/profit-by-category/{branch_id}")
def profit_by_category(
    branch_id: str,
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    s, e = accounting.range_bounds(start, end)
    categories = accounting.get_profit_per_category(db, branch_id, s, e)
    return {"success": True, "count": len(categories), "categories": categories}


@router.get("/top-items/{branch_id}")
def top_items(
    branch_id: str,
    start: date | None = None,
    end: date | None = None,
    limit: int = 10,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    s, e = accounting.range_bounds(start, end)
    items = accounting.get_top_profitable_items(db, branch_id, s, e, limit)
    return {"success": True, "count": len(items), "items": items}


@router.get("/worst-items/{branch_id}")
def worst_items(
    branch_id: str,
    start: date | None = None,
    end: date | None = None,
    limit: int = 10,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    s, e = accounting.range_bounds(start, end)
    items = accounting.get_worst_items(db, branch_id, s, e, limit)
    return {"success": True, "count": len(items), "items": items}


@router.get("/waste-report/{branch_id}")
def waste_report(
    branch_id: str,
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    s, e = accounting.range_bounds(start, end)
    rows = accounting.get_waste_report(db, branch_id, s, e)
    total = sum((D(r["waste_amount"]) for r in rows), ZERO)
    return {"success": True, "count": len(rows), "total_waste_amount": _money(total), "items": rows}


@router.post("/snapshots", status_code=201)
def save_snapshot(body: SnapshotIn, db: Session = Depends(get_db), sub: str = Depends(require_perm("MANAGER_APPROVE"))):
    snap = accounting.save_daily_snapshot(db, body.tenant_id, body.branch_id, sub, body.day)
    audit(db, sub, "accounting_snapshot", snap.id, "CREATE")
    db.commit()
    db.refresh(snap)
    return accounting.snapshot_out(snap)


@router.get("/snapshots/{branch_id}")
def list_snapshots(
    branch_id: str,
    tenant_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    sub: str = Depends(require_auth),
):
    start, end = accounting.date_range(start, end)
    rows = accounting.list_snapshots(db, tenant_id, branch_id, start, end)
    return {"success": True, "count": len(rows), "snapshots": [accounting.snapshot_out(s) for s in rows]}
