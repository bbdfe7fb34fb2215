from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from qahwa.db import get_db
from qahwa.config import settings
from qahwa.util.security import hash_pw
from qahwa.models.core import (
    Tenant, Branch, User, Role, Permission, RolePermission, UserRole,
)

router = APIRouter(prefix="/admin", tags=["admin"])

PERMISSIONS = {
    "INVENTORY_MANAGE": "Record stock movements, manage raw items, recipes and units",
    "MENU_EDIT": "Create and edit menu categories and items",
    "MANAGER_APPROVE": "Persist accounting snapshots",
}

def _user(db: Session, tenant_id: str, name: str, mobile: str, password: str) -> User:
    u = db.query(User).filter(User.mobile == mobile).first()
    if not u:
        u = User(tenant_id=tenant_id, name=name, mobile=mobile, pass_hash=hash_pw(password), active=True)
        db.add(u); db.flush()
    return u

@router.post("/dev-bootstrap")
def dev_bootstrap(db: Session = Depends(get_db)):
    if settings.APP_ENV != "dev":
        raise HTTPException(403, detail="Not allowed")

    # Tenant
    t = db.query(Tenant).first()
    if not t:
        t = Tenant(name="Demo Café")
        db.add(t); db.flush()

    # Branch
    b = db.query(Branch).filter(Branch.tenant_id == t.id).first()
    if not b:
        b = Branch(tenant_id=t.id, name="Main Branch", phone="920000000", address="King Fahd Rd, Riyadh")
        db.add(b); db.flush()

    admin = _user(db, t.id, "Admin", "9999999999", "admin")
    # cashier has no permissions: can read reports, cannot touch stock
    cashier = _user(db, t.id, "Cashier", "8888888888", "cashier")

    # Minimal RBAC bootstrap
    admin_role = db.query(Role).filter(Role.tenant_id == t.id, Role.code == "ADMIN").first()
    if not admin_role:
        admin_role = Role(tenant_id=t.id, code="ADMIN")
        db.add(admin_role); db.flush()

    existing = {p.code: p for p in db.query(Permission).filter(Permission.code.in_(PERMISSIONS)).all()}
    for code, description in PERMISSIONS.items():
        perm = existing.get(code)
        if not perm:
            perm = Permission(code=code, description=description)
            db.add(perm); db.flush()
        if not db.query(RolePermission).filter_by(role_id=admin_role.id, permission_id=perm.id).first():
            db.add(RolePermission(role_id=admin_role.id, permission_id=perm.id))

    if not db.query(UserRole).filter_by(user_id=admin.id, role_id=admin_role.id).first():
        db.add(UserRole(user_id=admin.id, role_id=admin_role.id))

    db.commit()
    return {
        "tenant_id": t.id,
        "branch_id": b.id,
        "admin_user_id": admin.id,
        "admin_mobile": admin.mobile,
        "admin_password": "admin",
        "cashier_mobile": cashier.mobile,
        "cashier_password": "cashier",
    }
