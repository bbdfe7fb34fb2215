from sqlalchemy import (
    String, ForeignKey, Boolean, Numeric, Enum, Text, DateTime, Date, Integer, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column
from enum import Enum as PyEnum
from datetime import datetime, date
from decimal import Decimal
from qahwa.db import Base
from qahwa.models.common import IdMixin, TSMMixin

# ── Enums ───────────────────────────────────────────────────────────────────
class OrderStatus(PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

# statuses that count as a sale for accounting
SOLD_STATUSES = (OrderStatus.COMPLETED, OrderStatus.DELIVERED)

class Unit(PyEnum):
    G = "g"
    KG = "kg"
    ML = "ml"
    L = "l"
    PCS = "pcs"

class RawItemCategory(PyEnum):
    INGREDIENT = "ingredient"
    PACKAGING = "packaging"
    CONSUMABLE = "consumable"
    OTHER = "other"

class MovementType(PyEnum):
    IN = "in"
    OUT = "out"
    WASTE = "waste"
    ADJUSTMENT = "adjustment"

class ReferenceType(PyEnum):
    MANUAL = "manual"
    ORDER = "order"
    PURCHASE = "purchase"

class AlertType(PyEnum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"

# ── Identity ────────────────────────────────────────────────────────────────
class Tenant(Base, IdMixin, TSMMixin):
    __tablename__ = "tenant"
    name: Mapped[str] = mapped_column(String(160))

class Branch(Base, IdMixin, TSMMixin):
    __tablename__ = "branch"
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenant.id"))
    name: Mapped[str] = mapped_column(String(160))
    address: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(String(20))

class User(Base, IdMixin, TSMMixin):
    __tablename__ = "user"
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenant.id"))
    name: Mapped[str] = mapped_column(String(160))
    mobile: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(160))
    pass_hash: Mapped[str] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, default=True)

class Role(Base, IdMixin, TSMMixin):
    __tablename__ = "role"
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenant.id"))
    code: Mapped[str] = mapped_column(String(50))

class Permission(Base, IdMixin, TSMMixin):
    __tablename__ = "permission"
    code: Mapped[str] = mapped_column(String(60), unique=True)  # e.g. INVENTORY_MANAGE, MENU_EDIT, MANAGER_APPROVE
    description: Mapped[str | None] = mapped_column(Text)

class RolePermission(Base, TSMMixin):
    __tablename__ = "role_permission"
    role_id: Mapped[str] = mapped_column(String(36), ForeignKey("role.id"), primary_key=True)
    permission_id: Mapped[str] = mapped_column(String(36), ForeignKey("permission.id"), primary_key=True)

class UserRole(Base, TSMMixin):
    __tablename__ = "user_role"
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("user.id"), primary_key=True)
    role_id: Mapped[str] = mapped_column(String(36), ForeignKey("role.id"), primary_key=True)

class AuditLog(Base, IdMixin, TSMMixin):
    __tablename__ = "audit_log"
    actor_user_id: Mapped[str] = mapped_column(String(36))
    entity: Mapped[str] = mapped_column(String(60))
    entity_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(60))
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)

# ── Menu ────────────────────────────────────────────────────────────────────
class MenuCategory(Base, IdMixin, TSMMixin):
    __tablename__ = "menu_category"
    tenant_id: Mapped[str] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(120))
    position: Mapped[int] = mapped_column(default=0)

class MenuItem(Base, IdMixin, TSMMixin):
    __tablename__ = "menu_item"
    tenant_id: Mapped[str] = mapped_column(String(36))
    category_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("menu_category.id"))
    name_ar: Mapped[str] = mapped_column(String(160))
    name_en: Mapped[str | None] = mapped_column(String(160))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

# ── Orders ──────────────────────────────────────────────────────────────────
class Order(Base, IdMixin, TSMMixin):
    __tablename__ = "order"
    tenant_id: Mapped[str] = mapped_column(String(36))
    branch_id: Mapped[str] = mapped_column(String(36), index=True)
    order_no: Mapped[str] = mapped_column(String(40))
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus), default=OrderStatus.PENDING)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    cost_of_goods: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))  # set on completion
    created_by: Mapped[str | None] = mapped_column(String(36))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

class OrderItem(Base, IdMixin, TSMMixin):
    __tablename__ = "order_item"
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("order.id"), index=True)
    item_id: Mapped[str] = mapped_column(String(36), ForeignKey("menu_item.id"))
    name: Mapped[str] = mapped_column(String(160))      # copied from menu at order time
    category: Mapped[str | None] = mapped_column(String(120))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))  # frozen recipe cost

# ── Inventory ───────────────────────────────────────────────────────────────
class RawItem(Base, IdMixin, TSMMixin):
    __tablename__ = "raw_item"
    tenant_id: Mapped[str | None] = mapped_column(String(36))
    code: Mapped[str] = mapped_column(String(40), unique=True)
    name_ar: Mapped[str] = mapped_column(String(160))
    name_en: Mapped[str | None] = mapped_column(String(160))
    category: Mapped[RawItemCategory] = mapped_column(Enum(RawItemCategory), default=RawItemCategory.INGREDIENT)
    unit: Mapped[Unit] = mapped_column(Enum(Unit))
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0)  # per 1 `unit`
    min_stock_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=0)
    max_stock_level: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class BranchStock(Base, IdMixin, TSMMixin):
    __tablename__ = "branch_stock"
    branch_id: Mapped[str] = mapped_column(String(36))
    raw_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("raw_item.id"))
    current_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=0)
    __table_args__ = (
        UniqueConstraint("branch_id", "raw_item_id", name="uq_branch_stock_item"),
    )

class RecipeItem(Base, IdMixin, TSMMixin):
    __tablename__ = "recipe_item"
    coffee_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("menu_item.id"))
    raw_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("raw_item.id"))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))  # consumed per unit sold
    unit: Mapped[Unit] = mapped_column(Enum(Unit))
    notes: Mapped[str | None] = mapped_column(Text)
    __table_args__ = (
        UniqueConstraint("coffee_item_id", "raw_item_id", name="uq_recipe_item_pair"),
    )

class RecipeVersion(Base, IdMixin, TSMMixin):
    __tablename__ = "recipe_version"
    coffee_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("menu_item.id"), index=True)
    version_no: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    lines: Mapped[list] = mapped_column(JSON)  # [{raw_item_id, quantity, unit, notes}]
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0)
    reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))
    __table_args__ = (
        UniqueConstraint("coffee_item_id", "version_no", name="uq_recipe_version_no"),
    )

class UnitConversion(Base, IdMixin, TSMMixin):
    __tablename__ = "unit_conversion"
    # 1 from_unit == conversion_factor to_unit
    tenant_id: Mapped[str] = mapped_column(String(36))
    from_unit: Mapped[Unit] = mapped_column(Enum(Unit))
    to_unit: Mapped[Unit] = mapped_column(Enum(Unit))
    conversion_factor: Mapped[Decimal] = mapped_column(Numeric(14, 6))
    __table_args__ = (
        UniqueConstraint("tenant_id", "from_unit", "to_unit", name="uq_unit_conversion_pair"),
    )

class StockMovement(Base, IdMixin, TSMMixin):
    # ledger row, written once
    __tablename__ = "stock_movement"
    branch_id: Mapped[str] = mapped_column(String(36))
    raw_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("raw_item.id"))
    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))  # signed delta
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    reference_type: Mapped[ReferenceType] = mapped_column(Enum(ReferenceType), default=ReferenceType.MANUAL)
    reference_id: Mapped[str | None] = mapped_column(String(64))  # order id or supplier invoice no
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))
    __table_args__ = (
        Index("ix_stock_movement_branch_created", "branch_id", "created_at"),
    )

class StockAlert(Base, IdMixin, TSMMixin):
    __tablename__ = "stock_alert"
    branch_id: Mapped[str] = mapped_column(String(36))
    raw_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("raw_item.id"))
    alert_type: Mapped[AlertType] = mapped_column(Enum(AlertType))
    current_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    threshold_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(36))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    action_taken: Mapped[str | None] = mapped_column(Text)
    __table_args__ = (
        Index("ix_stock_alert_branch_resolved", "branch_id", "is_resolved"),
    )

# ── Accounting snapshots ────────────────────────────────────────────────────
class AccountingSnapshot(Base, IdMixin, TSMMixin):
    __tablename__ = "accounting_snapshot"
    tenant_id: Mapped[str] = mapped_column(String(36))
    branch_id: Mapped[str] = mapped_column(String(36))
    snapshot_date: Mapped[date] = mapped_column(Date)
    snapshot_type: Mapped[str] = mapped_column(String(20), default="daily")
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    average_order_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_cogs: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    total_profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    profit_margin: Mapped[Decimal] = mapped_column(Numeric(7, 2), default=0)
    items_sold: Mapped[int] = mapped_column(Integer, default=0)
    waste_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    waste_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 2), default=0)
    waste_details: Mapped[list | None] = mapped_column(JSON)
    top_products: Mapped[list | None] = mapped_column(JSON)
    created_by: Mapped[str | None] = mapped_column(String(36))
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    __table_args__ = (
        Index("ix_accounting_snapshot_branch_date", "tenant_id", "branch_id", "snapshot_date"),
    )
