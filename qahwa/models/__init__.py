# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Enums
    OrderStatus, SOLD_STATUSES, Unit, RawItemCategory, MovementType, ReferenceType, AlertType,

    # Identity & RBAC
    Tenant, Branch, User, Role, Permission, RolePermission, UserRole, AuditLog,

    # Menu
    MenuCategory, MenuItem,

    # Orders
    Order, OrderItem,

    # Inventory
    RawItem, BranchStock, RecipeItem, RecipeVersion, UnitConversion, StockMovement, StockAlert,

    # Accounting
    AccountingSnapshot,
)

__all__ = [
    # Enums
    "OrderStatus", "SOLD_STATUSES", "Unit", "RawItemCategory", "MovementType", "ReferenceType", "AlertType",

    # Identity & RBAC
    "Tenant", "Branch", "User", "Role", "Permission", "RolePermission", "UserRole", "AuditLog",

    # Menu
    "MenuCategory", "MenuItem",

    # Orders
    "Order", "OrderItem",

    # Inventory
    "RawItem", "BranchStock", "RecipeItem", "RecipeVersion", "UnitConversion", "StockMovement", "StockAlert",

    # Accounting
    "AccountingSnapshot",
]
