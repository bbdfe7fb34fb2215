from pydantic import BaseModel, Field
from typing import Optional, List, Literal

UnitLiteral = Literal["g", "kg", "ml", "l", "pcs"]
MovementTypeLiteral = Literal["in", "out", "waste", "adjustment"]
RawItemCategoryLiteral = Literal["ingredient", "packaging", "consumable", "other"]

class RawItemIn(BaseModel):
    tenant_id: Optional[str] = None
    code: str = Field(min_length=1, max_length=40)
    name_ar: str
    name_en: Optional[str] = None
    category: RawItemCategoryLiteral = "ingredient"
    unit: UnitLiteral
    unit_cost: float = Field(default=0, ge=0)
    min_stock_threshold: float = Field(default=0, ge=0)
    max_stock_level: Optional[float] = Field(default=None, ge=0)

class RecipeLineIn(BaseModel):
    raw_item_id: str
    quantity: float = Field(gt=0)
    unit: Optional[UnitLiteral] = None  # defaults to the raw item's unit
    notes: Optional[str] = None

class RecipeIn(BaseModel):
    lines: List[RecipeLineIn]
    reason: Optional[str] = None  # kept on the recipe version

class MovementIn(BaseModel):
    branch_id: str
    raw_item_id: str
    movement_type: MovementTypeLiteral
    quantity: float
    unit: Optional[UnitLiteral] = None
    notes: Optional[str] = None
    reference_type: Literal["manual", "purchase"] = "manual"
    reference_id: Optional[str] = Field(default=None, max_length=64)  # supplier invoice no for purchases

class AlertResolveIn(BaseModel):
    action_taken: Optional[str] = None

class UnitConversionIn(BaseModel):
    tenant_id: str
    from_unit: UnitLiteral
    to_unit: UnitLiteral
    conversion_factor: float = Field(gt=0)
