from pydantic import BaseModel, Field
from typing import Optional

class MenuCategoryIn(BaseModel):
    tenant_id: str
    name: str
    position: int = 0

class MenuCategoryOut(MenuCategoryIn):
    id: str

class MenuItemIn(BaseModel):
    tenant_id: str
    category_id: Optional[str] = None
    name_ar: str
    name_en: Optional[str] = None
    price: float = Field(ge=0)
    is_active: bool = True

class MenuItemOut(MenuItemIn):
    id: str
