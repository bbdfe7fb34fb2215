from pydantic import BaseModel, Field
from typing import Optional, List

class OrderLineIn(BaseModel):
    item_id: str
    quantity: int = Field(default=1, ge=1)
    unit_price: Optional[float] = Field(default=None, ge=0)  # defaults to the menu price

class OrderIn(BaseModel):
    tenant_id: str
    branch_id: str
    order_no: Optional[str] = None
    lines: List[OrderLineIn] = Field(min_length=1)

class OrderCompleteIn(BaseModel):
    status: str = "completed"  # completed | delivered
