from pydantic import BaseModel
from typing import Optional
from datetime import date

class SnapshotIn(BaseModel):
    tenant_id: str
    branch_id: str
    day: Optional[date] = None
