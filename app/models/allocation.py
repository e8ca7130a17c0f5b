from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ProductKey = Literal["Academy", "Intensive", "NIAT"]

PERIOD_PATTERN = r"^\d{4}-Q[1-4]$"


class AllocationRecord(BaseModel):
    """One employee's declared share of effort for one product in a period."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    product: ProductKey
    percentage: float = Field(ge=0, le=100)


class AggregateItem(BaseModel):
    product: ProductKey
    percentage: float = Field(ge=0, le=100)
    notes: Optional[str] = None


class AllocationTotals(BaseModel):
    product_totals: Dict[str, float]
    grand_total: float = 0


DepartmentAllocation = List[AggregateItem]
