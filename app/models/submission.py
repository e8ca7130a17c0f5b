from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .allocation import PERIOD_PATTERN, AggregateItem, ProductKey

SubmissionStatus = Literal["submitted", "approved", "rejected"]


def _reject_duplicate_products(items: Optional[List[AggregateItem]]) -> Optional[List[AggregateItem]]:
    if not items:
        return items
    seen = set()
    for item in items:
        if item.product in seen:
            raise ValueError(f"Duplicate product: {item.product}")
        seen.add(item.product)
    return items


class EmployeeSummary(BaseModel):
    emp_id: str
    name: str
    email: Optional[str] = None


class EmployeeSubmissionGroup(BaseModel):
    submission_ref: str
    employee: EmployeeSummary
    items: List[AggregateItem]
    status: Literal["approved", "pending"]


class DepartmentSubmissionsResponse(BaseModel):
    department_id: str
    period: str
    submissions: List[EmployeeSubmissionGroup]


class EmployeeSubmissionUpdate(BaseModel):
    items: Optional[List[AggregateItem]] = None
    status: Optional[Any] = None

    @field_validator("items")
    @classmethod
    def _unique_products(cls, items):
        return _reject_duplicate_products(items)

    @property
    def approved(self) -> Optional[bool]:
        if self.status is None:
            return None
        return self.status == "approved" or self.status is True


class AggregateRequest(BaseModel):
    period: str = Field(pattern=PERIOD_PATTERN)
    items: Optional[List[AggregateItem]] = None
    notes: Optional[str] = None
    auto_aggregate: bool = False

    @field_validator("items")
    @classmethod
    def _unique_products(cls, items):
        return _reject_duplicate_products(items)


class AggregatePreview(BaseModel):
    department_id: str
    period: str
    items: List[AggregateItem]


class DepartmentSubmission(BaseModel):
    id: str
    dept_submission_ref: str
    department_id: str
    department: Optional[str] = None
    period: str
    submitted_by: str
    submitted_by_email: Optional[str] = None
    status: SubmissionStatus = "submitted"
    items: List[AggregateItem]
    notes: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None


class DepartmentSubmissionCreated(BaseModel):
    dept_submission_ref: str
    status: SubmissionStatus
    submitted_at: Optional[datetime] = None
    items: List[AggregateItem]


class ReviewRequest(BaseModel):
    status: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = None
    items: Optional[List[AggregateItem]] = None

    @field_validator("items")
    @classmethod
    def _unique_products(cls, items):
        return _reject_duplicate_products(items)


class PendingSubmissionsResponse(BaseModel):
    count: int
    submissions: List[DepartmentSubmission]


def items_payload(items: List[AggregateItem]) -> List[Dict[str, Any]]:
    """Serialize items in the shape the publish/export stage reads."""
    return [item.model_dump(exclude_none=True) for item in items]
