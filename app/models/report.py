from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .allocation import PERIOD_PATTERN

ReportStatus = Literal["publishing", "published", "failed"]


class PublishRequest(BaseModel):
    period: str = Field(pattern=PERIOD_PATTERN)
    overwrite: bool = False


class MasterReport(BaseModel):
    id: str
    period: str
    published_by: str
    published_by_email: Optional[str] = None
    published_at: Optional[datetime] = None
    payload: Dict[str, Any] = {}
    status: ReportStatus = "publishing"
    error_message: Optional[str] = None


class MasterReportsResponse(BaseModel):
    count: int
    reports: List[MasterReport]


class ReportPreviewRow(BaseModel):
    department: str
    period: str
    items: List[Dict[str, Any]]
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None


class ReportPreviewResponse(BaseModel):
    period: str
    count: int
    data: List[ReportPreviewRow]
