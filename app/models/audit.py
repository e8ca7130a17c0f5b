from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel


class AuditEntry(BaseModel):
    id: str
    actor_id: str
    actor: Optional[str] = None
    action_type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    created_at: Optional[datetime] = None


class AuditLogsResponse(BaseModel):
    count: int
    logs: List[AuditEntry]
