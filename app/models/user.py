from pydantic import BaseModel
from typing import Literal, Optional

ReportingRole = Literal["admin", "hod"]


class AuthenticatedUser(BaseModel):
    uid: str
    email: Optional[str] = None
    role: ReportingRole
    department_id: Optional[str] = None
