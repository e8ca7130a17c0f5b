from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Department(BaseModel):
    id: str
    name: str
    hod_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Employee(BaseModel):
    id: str
    emp_id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    department_id: str
    role: Optional[str] = None
    location: Optional[str] = None
    status: str = "active"
