from typing import List, Optional

from ..core.database import execute, fetch, fetchrow
from ..models.department import Department, Employee

directory_tables_ready = False


async def ensure_directory_tables():
    global directory_tables_ready
    if directory_tables_ready:
        return
    await execute(
        """
        CREATE EXTENSION IF NOT EXISTS "pgcrypto";
        CREATE TABLE IF NOT EXISTS departments (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          name TEXT NOT NULL UNIQUE,
          hod_user_id TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE TABLE IF NOT EXISTS employees (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          emp_id TEXT NOT NULL UNIQUE,
          first_name TEXT NOT NULL,
          last_name TEXT NOT NULL,
          email TEXT,
          department_id UUID NOT NULL REFERENCES departments(id),
          role TEXT,
          location TEXT,
          status TEXT NOT NULL DEFAULT 'active',
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS employees_department_idx ON employees(department_id);
        """
    )
    directory_tables_ready = True


def _to_department(row: dict) -> Department:
    return Department(
        id=str(row["id"]),
        name=row["name"],
        hod_user_id=row.get("hod_user_id"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _to_employee(row: dict) -> Employee:
    return Employee(
        id=str(row["id"]),
        emp_id=row["emp_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row.get("email"),
        department_id=str(row["department_id"]),
        role=row.get("role"),
        location=row.get("location"),
        status=row.get("status") or "active",
    )


async def list_departments() -> List[Department]:
    await ensure_directory_tables()
    rows = await fetch("SELECT * FROM departments ORDER BY name ASC")
    return [_to_department(r) for r in rows]


async def get_department(department_id: str) -> Optional[Department]:
    await ensure_directory_tables()
    row = await fetchrow("SELECT * FROM departments WHERE id::text = %s", [department_id])
    return _to_department(row) if row else None


async def list_employees(department_id: str) -> List[Employee]:
    await ensure_directory_tables()
    rows = await fetch(
        "SELECT * FROM employees WHERE department_id::text = %s ORDER BY emp_id ASC",
        [department_id],
    )
    return [_to_employee(r) for r in rows]
