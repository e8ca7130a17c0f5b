from typing import Dict, List, Optional, Sequence

from ..core.database import execute, execute_all, fetch
from ..models.allocation import AggregateItem, AllocationRecord
from ..models.submission import EmployeeSubmissionGroup, EmployeeSummary
from .department_service import ensure_directory_tables

submissions_table_ready = False


async def _ensure_table():
    global submissions_table_ready
    if submissions_table_ready:
        return
    await ensure_directory_tables()
    await execute(
        """
        CREATE TABLE IF NOT EXISTS employee_submissions (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          submission_ref TEXT NOT NULL,
          employee_id UUID NOT NULL REFERENCES employees(id),
          period TEXT NOT NULL,
          product TEXT NOT NULL,
          percentage NUMERIC NOT NULL CHECK (percentage >= 0 AND percentage <= 100),
          notes TEXT,
          source TEXT NOT NULL DEFAULT 'manual',
          approved BOOLEAN NOT NULL DEFAULT false,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          UNIQUE (submission_ref, employee_id, product)
        );
        CREATE INDEX IF NOT EXISTS employee_submissions_period_idx ON employee_submissions(employee_id, period);
        """
    )
    submissions_table_ready = True


async def fetch_allocation_records(department_id: str, period: str) -> List[AllocationRecord]:
    """Current employee allocations on file for one department and period."""
    await _ensure_table()
    rows = await fetch(
        """
        SELECT es.employee_id, es.product, es.percentage
        FROM employee_submissions es
        JOIN employees e ON e.id = es.employee_id
        WHERE e.department_id::text = %s AND es.period = %s
        ORDER BY es.created_at ASC, es.id ASC
        """,
        [department_id, period],
    )
    return [
        AllocationRecord(
            subject_id=str(r["employee_id"]),
            product=r["product"],
            percentage=float(r["percentage"]),
        )
        for r in rows
    ]


async def list_submission_groups(department_id: str, period: str) -> List[EmployeeSubmissionGroup]:
    await _ensure_table()
    rows = await fetch(
        """
        SELECT es.*, e.emp_id, e.first_name, e.last_name, e.email
        FROM employee_submissions es
        JOIN employees e ON e.id = es.employee_id
        WHERE e.department_id::text = %s AND es.period = %s
        ORDER BY es.created_at ASC, es.id ASC
        """,
        [department_id, period],
    )

    groups: Dict[str, EmployeeSubmissionGroup] = {}
    for row in rows:
        key = str(row["employee_id"])
        if key not in groups:
            groups[key] = EmployeeSubmissionGroup(
                submission_ref=row["submission_ref"],
                employee=EmployeeSummary(
                    emp_id=row["emp_id"],
                    name=f"{row['first_name']} {row['last_name']}",
                    email=row.get("email"),
                ),
                items=[],
                status="approved" if row.get("approved") else "pending",
            )
        groups[key].items.append(
            AggregateItem(
                product=row["product"],
                percentage=float(row["percentage"]),
                notes=row.get("notes"),
            )
        )
    return list(groups.values())


async def get_submission_rows(submission_ref: str) -> List[dict]:
    await _ensure_table()
    return await fetch(
        """
        SELECT es.*, e.department_id
        FROM employee_submissions es
        JOIN employees e ON e.id = es.employee_id
        WHERE es.submission_ref = %s
        ORDER BY es.created_at ASC, es.id ASC
        """,
        [submission_ref.upper()],
    )


def snapshot_rows(rows: Sequence[dict]) -> List[dict]:
    return [
        {
            "product": r["product"],
            "percentage": float(r["percentage"]),
            "notes": r.get("notes"),
            "approved": bool(r.get("approved")),
        }
        for r in rows
    ]


_UPSERT_ITEM = """
    INSERT INTO employee_submissions (
      submission_ref, employee_id, period, product, percentage, notes, source, approved
    )
    VALUES (%(ref)s, %(employee_id)s, %(period)s, %(product)s, %(percentage)s, %(notes)s, 'hod_edit', false)
    ON CONFLICT (submission_ref, employee_id, product) DO UPDATE SET
      percentage = EXCLUDED.percentage,
      notes = COALESCE(EXCLUDED.notes, employee_submissions.notes),
      updated_at = now()
"""


async def update_submission_group(
    submission_ref: str,
    rows: Sequence[dict],
    items: Optional[Sequence[AggregateItem]],
    approved: Optional[bool],
):
    """
    Replace the product rows of one employee submission and/or flip its approval.

    ``rows`` is the current state from ``get_submission_rows``; products that
    are no longer listed in ``items`` are deleted. All writes commit together.
    """
    ref = submission_ref.upper()
    employee_id = rows[0]["employee_id"]
    period = rows[0]["period"]
    statements = []

    if items is not None:
        for item in items:
            statements.append(
                (
                    _UPSERT_ITEM,
                    {
                        "ref": ref,
                        "employee_id": employee_id,
                        "period": period,
                        "product": item.product,
                        "percentage": item.percentage,
                        "notes": item.notes,
                    },
                )
            )

        kept = {item.product for item in items}
        for row in rows:
            if row["product"] not in kept:
                statements.append(("DELETE FROM employee_submissions WHERE id = %s", [row["id"]]))

    if approved is not None:
        statements.append(
            (
                "UPDATE employee_submissions SET approved = %s, updated_at = now() WHERE submission_ref = %s",
                [approved, ref],
            )
        )

    if statements:
        await execute_all(statements)
