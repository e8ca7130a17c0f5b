import logging
from typing import List, Optional, Sequence, Tuple

from psycopg.errors import UniqueViolation
from psycopg.types.json import Jsonb

from ..core.database import execute, fetch, fetchrow
from ..models.allocation import AggregateItem
from ..models.submission import DepartmentSubmission, items_payload
from .department_service import ensure_directory_tables
from .reference_service import generate_department_ref
from .roles_service import ensure_user, ensure_users_table

log = logging.getLogger(__name__)

department_submissions_ready = False

_SELECT_SUBMISSIONS = """
    SELECT ds.*, d.name AS department_name, u.email AS submitted_by_email
    FROM department_submissions ds
    LEFT JOIN departments d ON d.id = ds.department_id
    LEFT JOIN users u ON u.id = ds.submitted_by
"""


class DuplicateSubmissionError(Exception):
    def __init__(self, existing: DepartmentSubmission):
        super().__init__(
            f"Department submission already exists for period {existing.period}. Status: {existing.status}"
        )
        self.existing = existing


class InvalidReviewStateError(Exception):
    pass


async def _ensure_table():
    global department_submissions_ready
    if department_submissions_ready:
        return
    await ensure_directory_tables()
    await ensure_users_table()
    await execute(
        """
        CREATE TABLE IF NOT EXISTS department_submissions (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          dept_submission_ref TEXT NOT NULL UNIQUE,
          department_id UUID NOT NULL REFERENCES departments(id),
          period TEXT NOT NULL,
          submitted_by TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'submitted',
          items JSONB NOT NULL DEFAULT '[]'::jsonb,
          notes TEXT,
          submitted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          approved_at TIMESTAMPTZ,
          approved_by TEXT,
          rejection_reason TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          UNIQUE (department_id, period)
        );
        CREATE INDEX IF NOT EXISTS department_submissions_status_idx ON department_submissions(status);
        CREATE INDEX IF NOT EXISTS department_submissions_period_idx ON department_submissions(period);
        """
    )
    department_submissions_ready = True


def _from_db_row(row: dict) -> DepartmentSubmission:
    return DepartmentSubmission(
        id=str(row["id"]),
        dept_submission_ref=row["dept_submission_ref"],
        department_id=str(row["department_id"]),
        department=row.get("department_name"),
        period=row["period"],
        submitted_by=row["submitted_by"],
        submitted_by_email=row.get("submitted_by_email"),
        status=row["status"],
        items=row.get("items") or [],
        notes=row.get("notes"),
        submitted_at=row.get("submitted_at"),
        approved_at=row.get("approved_at"),
        approved_by=row.get("approved_by"),
        rejection_reason=row.get("rejection_reason"),
    )


async def find_department_submission(department_id: str, period: str) -> Optional[DepartmentSubmission]:
    await _ensure_table()
    row = await fetchrow(
        _SELECT_SUBMISSIONS + " WHERE ds.department_id::text = %s AND ds.period = %s",
        [department_id, period],
    )
    return _from_db_row(row) if row else None


async def get_department_submission(submission_id: str) -> Optional[DepartmentSubmission]:
    await _ensure_table()
    row = await fetchrow(_SELECT_SUBMISSIONS + " WHERE ds.id::text = %s", [submission_id])
    return _from_db_row(row) if row else None


async def create_department_submission(
    department_id: str,
    period: str,
    items: Sequence[AggregateItem],
    notes: Optional[str],
    submitted_by: str,
    email: Optional[str],
) -> DepartmentSubmission:
    """
    Insert the department's submission for a period.

    The (department_id, period) unique constraint decides concurrent creates:
    the losing request gets DuplicateSubmissionError, never an overwrite.
    """
    await _ensure_table()
    await ensure_user(submitted_by, email)

    attempt = 0
    while attempt < 5:
        ref = await generate_department_ref()
        try:
            saved = await fetchrow(
                """
                INSERT INTO department_submissions (
                  dept_submission_ref, department_id, period, submitted_by, status, items, notes
                )
                VALUES (%(ref)s, %(department_id)s, %(period)s, %(submitted_by)s, 'submitted', %(items)s, %(notes)s)
                ON CONFLICT (department_id, period) DO NOTHING
                RETURNING *
                """,
                {
                    "ref": ref,
                    "department_id": department_id,
                    "period": period,
                    "submitted_by": submitted_by,
                    "items": Jsonb(items_payload(list(items))),
                    "notes": notes,
                },
            )
        except UniqueViolation:
            # dept_submission_ref taken by a concurrent insert; draw a new one
            attempt += 1
            continue

        if saved:
            log.info("Created department submission %s for %s %s", ref, department_id, period)
            return _from_db_row(saved)

        existing = await find_department_submission(department_id, period)
        if existing is None:
            raise RuntimeError("Department submission conflict but no existing row was found")
        raise DuplicateSubmissionError(existing)

    raise RuntimeError("Failed to create a unique department submission reference after multiple attempts")


async def list_department_submissions(period: Optional[str] = None, status: str = "submitted") -> List[DepartmentSubmission]:
    await _ensure_table()
    clauses = ["ds.status = %s"]
    params: list = [status]
    if period:
        clauses.append("ds.period = %s")
        params.append(period)
    rows = await fetch(
        _SELECT_SUBMISSIONS + " WHERE " + " AND ".join(clauses) + " ORDER BY ds.submitted_at DESC",
        params,
    )
    return [_from_db_row(r) for r in rows]


async def list_approved_submissions(period: str) -> List[DepartmentSubmission]:
    return await list_department_submissions(period=period, status="approved")


async def review_department_submission(
    submission_id: str,
    status: str,
    reviewer: str,
    rejection_reason: Optional[str] = None,
    items: Optional[Sequence[AggregateItem]] = None,
) -> Tuple[DepartmentSubmission, DepartmentSubmission]:
    """Approve or reject a submission that is still in the ``submitted`` state."""
    current = await get_department_submission(submission_id)
    if current is None:
        raise ValueError("Submission not found")
    if current.status != "submitted":
        raise InvalidReviewStateError(f"Cannot review submission with status: {current.status}")

    if status == "approved":
        new_items = list(items) if items else current.items
        saved = await fetchrow(
            """
            UPDATE department_submissions
            SET status = 'approved', approved_at = now(), approved_by = %(reviewer)s,
                items = %(items)s, updated_at = now()
            WHERE id::text = %(id)s AND status = 'submitted'
            RETURNING *
            """,
            {"id": submission_id, "reviewer": reviewer, "items": Jsonb(items_payload(new_items))},
        )
    else:
        saved = await fetchrow(
            """
            UPDATE department_submissions
            SET status = 'rejected', rejection_reason = %(reason)s, updated_at = now()
            WHERE id::text = %(id)s AND status = 'submitted'
            RETURNING *
            """,
            {"id": submission_id, "reason": rejection_reason},
        )

    if not saved:
        raise InvalidReviewStateError("Submission was reviewed by someone else")
    return current, _from_db_row(saved)
