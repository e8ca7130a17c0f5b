import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core.auth import ensure_department_access, get_current_user, require_department_access
from ..models.allocation import PERIOD_PATTERN
from ..models.department import Department, Employee
from ..models.submission import (
    AggregatePreview,
    AggregateRequest,
    DepartmentSubmissionCreated,
    DepartmentSubmissionsResponse,
    EmployeeSubmissionUpdate,
    items_payload,
)
from ..models.user import AuthenticatedUser
from ..services.allocation_engine import allocation_total, build_department_allocation, normalize_manual_items
from ..services.audit_service import log_action, request_metadata
from ..services.department_service import get_department, list_departments, list_employees
from ..services.department_submission_service import (
    DuplicateSubmissionError,
    create_department_submission,
    find_department_submission,
)
from ..services.employee_submission_service import (
    fetch_allocation_records,
    get_submission_rows,
    list_submission_groups,
    snapshot_rows,
    update_submission_group,
)

router = APIRouter()
log = logging.getLogger(__name__)


def _conflict(existing) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": f"Department submission already exists for period {existing.period}. Status: {existing.status}",
            "existing": {
                "dept_submission_ref": existing.dept_submission_ref,
                "status": existing.status,
                "submitted_at": existing.submitted_at.isoformat() if existing.submitted_at else None,
            },
        },
    )


async def _require_department(department_id: str) -> Department:
    department = await get_department(department_id)
    if department is None:
        raise HTTPException(status_code=404, detail="Department not found")
    return department


async def _auto_aggregate(department_id: str, period: str):
    records = await fetch_allocation_records(department_id, period)
    if not records:
        raise HTTPException(
            status_code=400,
            detail="No employee submissions found for this department and period. Cannot auto-aggregate.",
        )
    items = build_department_allocation(records)
    if not items:
        raise HTTPException(
            status_code=400,
            detail="No valid product allocations found in employee submissions. Cannot auto-aggregate.",
        )
    return items


@router.get("/departments", response_model=List[Department])
async def get_departments(user: AuthenticatedUser = Depends(get_current_user)):
    return await list_departments()


@router.get("/departments/{department_id}/employees", response_model=List[Employee])
async def get_department_employees(department_id: str, user: AuthenticatedUser = Depends(require_department_access)):
    return await list_employees(department_id)


@router.get("/departments/{department_id}/submissions", response_model=DepartmentSubmissionsResponse)
async def get_department_submissions(
    department_id: str,
    period: str = Query(..., pattern=PERIOD_PATTERN),
    user: AuthenticatedUser = Depends(require_department_access),
):
    submissions = await list_submission_groups(department_id, period)
    return {"department_id": department_id, "period": period, "submissions": submissions}


@router.get("/departments/{department_id}/aggregate/preview", response_model=AggregatePreview)
async def preview_department_aggregate(
    department_id: str,
    period: str = Query(..., pattern=PERIOD_PATTERN),
    user: AuthenticatedUser = Depends(require_department_access),
):
    items = await _auto_aggregate(department_id, period)
    return {"department_id": department_id, "period": period, "items": items}


@router.post(
    "/departments/{department_id}/aggregate",
    response_model=DepartmentSubmissionCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_department_aggregate(
    department_id: str,
    payload: AggregateRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_department_access),
):
    await _require_department(department_id)

    existing = await find_department_submission(department_id, payload.period)
    if existing:
        raise _conflict(existing)

    if payload.auto_aggregate:
        items = await _auto_aggregate(department_id, payload.period)
    else:
        if not payload.items:
            raise HTTPException(
                status_code=400,
                detail="Items are required. Provide items array or set auto_aggregate to true.",
            )
        items = normalize_manual_items(payload.items)
        if not items:
            raise HTTPException(status_code=400, detail="Item percentages must not all be zero")

    try:
        saved = await create_department_submission(
            department_id, payload.period, items, payload.notes, user.uid, user.email
        )
    except DuplicateSubmissionError as exc:
        raise _conflict(exc.existing) from exc

    log.info(
        "Department %s submitted %s for %s (%s, total %.2f)",
        department_id,
        saved.dept_submission_ref,
        payload.period,
        "auto" if payload.auto_aggregate else "manual",
        allocation_total(saved.items),
    )
    await log_action(
        user.uid,
        "create_department_submission",
        "department_submission",
        saved.id,
        None,
        {"dept_submission_ref": saved.dept_submission_ref, "period": saved.period, "items": items_payload(saved.items)},
        **request_metadata(request),
    )
    return {
        "dept_submission_ref": saved.dept_submission_ref,
        "status": saved.status,
        "submitted_at": saved.submitted_at,
        "items": saved.items,
    }


@router.patch("/departments/employee_submissions/{submission_ref}")
async def update_employee_submission(
    submission_ref: str,
    payload: EmployeeSubmissionUpdate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
):
    rows = await get_submission_rows(submission_ref)
    if not rows:
        raise HTTPException(status_code=404, detail="Submission not found")

    ensure_department_access(user, str(rows[0]["department_id"]))

    old_values = snapshot_rows(rows)
    await update_submission_group(submission_ref, rows, payload.items, payload.approved)

    new_items = items_payload(payload.items) if payload.items is not None else [
        {k: v for k, v in row.items() if k != "approved"} for row in old_values
    ]
    if payload.approved is None:
        new_status = "approved" if old_values[0]["approved"] else "pending"
    else:
        new_status = "approved" if payload.approved else "pending"

    await log_action(
        user.uid,
        "update_employee_submission",
        "employee_submission",
        submission_ref.upper(),
        old_values,
        {"items": new_items, "status": new_status},
        **request_metadata(request),
    )
    return {"ok": True, "submission_ref": submission_ref.upper()}
