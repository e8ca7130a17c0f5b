import json
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status

from ..core.auth import require_admin
from ..models.allocation import PERIOD_PATTERN
from ..models.audit import AuditLogsResponse
from ..models.report import MasterReport, MasterReportsResponse, PublishRequest, ReportPreviewResponse
from ..models.submission import PendingSubmissionsResponse, ReviewRequest, SubmissionStatus, items_payload
from ..models.user import AuthenticatedUser
from ..services.allocation_engine import normalize_manual_items
from ..services.audit_service import get_entity_logs, log_action, request_metadata
from ..services.department_submission_service import (
    InvalidReviewStateError,
    list_department_submissions,
    review_department_submission,
)
from ..services.report_service import (
    NoApprovedSubmissionsError,
    ReportAlreadyPublishedError,
    get_master_report,
    list_master_reports,
    preview_master_report,
    publish_master_report,
    report_file_name,
    report_to_csv,
)
from ..services.roles_service import set_user_role

router = APIRouter(prefix="/admin")
log = logging.getLogger(__name__)


@router.get("/pending", response_model=PendingSubmissionsResponse)
async def get_pending_submissions(
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN),
    status_filter: SubmissionStatus = Query("submitted", alias="status"),
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    submissions = await list_department_submissions(period=period, status=status_filter)
    return {"count": len(submissions), "submissions": submissions}


@router.patch("/department_submissions/{submission_id}")
async def review_submission(
    submission_id: str,
    payload: ReviewRequest,
    request: Request,
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    items = None
    if payload.status == "approved" and payload.items:
        # Admin edits go through the same rebalancing as manual HOD entry
        items = normalize_manual_items(payload.items)
        if not items:
            raise HTTPException(status_code=400, detail="Item percentages must not all be zero")

    try:
        previous, saved = await review_department_submission(
            submission_id,
            payload.status,
            admin_user.uid,
            rejection_reason=payload.rejection_reason,
            items=items,
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidReviewStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await log_action(
        admin_user.uid,
        "approve_submission" if saved.status == "approved" else "reject_submission",
        "department_submission",
        saved.id,
        {"status": previous.status, "items": items_payload(previous.items)},
        {"status": saved.status, "items": items_payload(saved.items), "rejection_reason": saved.rejection_reason},
        **request_metadata(request),
    )
    return {
        "message": f"Submission {saved.status} successfully",
        "submission": {
            "id": saved.id,
            "dept_submission_ref": saved.dept_submission_ref,
            "status": saved.status,
            "approved_at": saved.approved_at,
            "rejection_reason": saved.rejection_reason,
        },
    }


@router.get("/reports/master/{period}", response_model=ReportPreviewResponse)
async def preview_report(period: str, admin_user: AuthenticatedUser = Depends(require_admin)):
    rows = await preview_master_report(period)
    if not rows:
        raise HTTPException(status_code=404, detail=f"No approved submissions found for period {period}")
    return {"period": period, "count": len(rows), "data": rows}


@router.post("/publish")
async def publish_report(
    payload: PublishRequest,
    request: Request,
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    try:
        report = await publish_master_report(payload.period, admin_user.uid, admin_user.email, payload.overwrite)
    except ReportAlreadyPublishedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "existing": {
                    "id": exc.existing.id,
                    "published_at": exc.existing.published_at.isoformat() if exc.existing.published_at else None,
                },
            },
        ) from exc
    except NoApprovedSubmissionsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        log.exception("Failed to publish master report for %s", payload.period)
        raise HTTPException(status_code=500, detail="Failed to publish master report") from exc

    submission_count = report.payload.get("metadata", {}).get("totalDepartments", 0)
    await log_action(
        admin_user.uid,
        "publish_master_report",
        "master_report",
        report.id,
        None,
        {"period": report.period, "submission_count": submission_count},
        **request_metadata(request),
    )
    return {
        "message": "Master report published successfully",
        "published": True,
        "masterReportId": report.id,
        "period": report.period,
        "submission_count": submission_count,
        "data": report.payload,
    }


@router.get("/master-reports", response_model=MasterReportsResponse)
async def get_master_reports(
    period: Optional[str] = Query(None, pattern=PERIOD_PATTERN),
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    reports = await list_master_reports(period)
    return {"count": len(reports), "reports": reports}


@router.get("/master-reports/{report_id}", response_model=MasterReport)
async def get_master_report_by_id(report_id: str, admin_user: AuthenticatedUser = Depends(require_admin)):
    report = await get_master_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Master report not found")
    return report


@router.get("/master-reports/{report_id}/export")
async def export_master_report(
    report_id: str,
    format: Literal["json", "csv"] = "json",
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    report = await get_master_report(report_id)
    if report is None or report.status != "published":
        raise HTTPException(status_code=404, detail="Master report not found")

    file_name = report_file_name(report, format)
    headers = {"Content-Disposition": f'attachment; filename="{file_name}"'}
    if format == "csv":
        return Response(report_to_csv(report.payload), media_type="text/csv; charset=utf-8", headers=headers)
    return Response(json.dumps(report.payload, indent=2), media_type="application/json", headers=headers)


@router.get("/audit/{entity}/{entity_id}", response_model=AuditLogsResponse)
async def get_audit_logs(
    entity: str,
    entity_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    try:
        logs = await get_entity_logs(entity, entity_id, limit)
    except Exception as exc:  # pragma: no cover
        log.exception("Failed to read audit logs for %s %s", entity, entity_id)
        raise HTTPException(status_code=503, detail="Audit log unavailable") from exc
    return {"count": len(logs), "logs": logs}


@router.post("/users/role")
async def set_role(
    payload: dict = Body(...),
    admin_user: AuthenticatedUser = Depends(require_admin),
):
    uid = payload.get("uid") if isinstance(payload, dict) else None
    role = payload.get("role") if isinstance(payload, dict) else None
    department_id = payload.get("department_id") if isinstance(payload, dict) else None
    if not uid or not role:
        raise HTTPException(status_code=400, detail="uid and role are required")
    try:
        await set_user_role(uid, role, department_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "uid": uid, "role": role, "department_id": department_id}
