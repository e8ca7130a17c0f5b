import csv
import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from psycopg.types.json import Jsonb

from ..core.database import execute, fetch, fetchrow
from ..models.report import MasterReport, ReportPreviewRow
from ..models.submission import DepartmentSubmission, items_payload
from .allocation_engine import to_hundredths
from .department_submission_service import list_approved_submissions
from .roles_service import ensure_user, ensure_users_table

log = logging.getLogger(__name__)

FORMULA_PREFIXES = ("=", "+", "-", "@")

master_reports_ready = False


class ReportAlreadyPublishedError(Exception):
    def __init__(self, existing: MasterReport):
        super().__init__(f"Master report already published for period {existing.period}")
        self.existing = existing


class NoApprovedSubmissionsError(Exception):
    pass


async def _ensure_table():
    global master_reports_ready
    if master_reports_ready:
        return
    await ensure_users_table()
    await execute(
        """
        CREATE EXTENSION IF NOT EXISTS "pgcrypto";
        CREATE TABLE IF NOT EXISTS master_reports (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          period TEXT NOT NULL,
          published_by TEXT NOT NULL,
          published_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          payload JSONB NOT NULL DEFAULT '{}'::jsonb,
          status TEXT NOT NULL DEFAULT 'publishing',
          error_message TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS master_reports_period_idx ON master_reports(period);
        CREATE INDEX IF NOT EXISTS master_reports_status_idx ON master_reports(status);
        """
    )
    master_reports_ready = True


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _round2(value: float) -> float:
    return to_hundredths(value) / 100


def build_report_payload(
    period: str,
    submissions: Sequence[DepartmentSubmission],
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Consolidate approved department submissions into the published report document."""
    products = sorted({item.product for sub in submissions for item in sub.items})

    departments: List[Dict[str, Any]] = []
    for sub in submissions:
        allocations = {item.product: item.percentage for item in sub.items}
        row: Dict[str, Any] = {"department": sub.department or "Unknown"}
        for product in products:
            row[product] = allocations.get(product, 0)
        row.update(
            {
                "status": sub.status,
                "submittedAt": _iso_or_none(sub.submitted_at),
                "approvedAt": _iso_or_none(sub.approved_at),
                "notes": sub.notes or "",
            }
        )
        departments.append(row)

    count = len(submissions)
    product_totals: Dict[str, float] = {}
    product_averages: Dict[str, float] = {}
    for product in products:
        total = sum(row[product] for row in departments)
        product_totals[product] = _round2(total)
        product_averages[product] = _round2(total / count) if count else 0

    return {
        "metadata": {
            "period": period,
            "generatedAt": (generated_at or datetime.now(timezone.utc)).isoformat(),
            "totalDepartments": count,
            "products": products,
        },
        "departments": departments,
        "summary": {
            "totalDepartments": count,
            "productTotals": product_totals,
            "productAverages": product_averages,
        },
    }


def _text_cell(value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    if text.startswith(FORMULA_PREFIXES):
        return "'" + text
    return text


def _number_cell(value: Any) -> str:
    return ("%.2f" % float(value or 0)).rstrip("0").rstrip(".")


def report_to_csv(payload: Dict[str, Any]) -> str:
    """Excel-friendly CSV: one row per department, then Total and Average rows."""
    products = payload["metadata"]["products"]
    summary = payload["summary"]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(["Department", *products, "Status", "Submitted At", "Approved At", "Notes"])
    for dept in payload["departments"]:
        writer.writerow(
            [
                _text_cell(dept.get("department")),
                *[_number_cell(dept.get(p)) for p in products],
                _text_cell(dept.get("status")),
                _text_cell(dept.get("submittedAt")),
                _text_cell(dept.get("approvedAt")),
                _text_cell(dept.get("notes")),
            ]
        )

    writer.writerow([])
    writer.writerow(["Metric", *products])
    writer.writerow(["Total", *[_number_cell(summary["productTotals"].get(p)) for p in products]])
    writer.writerow(["Average", *[_number_cell(summary["productAverages"].get(p)) for p in products]])
    return buffer.getvalue()


def report_file_name(report: MasterReport, extension: str) -> str:
    stamp = (report.published_at or datetime.now(timezone.utc)).date().isoformat()
    return f"master_report_{report.period}_{stamp}.{extension}"


def _from_db_row(row: dict) -> MasterReport:
    return MasterReport(
        id=str(row["id"]),
        period=row["period"],
        published_by=row["published_by"],
        published_by_email=row.get("published_by_email"),
        published_at=row.get("published_at"),
        payload=row.get("payload") or {},
        status=row["status"],
        error_message=row.get("error_message"),
    )


async def preview_master_report(period: str) -> List[ReportPreviewRow]:
    submissions = await list_approved_submissions(period)
    return [
        ReportPreviewRow(
            department=sub.department or "Unknown",
            period=sub.period,
            items=items_payload(sub.items),
            submitted_at=sub.submitted_at,
            approved_at=sub.approved_at,
        )
        for sub in submissions
    ]


async def find_published_report(period: str) -> Optional[MasterReport]:
    await _ensure_table()
    row = await fetchrow(
        """
        SELECT * FROM master_reports
        WHERE period = %s AND status = 'published'
        ORDER BY published_at DESC
        LIMIT 1
        """,
        [period],
    )
    return _from_db_row(row) if row else None


async def publish_master_report(period: str, publisher: str, email: Optional[str], overwrite: bool = False) -> MasterReport:
    """
    Snapshot every approved department submission for ``period`` into a master report.

    The row is written as ``publishing`` first and flipped to ``published``, or
    to ``failed`` with the error message when the payload cannot be built.
    """
    await _ensure_table()

    existing = await find_published_report(period)
    if existing and not overwrite:
        raise ReportAlreadyPublishedError(existing)

    submissions = await list_approved_submissions(period)
    if not submissions:
        raise NoApprovedSubmissionsError(f"No approved submissions found for period {period}")

    await ensure_user(publisher, email)
    draft = await fetchrow(
        """
        INSERT INTO master_reports (period, published_by, payload, status)
        VALUES (%s, %s, %s, 'publishing')
        RETURNING *
        """,
        [
            period,
            publisher,
            Jsonb({"departments": [{"department": s.department, "items": items_payload(s.items)} for s in submissions]}),
        ],
    )
    report_id = draft["id"]

    try:
        payload = build_report_payload(period, submissions)
    except Exception as exc:
        log.exception("Failed to build master report for %s", period)
        await execute(
            "UPDATE master_reports SET status = 'failed', error_message = %s, updated_at = now() WHERE id = %s",
            [str(exc), report_id],
        )
        raise

    saved = await fetchrow(
        """
        UPDATE master_reports
        SET status = 'published', payload = %s, published_at = now(), updated_at = now()
        WHERE id = %s
        RETURNING *
        """,
        [Jsonb(payload), report_id],
    )
    log.info("Published master report %s for %s (%d departments)", report_id, period, len(submissions))
    return _from_db_row(saved)


async def list_master_reports(period: Optional[str] = None) -> List[MasterReport]:
    await _ensure_table()
    query = """
        SELECT mr.*, u.email AS published_by_email
        FROM master_reports mr
        LEFT JOIN users u ON u.id = mr.published_by
        WHERE mr.status = 'published'
    """
    params: list = []
    if period:
        query += " AND mr.period = %s"
        params.append(period)
    rows = await fetch(query + " ORDER BY mr.published_at DESC", params)
    return [_from_db_row(r) for r in rows]


async def get_master_report(report_id: str) -> Optional[MasterReport]:
    await _ensure_table()
    row = await fetchrow(
        """
        SELECT mr.*, u.email AS published_by_email
        FROM master_reports mr
        LEFT JOIN users u ON u.id = mr.published_by
        WHERE mr.id::text = %s
        """,
        [report_id],
    )
    return _from_db_row(row) if row else None
