import pytest
from psycopg.errors import UniqueViolation

from app.models.allocation import AggregateItem
from app.services import department_submission_service as service
from app.services import employee_submission_service
from app.services import reference_service
from app.services.department_submission_service import DuplicateSubmissionError, InvalidReviewStateError

ITEMS = [AggregateItem(product="Academy", percentage=70), AggregateItem(product="Intensive", percentage=30)]


def _row(**overrides):
    row = {
        "id": "sub-1",
        "dept_submission_ref": "D_SUB_001",
        "department_id": "dept-1",
        "department_name": "Tech",
        "period": "2025-Q4",
        "submitted_by": "hod-1",
        "status": "submitted",
        "items": [{"product": "Academy", "percentage": 70.0}, {"product": "Intensive", "percentage": 30.0}],
        "notes": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def db(monkeypatch):
    """Queue fetchrow results and record the statements the service issues."""
    state = {"results": [], "queries": [], "refs": ["D_SUB_001", "D_SUB_002"]}

    async def _noop(*args, **kwargs):
        return None

    async def _fetchrow(query, params=None):
        state["queries"].append((query, params))
        result = state["results"].pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def _ref():
        return state["refs"].pop(0)

    monkeypatch.setattr(service, "_ensure_table", _noop)
    monkeypatch.setattr(service, "ensure_user", _noop)
    monkeypatch.setattr(service, "fetchrow", _fetchrow)
    monkeypatch.setattr(service, "generate_department_ref", _ref)
    return state


@pytest.mark.asyncio
async def test_create_inserts_items_as_json(db):
    db["results"] = [_row()]

    saved = await service.create_department_submission("dept-1", "2025-Q4", ITEMS, None, "hod-1", "hod@example.com")

    assert saved.dept_submission_ref == "D_SUB_001"
    assert saved.department_id == "dept-1"
    query, params = db["queries"][0]
    assert "ON CONFLICT (department_id, period) DO NOTHING" in query
    assert params["items"].obj == [{"product": "Academy", "percentage": 70.0}, {"product": "Intensive", "percentage": 30.0}]


@pytest.mark.asyncio
async def test_create_losing_a_race_raises_duplicate(db):
    # insert returns nothing, then the lookup finds the winner
    db["results"] = [None, _row(dept_submission_ref="D_SUB_009", status="submitted")]

    with pytest.raises(DuplicateSubmissionError) as exc_info:
        await service.create_department_submission("dept-1", "2025-Q4", ITEMS, None, "hod-1", None)
    assert exc_info.value.existing.dept_submission_ref == "D_SUB_009"


@pytest.mark.asyncio
async def test_create_retries_when_reference_is_taken(db):
    db["results"] = [UniqueViolation("dept_submission_ref"), _row(dept_submission_ref="D_SUB_002")]

    saved = await service.create_department_submission("dept-1", "2025-Q4", ITEMS, None, "hod-1", None)

    assert saved.dept_submission_ref == "D_SUB_002"
    assert [params["ref"] for _, params in db["queries"]] == ["D_SUB_001", "D_SUB_002"]


@pytest.mark.asyncio
async def test_review_missing_submission(db):
    db["results"] = [None]
    with pytest.raises(ValueError):
        await service.review_department_submission("nope", "approved", "admin-1")


@pytest.mark.asyncio
async def test_review_only_from_submitted(db):
    db["results"] = [_row(status="approved")]
    with pytest.raises(InvalidReviewStateError):
        await service.review_department_submission("sub-1", "rejected", "admin-1")


@pytest.mark.asyncio
async def test_review_lost_to_concurrent_reviewer(db):
    db["results"] = [_row(), None]
    with pytest.raises(InvalidReviewStateError):
        await service.review_department_submission("sub-1", "approved", "admin-1")


@pytest.mark.asyncio
async def test_approve_keeps_items_unless_edited(db):
    db["results"] = [_row(), _row(status="approved", approved_by="admin-1")]

    previous, saved = await service.review_department_submission("sub-1", "approved", "admin-1")

    assert previous.status == "submitted"
    assert saved.status == "approved"
    _, params = db["queries"][1]
    assert params["items"].obj[0] == {"product": "Academy", "percentage": 70.0}


@pytest.mark.asyncio
async def test_reject_records_reason(db):
    db["results"] = [_row(), _row(status="rejected", rejection_reason="Numbers look off")]

    _, saved = await service.review_department_submission("sub-1", "rejected", "admin-1", rejection_reason="Numbers look off")

    assert saved.rejection_reason == "Numbers look off"
    _, params = db["queries"][1]
    assert params == {"id": "sub-1", "reason": "Numbers look off"}


def test_format_department_ref():
    assert reference_service.format_department_ref(7) == "D_SUB_007"
    assert reference_service.format_department_ref(1234) == "D_SUB_1234"


@pytest.mark.asyncio
async def test_generate_ref_skips_taken_numbers(monkeypatch):
    taken = {"D_SUB_005"}

    async def _fetchrow(query, params=None):
        if "COUNT" in query:
            return {"total": 4}
        return {"?column?": 1} if params[0] in taken else None

    monkeypatch.setattr(reference_service, "fetchrow", _fetchrow)
    assert await reference_service.generate_department_ref() == "D_SUB_006"


@pytest.mark.asyncio
async def test_generate_ref_falls_back_to_timestamp(monkeypatch):
    async def _fetchrow(query, params=None):
        if "COUNT" in query:
            return {"total": 0}
        return {"?column?": 1}

    monkeypatch.setattr(reference_service, "fetchrow", _fetchrow)
    ref = await reference_service.generate_department_ref(max_retries=2)
    assert ref.startswith("D_SUB_")
    assert len(ref) > len("D_SUB_001")


@pytest.fixture
def batch(monkeypatch):
    """Record the statements an employee submission edit commits."""
    calls = []

    async def _execute_all(statements):
        calls.append(list(statements))
        return len(statements)

    async def _execute(*args, **kwargs):
        raise AssertionError("edits must go through a single transaction")

    monkeypatch.setattr(employee_submission_service, "execute_all", _execute_all)
    monkeypatch.setattr(employee_submission_service, "execute", _execute)
    return calls


def _employee_rows():
    return [
        {"id": "row-1", "employee_id": "e-1", "period": "2025-Q4", "product": "Academy"},
        {"id": "row-2", "employee_id": "e-1", "period": "2025-Q4", "product": "Intensive"},
    ]


@pytest.mark.asyncio
async def test_edit_commits_upserts_deletes_and_approval_together(batch):
    await employee_submission_service.update_submission_group(
        "sub_001",
        _employee_rows(),
        [AggregateItem(product="Academy", percentage=100)],
        True,
    )

    (statements,) = batch
    assert len(statements) == 3
    upsert, delete, approve = statements
    assert "ON CONFLICT (submission_ref, employee_id, product)" in upsert[0]
    assert upsert[1]["ref"] == "SUB_001"
    assert upsert[1]["product"] == "Academy"
    assert delete == ("DELETE FROM employee_submissions WHERE id = %s", ["row-2"])
    assert approve[1] == [True, "SUB_001"]


@pytest.mark.asyncio
async def test_status_only_edit_is_one_statement(batch):
    await employee_submission_service.update_submission_group("SUB_001", _employee_rows(), None, False)

    (statements,) = batch
    assert len(statements) == 1
    assert statements[0][1] == [False, "SUB_001"]


@pytest.mark.asyncio
async def test_empty_edit_writes_nothing(batch):
    await employee_submission_service.update_submission_group("SUB_001", _employee_rows(), None, None)
    assert batch == []
