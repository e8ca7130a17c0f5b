import time

from ..core.database import fetchrow

DEPARTMENT_REF_PREFIX = "D_SUB"


def format_department_ref(number: int) -> str:
    return f"{DEPARTMENT_REF_PREFIX}_{str(number).zfill(3)}"


async def _ref_exists(ref: str) -> bool:
    row = await fetchrow(
        "SELECT 1 FROM department_submissions WHERE dept_submission_ref = %s",
        [ref],
    )
    return bool(row)


async def generate_department_ref(max_retries: int = 5) -> str:
    """Next D_SUB_NNN reference, falling back to a timestamp when the counter keeps colliding."""
    for attempt in range(max_retries):
        row = await fetchrow("SELECT COUNT(*) AS total FROM department_submissions")
        count = int(row["total"]) if row else 0
        ref = format_department_ref(count + 1 + attempt)
        if not await _ref_exists(ref):
            return ref

    return f"{DEPARTMENT_REF_PREFIX}_{int(time.time() * 1000)}"
