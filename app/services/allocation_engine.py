"""
Department allocation engine.

Rolls employee product-time allocations up to a department-level split that
sums to exactly 100%. Three steps, all pure functions:

* ``collect_allocations``: group records per employee, summing repeated
  (employee, product) rows.
* ``aggregate_allocations``: add every employee's per-product value into
  department totals and one grand total. Employees are weighted by whatever
  they submitted; nothing is rescaled per employee here.
* ``normalize_allocation``: turn totals into percentages rounded to two
  decimals, then push any rounding drift onto the largest item.

``normalize_manual_items`` applies the same rounding and drift correction to
items an HOD typed in by hand.

Percentages are rounded into integer hundredths of a percent (half away from
zero) and balanced as integers, so the corrected items always add up to
10000 hundredths. Any drift at all is corrected, including a single
hundredth: a tolerance of 0.01 would let stored splits read 99.99 or 100.01.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.allocation import AggregateItem, AllocationRecord, AllocationTotals, DepartmentAllocation

log = logging.getLogger(__name__)

FULL_ALLOCATION = 10000  # 100.00% in hundredths of a percent


def collect_allocations(records: Iterable[AllocationRecord]) -> Dict[str, Dict[str, float]]:
    grouped: Dict[str, Dict[str, float]] = {}
    for record in records:
        products = grouped.setdefault(record.subject_id, {})
        products[record.product] = products.get(record.product, 0.0) + record.percentage
    return grouped


def aggregate_allocations(grouped: Dict[str, Dict[str, float]]) -> AllocationTotals:
    product_totals: Dict[str, float] = {}
    grand_total = 0.0
    for products in grouped.values():
        for product, percentage in products.items():
            product_totals[product] = product_totals.get(product, 0.0) + percentage
            grand_total += percentage
    return AllocationTotals(product_totals=product_totals, grand_total=grand_total)


def to_hundredths(percentage: float) -> int:
    """Round a percentage to two decimals, returned as integer hundredths."""
    return int(Decimal(percentage * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _balance(hundredths: List[int]) -> List[int]:
    drift = FULL_ALLOCATION - sum(hundredths)
    if drift and hundredths:
        # max() keeps the first of equal values
        largest = max(range(len(hundredths)), key=hundredths.__getitem__)
        log.debug("Moving %d hundredths of rounding drift onto item %d", drift, largest)
        hundredths[largest] += drift
    return hundredths


def _round_and_balance(entries: Sequence[Tuple[str, float, Optional[str]]]) -> DepartmentAllocation:
    hundredths = _balance([to_hundredths(raw) for _, raw, _ in entries])
    return [
        AggregateItem(product=product, percentage=value / 100, notes=notes)
        for (product, _, notes), value in zip(entries, hundredths)
    ]


def normalize_allocation(totals: AllocationTotals) -> DepartmentAllocation:
    """
    Convert department totals into percentages summing to 100.00.

    Returns an empty list when the grand total is zero: there is nothing to
    aggregate and the caller decides how to report it.
    """
    grand_total = totals.grand_total
    if grand_total <= 0:
        return []

    entries = [
        (product, total / grand_total * 100, None)
        for product, total in totals.product_totals.items()
        if total
    ]
    return _round_and_balance(entries)


def normalize_manual_items(items: Sequence[AggregateItem]) -> DepartmentAllocation:
    """Rescale hand-entered items to 100, keeping their order, notes and zero rows."""
    declared_total = sum(item.percentage for item in items)
    if declared_total <= 0:
        return []

    entries = [(item.product, item.percentage / declared_total * 100, item.notes) for item in items]
    return _round_and_balance(entries)


def build_department_allocation(records: Iterable[AllocationRecord]) -> DepartmentAllocation:
    return normalize_allocation(aggregate_allocations(collect_allocations(records)))


def allocation_total(items: Iterable[AggregateItem]) -> float:
    return sum(to_hundredths(item.percentage) for item in items) / 100
