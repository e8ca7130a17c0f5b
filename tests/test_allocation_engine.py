"""
Unit tests for the department allocation engine.

Covers collection of repeated rows, department totals, two-decimal rounding,
drift correction onto the largest item, and the manual-entry rebalancing.
"""
import random

import pytest

from app.models.allocation import AggregateItem, AllocationTotals
from app.services.allocation_engine import (
    aggregate_allocations,
    allocation_total,
    build_department_allocation,
    collect_allocations,
    normalize_allocation,
    normalize_manual_items,
    to_hundredths,
)


def _pairs(items):
    return [(item.product, item.percentage) for item in items]


class TestCollector:
    def test_repeated_rows_for_same_product_are_summed(self, make_records):
        records = make_records([
            ("E1", "Academy", 30),
            ("E1", "Academy", 30),
            ("E1", "Intensive", 40),
        ])
        assert collect_allocations(records) == {"E1": {"Academy": 60, "Intensive": 40}}

    def test_groups_by_subject(self, make_records):
        records = make_records([
            ("E1", "Academy", 100),
            ("E2", "NIAT", 50),
            ("E2", "Academy", 50),
        ])
        grouped = collect_allocations(records)
        assert grouped == {"E1": {"Academy": 100}, "E2": {"NIAT": 50, "Academy": 50}}

    def test_subject_over_100_is_passed_through(self, make_records):
        records = make_records([("E1", "Academy", 80), ("E1", "Academy", 70)])
        assert collect_allocations(records)["E1"]["Academy"] == 150

    def test_empty_input(self):
        assert collect_allocations([]) == {}


class TestAggregator:
    def test_totals_and_grand_total(self):
        totals = aggregate_allocations({
            "E1": {"Academy": 60, "Intensive": 40},
            "E2": {"Academy": 80, "Intensive": 20},
        })
        assert totals.product_totals == {"Academy": 140, "Intensive": 60}
        assert totals.grand_total == 200

    def test_product_order_follows_first_appearance(self):
        totals = aggregate_allocations({
            "E1": {"NIAT": 10, "Academy": 90},
            "E2": {"Intensive": 100},
        })
        assert list(totals.product_totals) == ["NIAT", "Academy", "Intensive"]

    def test_empty_grouping_is_all_zero(self):
        totals = aggregate_allocations({})
        assert totals.product_totals == {}
        assert totals.grand_total == 0


class TestNormalizer:
    def test_zero_grand_total_gives_empty_allocation(self):
        assert normalize_allocation(AllocationTotals(product_totals={"Academy": 0}, grand_total=0)) == []

    def test_zero_product_totals_are_skipped(self):
        totals = AllocationTotals(product_totals={"Academy": 100, "NIAT": 0}, grand_total=100)
        assert _pairs(normalize_allocation(totals)) == [("Academy", 100.0)]

    def test_weighted_aggregation(self, make_records):
        records = make_records([
            ("E1", "Academy", 60),
            ("E1", "Intensive", 40),
            ("E2", "Academy", 80),
            ("E2", "Intensive", 20),
        ])
        assert _pairs(build_department_allocation(records)) == [("Academy", 70.0), ("Intensive", 30.0)]

    def test_single_subject_single_product(self, make_records):
        items = build_department_allocation(make_records([("E1", "NIAT", 100)]))
        assert _pairs(items) == [("NIAT", 100.0)]

    def test_drift_goes_to_first_largest_item(self, make_records):
        records = make_records([
            ("E1", "Academy", 33.334),
            ("E1", "Intensive", 33.333),
            ("E1", "NIAT", 33.333),
        ])
        assert _pairs(build_department_allocation(records)) == [
            ("Academy", 33.34),
            ("Intensive", 33.33),
            ("NIAT", 33.33),
        ]

    def test_ties_after_rounding_resolve_by_iteration_order(self, make_records):
        records = make_records([
            ("E1", "Intensive", 33.333),
            ("E1", "Academy", 33.334),
            ("E1", "NIAT", 33.333),
        ])
        assert _pairs(build_department_allocation(records)) == [
            ("Intensive", 33.34),
            ("Academy", 33.33),
            ("NIAT", 33.33),
        ]

    def test_subjects_are_weighted_by_what_they_submitted(self, make_records):
        records = make_records([
            ("E1", "Academy", 100),
            ("E1", "Intensive", 100),
            ("E2", "Intensive", 100),
        ])
        assert _pairs(build_department_allocation(records)) == [("Academy", 33.33), ("Intensive", 66.67)]

    def test_empty_records(self):
        assert build_department_allocation([]) == []

    def test_all_zero_records(self, make_records):
        assert build_department_allocation(make_records([("E1", "Academy", 0), ("E2", "NIAT", 0)])) == []

    def test_deterministic(self, make_records):
        rows = [("E1", "Academy", 17.5), ("E1", "NIAT", 82.5), ("E2", "Intensive", 64.2), ("E2", "NIAT", 35.8)]
        first = build_department_allocation(make_records(rows))
        second = build_department_allocation(make_records(rows))
        assert [i.model_dump() for i in first] == [i.model_dump() for i in second]

    def test_sum_invariant_on_generated_departments(self, make_records):
        rng = random.Random(20251)
        products = ["Academy", "Intensive", "NIAT"]
        for _ in range(200):
            rows = []
            for subject in range(rng.randint(1, 12)):
                for product in rng.sample(products, rng.randint(1, 3)):
                    rows.append((f"E{subject}", product, round(rng.uniform(0, 100), rng.randint(0, 3))))
            items = build_department_allocation(make_records(rows))
            if not items:
                continue
            assert sum(to_hundredths(i.percentage) for i in items) == 10000
            assert abs(sum(i.percentage for i in items) - 100) <= 0.01


class TestManualItems:
    def test_rescales_imbalanced_pair(self):
        items = normalize_manual_items([
            AggregateItem(product="Academy", percentage=50),
            AggregateItem(product="Intensive", percentage=51),
        ])
        assert _pairs(items) == [("Academy", 49.5), ("Intensive", 50.5)]
        assert allocation_total(items) == 100.0

    def test_balanced_input_is_unchanged(self):
        items = normalize_manual_items([
            AggregateItem(product="Academy", percentage=55.25),
            AggregateItem(product="NIAT", percentage=44.75),
        ])
        assert _pairs(items) == [("Academy", 55.25), ("NIAT", 44.75)]

    def test_equal_thirds_add_the_cent_to_the_first(self):
        items = normalize_manual_items([
            AggregateItem(product="Academy", percentage=1),
            AggregateItem(product="Intensive", percentage=1),
            AggregateItem(product="NIAT", percentage=1),
        ])
        assert _pairs(items) == [("Academy", 33.34), ("Intensive", 33.33), ("NIAT", 33.33)]

    def test_overshoot_is_taken_from_largest(self):
        items = normalize_manual_items([AggregateItem(product="Academy", percentage=1)] * 6)
        assert [i.percentage for i in items] == [16.65, 16.67, 16.67, 16.67, 16.67, 16.67]
        assert allocation_total(items) == 100.0

    def test_keeps_notes_and_zero_rows(self):
        items = normalize_manual_items([
            AggregateItem(product="Academy", percentage=0, notes="paused"),
            AggregateItem(product="Intensive", percentage=25, notes="pilot"),
            AggregateItem(product="NIAT", percentage=25),
        ])
        assert [(i.product, i.percentage, i.notes) for i in items] == [
            ("Academy", 0.0, "paused"),
            ("Intensive", 50.0, "pilot"),
            ("NIAT", 50.0, None),
        ]

    def test_all_zero_gives_empty(self):
        assert normalize_manual_items([AggregateItem(product="Academy", percentage=0)]) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        (70.0, 7000),
        (0.125, 13),
        (49.504950495, 4950),
        (50.495049505, 5050),
        (1.005, 100),  # 1.005 * 100 is 100.49999999999999 in binary
    ],
)
def test_to_hundredths_rounds_half_away_from_zero_after_scaling(value, expected):
    assert to_hundredths(value) == expected


def test_single_hundredth_drift_is_still_corrected():
    totals = AllocationTotals(product_totals={"Academy": 82.685, "Intensive": 12.38, "NIAT": 22.324}, grand_total=117.389)
    items = normalize_allocation(totals)
    # rounds to 70.44 / 10.55 / 19.02 = 100.01 before correction
    assert _pairs(items) == [("Academy", 70.43), ("Intensive", 10.55), ("NIAT", 19.02)]
    assert allocation_total(items) == 100.0
