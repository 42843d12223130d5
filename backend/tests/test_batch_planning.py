"""Batch splitting, batch codes and run status derivation."""
import uuid

import pytest

from app.services.production_run_service import derive_run_status, make_batch_code, plan_batch_quantities


@pytest.mark.parametrize(
    "quantity, batch_size, expected",
    [
        (250, 100, [100, 100, 50]),
        (300, 100, [100, 100, 100]),
        (99, 100, [99]),
        (1, 1, [1]),
        (250, None, [250]),
        (250, 0, [250]),
        (250, -5, [250]),
    ],
)
def test_plan_batch_quantities(quantity, batch_size, expected):
    assert plan_batch_quantities(quantity, batch_size) == expected


def test_plan_batch_quantities_sums_to_order_quantity():
    for quantity in range(1, 400, 37):
        for size in (1, 7, 50, 100, 1000):
            batches = plan_batch_quantities(quantity, size)
            assert sum(batches) == quantity
            assert len(batches) == -(-quantity // size)
            assert all(0 < b <= size for b in batches)


def test_plan_batch_quantities_rejects_non_positive_quantity():
    with pytest.raises(ValueError):
        plan_batch_quantities(0, 100)


def test_batch_codes_are_unique_per_run_and_index():
    run_a, run_b = uuid.uuid4(), uuid.uuid4()
    codes = {make_batch_code("SKU", run, i) for run in (run_a, run_b) for i in (1, 2, 3)}
    assert len(codes) == 6
    assert make_batch_code("SKU", run_a, 2).endswith("-02")


class TestDeriveRunStatus:

    def test_fresh_run_is_planned(self):
        assert derive_run_status("IN_PROGRESS", ["PLANNED", "PLANNED"], ["PENDING", "PENDING"]) == "PLANNED"

    def test_any_step_leaving_pending_means_in_progress(self):
        assert derive_run_status("IN_PROGRESS", ["PLANNED"], ["CLAIMED", "PENDING"]) == "IN_PROGRESS"

    def test_any_batch_leaving_planned_means_in_progress(self):
        assert derive_run_status("IN_PROGRESS", ["IN_PROGRESS"], ["PENDING"]) == "IN_PROGRESS"

    def test_all_batches_completed_and_steps_terminal(self):
        assert derive_run_status("IN_PROGRESS", ["COMPLETED", "COMPLETED"], ["DONE", "SKIPPED"]) == "COMPLETED"

    def test_completed_batches_with_open_step_stay_in_progress(self):
        assert derive_run_status("IN_PROGRESS", ["COMPLETED"], ["DONE", "IN_PROGRESS"]) == "IN_PROGRESS"

    def test_archived_order_cancels_run(self):
        assert derive_run_status("ARCHIVED", ["COMPLETED"], ["DONE"]) == "CANCELLED"

    def test_completed_order_completes_run(self):
        assert derive_run_status("COMPLETED", ["COMPLETED"], ["DONE", "PENDING"]) == "COMPLETED"
