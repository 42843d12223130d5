"""Run health flags and fleet summary with an injected clock."""
from datetime import datetime, timedelta, timezone

from app.services.run_health_service import (
    RunSnapshot,
    StepSnapshot,
    compute_run_health,
    count_unresolved_required_skips,
    has_required_skips,
    has_stalled_step,
    is_blocked,
    summarize,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(*steps, run_status="IN_PROGRESS", order_status="IN_PROGRESS"):
    return RunSnapshot(run_status=run_status, order_status=order_status, steps=tuple(steps))


def test_required_skip_is_flagged():
    snap = snapshot(StepSnapshot("SKIPPED", required=True, skipped_at=NOW))
    assert has_required_skips(snap)


def test_optional_skip_is_not_flagged():
    snap = snapshot(StepSnapshot("SKIPPED", required=False, skipped_at=NOW), StepSnapshot("DONE", required=True))
    assert not has_required_skips(snap)
    assert not is_blocked(snap)


def test_stalled_step_uses_threshold():
    fresh = snapshot(StepSnapshot("IN_PROGRESS", required=True, started_at=NOW - timedelta(hours=3, minutes=59)))
    stale = snapshot(StepSnapshot("IN_PROGRESS", required=True, started_at=NOW - timedelta(hours=4, minutes=1)))
    assert not has_stalled_step(fresh, 4, NOW)
    assert has_stalled_step(stale, 4, NOW)
    assert not has_stalled_step(stale, 8, NOW)


def test_stalled_step_ignored_on_finished_run():
    snap = snapshot(
        StepSnapshot("IN_PROGRESS", required=True, started_at=NOW - timedelta(days=2)),
        run_status="CANCELLED",
        order_status="ARCHIVED",
    )
    assert not has_stalled_step(snap, 4, NOW)


def test_naive_timestamps_are_treated_as_utc():
    naive_start = (NOW - timedelta(hours=5)).replace(tzinfo=None)
    snap = snapshot(StepSnapshot("IN_PROGRESS", required=True, started_at=naive_start))
    assert has_stalled_step(snap, 4, NOW)


def test_blocked_order_is_blocked():
    snap = snapshot(StepSnapshot("PENDING", required=True), order_status="BLOCKED")
    assert is_blocked(snap)


def test_unresolved_required_skip_blocks_until_compensated():
    skipped = StepSnapshot("SKIPPED", required=True, skipped_at=NOW - timedelta(hours=1))
    assert is_blocked(snapshot(skipped))
    assert not is_blocked(snapshot(skipped), required_skip_blocks=False)

    compensation = StepSnapshot("DONE", required=True, source="ADHOC", completed_at=NOW)
    assert count_unresolved_required_skips(snapshot(skipped, compensation)) == 0
    assert not is_blocked(snapshot(skipped, compensation))


def test_compensation_must_finish_after_the_skip():
    skipped = StepSnapshot("SKIPPED", required=True, skipped_at=NOW)
    earlier = StepSnapshot("DONE", required=True, source="ADHOC", completed_at=NOW - timedelta(minutes=5))
    optional = StepSnapshot("DONE", required=False, source="ADHOC", completed_at=NOW + timedelta(minutes=5))
    template = StepSnapshot("DONE", required=True, source="TEMPLATE", completed_at=NOW + timedelta(minutes=5))
    assert is_blocked(snapshot(skipped, earlier, optional, template))


def test_compute_run_health_reports_counts():
    snap = snapshot(
        StepSnapshot("SKIPPED", required=True, skipped_at=NOW),
        StepSnapshot("IN_PROGRESS", required=False, started_at=NOW - timedelta(hours=6)),
    )
    health = compute_run_health(snap, stall_hours=4, now=NOW, required_skip_blocks=True)
    assert health.has_required_skips
    assert health.has_stalled_step
    assert health.is_blocked
    assert health.to_dict()["stalled_steps"] == 1
    assert health.unresolved_required_skips == 1


def test_summarize_counts_only_active_runs():
    snapshots = [
        snapshot(StepSnapshot("PENDING", required=True), run_status="PLANNED"),
        snapshot(StepSnapshot("SKIPPED", required=True, skipped_at=NOW)),
        snapshot(StepSnapshot("IN_PROGRESS", required=True, started_at=NOW - timedelta(hours=5))),
        snapshot(StepSnapshot("SKIPPED", required=True, skipped_at=NOW), run_status="COMPLETED", order_status="COMPLETED"),
        snapshot(StepSnapshot("PENDING", required=True), order_status="BLOCKED"),
    ]
    summary = summarize(snapshots, stall_hours=4, now=NOW, required_skip_blocks=True)
    assert summary["active_runs"] == 4
    assert summary["has_required_skips"] == 1
    assert summary["has_stalled_step"] == 1
    assert summary["is_blocked"] == 2
    assert len(summary["flagged_runs"]) == 3


def test_summarize_empty_fleet():
    summary = summarize([], now=NOW)
    assert summary["active_runs"] == 0
    assert summary["flagged_runs"] == []
