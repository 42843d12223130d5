"""BATCHWORKS run health aggregation.

The flag computations are pure functions over frozen snapshots so they can
be evaluated in the API process, in the Celery beat task and in tests with an
injected clock. ``RunHealthService`` only loads snapshots from the database.
"""
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.rbac import PERM_HEALTH_VIEW, CurrentUser, ensure_permission
from app.models.production import (
    ACTIVE_RUN_STATUSES,
    Batch,
    OrderStatus,
    ProductionOrder,
    ProductionRun,
    RunStep,
    StepSource,
    StepStatus,
    TERMINAL_ORDER_STATUSES,
)
from app.services.production_run_service import ProductionRunService, derive_run_status

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class StepSnapshot:
    status: str
    required: bool
    source: str = StepSource.TEMPLATE.value
    started_at: datetime | None = None
    completed_at: datetime | None = None
    skipped_at: datetime | None = None


@dataclass(frozen=True)
class RunSnapshot:
    run_status: str
    order_status: str
    steps: tuple[StepSnapshot, ...] = ()
    run_id: UUID | None = None
    order_id: UUID | None = None
    order_number: str | None = None


@dataclass(frozen=True)
class RunHealth:
    has_required_skips: bool
    has_stalled_step: bool
    is_blocked: bool
    unresolved_required_skips: int = 0
    stalled_steps: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_required_skips": self.has_required_skips,
            "has_stalled_step": self.has_stalled_step,
            "is_blocked": self.is_blocked,
            "unresolved_required_skips": self.unresolved_required_skips,
            "stalled_steps": self.stalled_steps,
        }


def has_required_skips(snapshot: RunSnapshot) -> bool:
    return any(s.required and s.status == StepStatus.SKIPPED for s in snapshot.steps)


def count_stalled_steps(snapshot: RunSnapshot, stall_hours: float, now: datetime) -> int:
    """IN_PROGRESS steps started more than ``stall_hours`` ago, on a run that is still active."""
    if snapshot.run_status not in ACTIVE_RUN_STATUSES:
        return 0
    cutoff = _as_utc(now) - timedelta(hours=stall_hours)
    return sum(
        1
        for s in snapshot.steps
        if s.status == StepStatus.IN_PROGRESS and s.started_at is not None and _as_utc(s.started_at) < cutoff
    )


def has_stalled_step(snapshot: RunSnapshot, stall_hours: float, now: datetime) -> bool:
    return count_stalled_steps(snapshot, stall_hours, now) > 0


def count_unresolved_required_skips(snapshot: RunSnapshot) -> int:
    """
    Required skips not yet compensated.

    A skip is compensated once a required ad-hoc step reaches DONE at or after
    the moment of the skip.
    """
    compensations = [
        _as_utc(s.completed_at)
        for s in snapshot.steps
        if s.source == StepSource.ADHOC and s.required and s.status == StepStatus.DONE and s.completed_at is not None
    ]
    unresolved = 0
    for step in snapshot.steps:
        if not (step.required and step.status == StepStatus.SKIPPED):
            continue
        skipped_at = _as_utc(step.skipped_at)
        if skipped_at is None or not any(done_at >= skipped_at for done_at in compensations):
            unresolved += 1
    return unresolved


def is_blocked(snapshot: RunSnapshot, required_skip_blocks: bool = True) -> bool:
    if snapshot.order_status == OrderStatus.BLOCKED:
        return True
    return required_skip_blocks and count_unresolved_required_skips(snapshot) > 0


def compute_run_health(
    snapshot: RunSnapshot,
    stall_hours: float | None = None,
    now: datetime | None = None,
    required_skip_blocks: bool | None = None,
) -> RunHealth:
    settings = get_settings()
    stall_hours = settings.HEALTH_STALL_HOURS if stall_hours is None else stall_hours
    required_skip_blocks = settings.HEALTH_REQUIRED_SKIP_BLOCKS if required_skip_blocks is None else required_skip_blocks
    now = now or datetime.now(timezone.utc)

    stalled = count_stalled_steps(snapshot, stall_hours, now)
    unresolved = count_unresolved_required_skips(snapshot)
    return RunHealth(
        has_required_skips=has_required_skips(snapshot),
        has_stalled_step=stalled > 0,
        is_blocked=is_blocked(snapshot, required_skip_blocks),
        unresolved_required_skips=unresolved,
        stalled_steps=stalled,
    )


def summarize(
    snapshots: Iterable[RunSnapshot],
    stall_hours: float | None = None,
    now: datetime | None = None,
    required_skip_blocks: bool | None = None,
) -> dict[str, Any]:
    """Fleet counts over active (PLANNED / IN_PROGRESS) runs. Side-effect free."""
    now = now or datetime.now(timezone.utc)
    summary: dict[str, Any] = {
        "active_runs": 0,
        "has_required_skips": 0,
        "has_stalled_step": 0,
        "is_blocked": 0,
        "flagged_runs": [],
        "generated_at": now.isoformat(),
    }
    for snapshot in snapshots:
        if snapshot.run_status not in ACTIVE_RUN_STATUSES:
            continue
        health = compute_run_health(snapshot, stall_hours, now, required_skip_blocks)
        summary["active_runs"] += 1
        summary["has_required_skips"] += int(health.has_required_skips)
        summary["has_stalled_step"] += int(health.has_stalled_step)
        summary["is_blocked"] += int(health.is_blocked)
        if health.has_required_skips or health.has_stalled_step or health.is_blocked:
            summary["flagged_runs"].append({
                "run_id": str(snapshot.run_id) if snapshot.run_id else None,
                "order_number": snapshot.order_number,
                "run_status": snapshot.run_status,
                **health.to_dict(),
            })
    return summary


class RunHealthService:

    @staticmethod
    async def load_snapshots(db: AsyncSession, run_ids: list[UUID] | None = None) -> list[RunSnapshot]:
        """Snapshots of runs on open orders (or of the given runs, whatever their state)."""
        query = (
            select(ProductionRun.id, ProductionOrder.id, ProductionOrder.order_number, ProductionOrder.status)
            .join(ProductionOrder, ProductionOrder.id == ProductionRun.order_id)
        )
        if run_ids is not None:
            query = query.where(ProductionRun.id.in_(run_ids))
        else:
            query = query.where(ProductionOrder.status.notin_(sorted(TERMINAL_ORDER_STATUSES)))
        runs = (await db.execute(query.order_by(ProductionOrder.order_number))).all()
        if not runs:
            return []
        ids = [row[0] for row in runs]

        steps_by_run: dict[UUID, list[StepSnapshot]] = defaultdict(list)
        step_rows = (
            await db.execute(
                select(
                    RunStep.run_id, RunStep.status, RunStep.required, RunStep.source,
                    RunStep.started_at, RunStep.completed_at, RunStep.skipped_at,
                )
                .where(RunStep.run_id.in_(ids))
                .order_by(RunStep.run_id, RunStep.order)
            )
        ).all()
        for run_id, status, required, source, started_at, completed_at, skipped_at in step_rows:
            steps_by_run[run_id].append(StepSnapshot(
                status=status,
                required=required,
                source=source,
                started_at=_as_utc(started_at),
                completed_at=_as_utc(completed_at),
                skipped_at=_as_utc(skipped_at),
            ))

        batches_by_run: dict[UUID, list[str]] = defaultdict(list)
        for run_id, status in (await db.execute(select(Batch.run_id, Batch.status).where(Batch.run_id.in_(ids)))).all():
            batches_by_run[run_id].append(status)

        snapshots = []
        for run_id, order_id, order_number, order_status in runs:
            steps = steps_by_run.get(run_id, [])
            snapshots.append(RunSnapshot(
                run_status=derive_run_status(order_status, batches_by_run.get(run_id, []), [s.status for s in steps]),
                order_status=order_status,
                steps=tuple(steps),
                run_id=run_id,
                order_id=order_id,
                order_number=order_number,
            ))
        return snapshots

    @staticmethod
    async def get_run_health(
        db: AsyncSession,
        actor: CurrentUser | None,
        run_id: UUID,
        now: datetime | None = None,
    ) -> RunHealth:
        ensure_permission(actor, PERM_HEALTH_VIEW)
        await ProductionRunService.get_run(db, run_id)
        snapshot = (await RunHealthService.load_snapshots(db, [run_id]))[0]
        return compute_run_health(snapshot, now=now)

    @staticmethod
    async def get_fleet_summary(db: AsyncSession, actor: CurrentUser | None, now: datetime | None = None) -> dict[str, Any]:
        ensure_permission(actor, PERM_HEALTH_VIEW)
        return await RunHealthService.compute_fleet_summary(db, now=now)

    @staticmethod
    async def compute_fleet_summary(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
        """Unchecked variant for system callers (the cache refresh task)."""
        summary = summarize(await RunHealthService.load_snapshots(db), now=now)
        logger.debug(
            "Fleet health: %d active, %d blocked, %d stalled",
            summary["active_runs"], summary["is_blocked"], summary["has_stalled_step"],
        )
        return summary
