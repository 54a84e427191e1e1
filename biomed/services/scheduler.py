"""
Task scheduler — creates PM / calibration tasks.

``schedule_due`` is the periodic path: for every asset in scope and every
task kind it resolves the template, computes the next due date, skips when
an active task already sits in that calendar month, and otherwise creates
the task with its checklist. Each (asset, kind) pair is its own unit of
work in its own session; one failing unit never aborts the batch.

``schedule_one`` is the manual path and has no duplicate guard.
"""
import asyncio
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.exc import SQLAlchemyError

from biomed.db.models import MaintenanceTask, TaskKind, TaskStatus
from biomed.db.repositories import AssetRepository, TemplateRepository, TaskRepository
from biomed.exceptions import TemplateNotFound, DuplicateTaskSkipped
from biomed.services.audit_service import log_action
from biomed.services.recurrence import next_due_for_asset, calendar_period
from biomed.services.template_service import materialize_checklist
from biomed.utils.clock import SystemClock

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class UnitOutcome:
    asset_id: int
    kind: TaskKind
    outcome: Outcome
    reason: str = ""
    task_id: int | None = None
    due_date: date | None = None


@dataclass
class ScheduleResult:
    created: list[MaintenanceTask] = field(default_factory=list)
    skipped: list[UnitOutcome] = field(default_factory=list)
    errors: list[UnitOutcome] = field(default_factory=list)

    def add(self, outcome: UnitOutcome, task: MaintenanceTask | None = None):
        if outcome.outcome == Outcome.CREATED:
            self.created.append(task)
        elif outcome.outcome == Outcome.SKIPPED:
            self.skipped.append(outcome)
        else:
            self.errors.append(outcome)

    def summary(self) -> str:
        return f"created={len(self.created)} skipped={len(self.skipped)} errors={len(self.errors)}"


class TaskScheduler:
    def __init__(self, session_factory, clock=None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        # Overlapping triggers inside this process queue up instead of racing
        # the check-then-insert below.
        self._lock = asyncio.Lock()

    async def schedule_due(
        self,
        asset_ids: Iterable[int] | None = None,
        kinds: Iterable[TaskKind] = (TaskKind.PM, TaskKind.CALIBRATION),
    ) -> ScheduleResult:
        kinds = tuple(kinds)
        result = ScheduleResult()
        async with self._lock:
            today = self.clock.today()
            async with self.session_factory() as session:
                ids = await AssetRepository(session).list_asset_ids(asset_ids)

            for asset_id in ids:
                for kind in kinds:
                    outcome, task = await self._schedule_asset(asset_id, kind, today)
                    result.add(outcome, task)

        logger.info(f"ScheduleDue over {len(ids)} assets: {result.summary()}")
        return result

    async def _schedule_asset(
        self, asset_id: int, kind: TaskKind, today: date,
    ) -> tuple[UnitOutcome, MaintenanceTask | None]:
        async with self.session_factory() as session:
            assets = AssetRepository(session)
            tasks = TaskRepository(session)
            try:
                asset = await assets.get_asset(asset_id)
                if asset is None:
                    return UnitOutcome(asset_id, kind, Outcome.SKIPPED, "asset not found"), None

                template = await TemplateRepository(session).find_template(
                    asset.equipment_type, asset.manufacturer, kind,
                )
                last_task = await tasks.latest_task(asset_id, kind)
                due = next_due_for_asset(asset, kind, template, last_task, today=today)

                period_start, period_end = calendar_period(due)
                existing = await tasks.find_active_task(asset_id, kind, period_start, period_end)
                if existing:
                    raise DuplicateTaskSkipped(asset_id, existing.id)

                task = MaintenanceTask(
                    asset_id=asset_id,
                    kind=kind,
                    template_id=template.id,
                    scheduled_date=due,
                    status=TaskStatus.SCHEDULED,
                    checklist=materialize_checklist(template),
                )
                await tasks.create_task(task)
                await assets.update_next_due_date(asset_id, kind, due)
                await log_action(
                    session, None, "task_scheduled", kind.value, task.id,
                    new_value={"asset_id": asset_id, "scheduled_date": due.isoformat(),
                               "template_id": template.id},
                )
                await session.commit()

            except TemplateNotFound as e:
                logger.warning(f"Asset {asset_id}: {e} ({kind.value}), skipping")
                return UnitOutcome(asset_id, kind, Outcome.SKIPPED, str(e)), None
            except DuplicateTaskSkipped as e:
                logger.debug(str(e))
                return UnitOutcome(
                    asset_id, kind, Outcome.SKIPPED, "already scheduled", task_id=e.existing_task_id,
                ), None
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception(f"Asset {asset_id}: scheduling {kind.value} failed")
                return UnitOutcome(asset_id, kind, Outcome.ERROR, f"write failed: {e}"), None
            except ValueError as e:
                # bad template data (non-positive frequency, malformed skeleton)
                await session.rollback()
                logger.error(f"Asset {asset_id}: {e}")
                return UnitOutcome(asset_id, kind, Outcome.ERROR, str(e)), None

        logger.info(f"Scheduled {kind.value} task {task.id} for asset {asset_id} on {due}")
        return UnitOutcome(asset_id, kind, Outcome.CREATED, task_id=task.id, due_date=due), task

    async def schedule_one(
        self,
        asset_id: int,
        scheduled_date: date,
        assignee_id: int | None = None,
        template_id: int | None = None,
        kind: TaskKind = TaskKind.PM,
        vendor_id: int | None = None,
        created_by_id: int | None = None,
    ) -> MaintenanceTask:
        """Manual scheduling: the caller picked the date, so no duplicate guard."""
        if vendor_id is not None and kind != TaskKind.CALIBRATION:
            raise ValueError("vendor_id applies to calibration tasks only")

        async with self.session_factory() as session:
            assets = AssetRepository(session)
            if await assets.get_asset(asset_id) is None:
                raise LookupError(f"Asset {asset_id} not found")

            checklist = []
            if template_id is not None:
                template = await TemplateRepository(session).get(template_id)
                if template is not None:
                    checklist = materialize_checklist(template)
                else:
                    logger.warning(f"Template {template_id} not found, task created without checklist")
                    template_id = None

            task = MaintenanceTask(
                asset_id=asset_id,
                kind=kind,
                template_id=template_id,
                scheduled_date=scheduled_date,
                assignee_id=assignee_id,
                vendor_id=vendor_id,
                status=TaskStatus.SCHEDULED,
                checklist=checklist,
            )
            await TaskRepository(session).create_task(task)
            await assets.update_next_due_date(asset_id, kind, scheduled_date)
            await log_action(
                session, created_by_id, "task_scheduled_manual", kind.value, task.id,
                new_value={"asset_id": asset_id, "scheduled_date": scheduled_date.isoformat()},
            )
            await session.commit()

        logger.info(f"Manually scheduled {kind.value} task {task.id} for asset {asset_id} on {scheduled_date}")
        return task
