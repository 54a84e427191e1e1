from datetime import date, timedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from biomed.db.models import (
    MaintenanceTask, TaskKind, TaskStatus, ChecklistItem, ChecklistValueType,
    ACTIVE_STATUSES,
)
from biomed.db.repositories import AssetRepository, TaskRepository, TemplateRepository
from biomed.exceptions import TemplateNotFound
from biomed.services.recurrence import add_months


VALID_TRANSITIONS = {
    TaskStatus.SCHEDULED: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.OVERDUE, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.OVERDUE, TaskStatus.CANCELLED},
    TaskStatus.OVERDUE: {TaskStatus.SCHEDULED, TaskStatus.COMPLETED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}


def sources_for(target: TaskStatus) -> set[TaskStatus]:
    return {src for src, targets in VALID_TRANSITIONS.items() if target in targets}


async def get_task_by_id(session: AsyncSession, task_id: int) -> MaintenanceTask | None:
    return await TaskRepository(session).get(task_id)


async def transition_task(
    session: AsyncSession, task_id: int, new_status: TaskStatus, **values,
) -> MaintenanceTask | None:
    """Move a task along the lifecycle. Returns None when the move is not allowed
    from the task's current status (or the task does not exist)."""
    moved = await TaskRepository(session).conditional_update(
        task_id, sources_for(new_status), status=new_status, **values,
    )
    if not moved:
        return None
    return await get_task_by_id(session, task_id)


async def start_task(session: AsyncSession, task_id: int) -> MaintenanceTask | None:
    return await transition_task(session, task_id, TaskStatus.IN_PROGRESS)


async def _frequency_for(session: AsyncSession, task: MaintenanceTask) -> int | None:
    if task.template_id:
        template = await TemplateRepository(session).get(task.template_id)
        if template:
            return template.frequency_months
    try:
        template = await TemplateRepository(session).find_template(
            task.asset.equipment_type, task.asset.manufacturer, task.kind,
        )
    except TemplateNotFound:
        return None
    return template.frequency_months


async def complete_task(
    session: AsyncSession, task_id: int, completed_date: date, notes: str | None = None,
) -> MaintenanceTask | None:
    """Complete the task and push the asset's next-due date one cycle past completion."""
    values = {"completed_date": completed_date}
    if notes is not None:
        values["notes"] = notes
    task = await transition_task(session, task_id, TaskStatus.COMPLETED, **values)
    if not task:
        return None

    frequency = await _frequency_for(session, task)
    if frequency:
        await AssetRepository(session).update_next_due_date(
            task.asset_id, task.kind, add_months(completed_date, frequency),
        )
    else:
        # no template: let the recurrence fall back to task history
        await AssetRepository(session).update_next_due_date(task.asset_id, task.kind, None)
    return task


async def reschedule_task(session: AsyncSession, task_id: int, new_date: date) -> MaintenanceTask | None:
    """Move a SCHEDULED or OVERDUE task to ``new_date``; an OVERDUE task goes back to SCHEDULED.

    IN_PROGRESS tasks are not rescheduled. Escalation records already written
    for the task are kept.
    """
    tasks = TaskRepository(session)
    moved = await tasks.conditional_update(
        task_id, sources_for(TaskStatus.SCHEDULED), scheduled_date=new_date, status=TaskStatus.SCHEDULED,
    )
    if not moved:
        moved = await tasks.conditional_update(task_id, (TaskStatus.SCHEDULED,), scheduled_date=new_date)
    if not moved:
        return None
    task = await get_task_by_id(session, task_id)
    await AssetRepository(session).update_next_due_date(task.asset_id, task.kind, new_date)
    return task


async def cancel_task(session: AsyncSession, task_id: int) -> MaintenanceTask | None:
    """Cancel; the asset's next-due skips one cycle so the weekly run does not recreate it."""
    task = await transition_task(session, task_id, TaskStatus.CANCELLED)
    if not task:
        return None
    frequency = await _frequency_for(session, task)
    next_due = add_months(task.scheduled_date, frequency) if frequency else None
    await AssetRepository(session).update_next_due_date(task.asset_id, task.kind, next_due)
    return task


async def assign_task(session: AsyncSession, task_id: int, assignee_id: int) -> MaintenanceTask | None:
    moved = await TaskRepository(session).conditional_update(
        task_id, ACTIVE_STATUSES, assignee_id=assignee_id,
    )
    if not moved:
        return None
    return await get_task_by_id(session, task_id)


async def record_checklist_result(
    session: AsyncSession, item_id: int, value, notes: str | None = None,
) -> ChecklistItem | None:
    """Store a result in the slot matching the item's value type.

    Raises ValueError when the value does not fit the type.
    """
    item = await session.get(ChecklistItem, item_id)
    if not item:
        return None

    if item.value_type == ChecklistValueType.BOOLEAN:
        if not isinstance(value, bool):
            raise ValueError(f"Checklist item {item_id} expects a boolean, got {value!r}")
        item.result_boolean = value
    elif item.value_type == ChecklistValueType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Checklist item {item_id} expects a number, got {value!r}")
        item.result_number = float(value)
    else:
        if not isinstance(value, str):
            raise ValueError(f"Checklist item {item_id} expects text, got {value!r}")
        item.result_text = value

    if notes is not None:
        item.notes = notes
    await session.flush()
    return item


async def get_upcoming_tasks(
    session: AsyncSession, today: date, kind: TaskKind | None = None, days_ahead: int = 30,
) -> list[MaintenanceTask]:
    query = (
        select(MaintenanceTask)
        .options(selectinload(MaintenanceTask.asset), selectinload(MaintenanceTask.assignee))
        .where(
            MaintenanceTask.status.in_([TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS]),
            MaintenanceTask.scheduled_date >= today,
            MaintenanceTask.scheduled_date <= today + timedelta(days=days_ahead),
        )
        .order_by(MaintenanceTask.scheduled_date.asc())
    )
    if kind is not None:
        query = query.where(MaintenanceTask.kind == kind)
    result = await session.execute(query)
    return result.scalars().all()


async def get_overdue_tasks(session: AsyncSession, kind: TaskKind | None = None) -> list[MaintenanceTask]:
    return await TaskRepository(session).list_overdue(kind)


async def get_asset_tasks(
    session: AsyncSession, asset_id: int, kind: TaskKind | None = None,
) -> list[MaintenanceTask]:
    query = (
        select(MaintenanceTask)
        .options(selectinload(MaintenanceTask.checklist))
        .where(MaintenanceTask.asset_id == asset_id)
        .order_by(MaintenanceTask.scheduled_date.desc())
    )
    if kind is not None:
        query = query.where(MaintenanceTask.kind == kind)
    result = await session.execute(query)
    return result.scalars().all()
