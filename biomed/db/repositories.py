"""
Repositories — the narrow data-access seams the scheduling core depends on.

Every mutation here is a scoped, conditional statement (``UPDATE … WHERE
status IN …``) rather than a load-modify-save of the whole row, so sweeps
never clobber concurrent edits to unrelated columns.
"""
from collections.abc import Iterable
from datetime import date

from sqlalchemy import select, update, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from biomed.db.models import (
    Asset, MaintenanceTemplate, MaintenanceTask, TaskKind, TaskStatus,
    ACTIVE_STATUSES, NEXT_DUE_COLUMNS, EscalationRule, EscalationRecord, User,
)
from biomed.services.recurrence import resolve_template


class AssetRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_asset(self, asset_id: int) -> Asset | None:
        return await self.session.get(Asset, asset_id, populate_existing=True)

    async def list_asset_ids(self, asset_ids: Iterable[int] | None = None) -> list[int]:
        query = select(Asset.id).order_by(Asset.id)
        if asset_ids is not None:
            query = query.where(Asset.id.in_(list(asset_ids)))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update_next_due_date(self, asset_id: int, kind: TaskKind, due: date | None) -> bool:
        result = await self.session.execute(
            update(Asset)
            .where(Asset.id == asset_id)
            .values({NEXT_DUE_COLUMNS[kind]: due})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class TemplateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, template_id: int) -> MaintenanceTemplate | None:
        return await self.session.get(MaintenanceTemplate, template_id)

    async def find_template(
        self, equipment_type: str, manufacturer: str | None = None, kind: TaskKind = TaskKind.PM,
    ) -> MaintenanceTemplate:
        """Manufacturer-specific template if present, else the generic one.

        Raises TemplateNotFound.
        """
        result = await self.session.execute(
            select(MaintenanceTemplate)
            .where(
                MaintenanceTemplate.kind == kind,
                MaintenanceTemplate.equipment_type == equipment_type,
            )
            .order_by(MaintenanceTemplate.created_at.desc(), MaintenanceTemplate.id.desc())
        )
        return resolve_template(result.scalars().all(), equipment_type, manufacturer, kind)


class TaskRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, task_id: int) -> MaintenanceTask | None:
        result = await self.session.execute(
            select(MaintenanceTask)
            .options(
                selectinload(MaintenanceTask.checklist),
                selectinload(MaintenanceTask.asset),
            )
            .where(MaintenanceTask.id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active_task(
        self, asset_id: int, kind: TaskKind, period_start: date, period_end: date,
    ) -> MaintenanceTask | None:
        """Active task of ``kind`` scheduled in [period_start, period_end)."""
        result = await self.session.execute(
            select(MaintenanceTask)
            .where(
                MaintenanceTask.asset_id == asset_id,
                MaintenanceTask.kind == kind,
                MaintenanceTask.status.in_(ACTIVE_STATUSES),
                MaintenanceTask.scheduled_date >= period_start,
                MaintenanceTask.scheduled_date < period_end,
            )
            .order_by(MaintenanceTask.scheduled_date)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_task(self, asset_id: int, kind: TaskKind) -> MaintenanceTask | None:
        """Most recent non-cancelled task of ``kind`` for the asset."""
        result = await self.session.execute(
            select(MaintenanceTask)
            .where(
                MaintenanceTask.asset_id == asset_id,
                MaintenanceTask.kind == kind,
                MaintenanceTask.status != TaskStatus.CANCELLED,
            )
            .order_by(MaintenanceTask.scheduled_date.desc(), MaintenanceTask.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_task(self, task: MaintenanceTask) -> MaintenanceTask:
        self.session.add(task)
        await self.session.flush()
        return task

    async def bulk_transition_status(
        self,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        cutoff: date,
        kind: TaskKind | None = None,
    ) -> int:
        """Move every task still in ``from_statuses`` and scheduled before ``cutoff``.

        Single conditional UPDATE: rows already moved by an overlapping call
        no longer match.
        """
        conditions = [
            MaintenanceTask.status.in_(list(from_statuses)),
            MaintenanceTask.scheduled_date < cutoff,
        ]
        if kind is not None:
            conditions.append(MaintenanceTask.kind == kind)
        result = await self.session.execute(
            update(MaintenanceTask)
            .where(and_(*conditions))
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def conditional_update(
        self, task_id: int, from_statuses: Iterable[TaskStatus], **values,
    ) -> bool:
        result = await self.session.execute(
            update(MaintenanceTask)
            .where(
                MaintenanceTask.id == task_id,
                MaintenanceTask.status.in_(list(from_statuses)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def current_status(self, task_id: int) -> TaskStatus | None:
        """Status read under a row lock, so a concurrent completion waits for the caller's commit."""
        result = await self.session.execute(
            select(MaintenanceTask.status)
            .where(MaintenanceTask.id == task_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def list_overdue(self, kind: TaskKind | None = None) -> list[MaintenanceTask]:
        query = (
            select(MaintenanceTask)
            .options(selectinload(MaintenanceTask.asset))
            .where(MaintenanceTask.status == TaskStatus.OVERDUE)
            .order_by(MaintenanceTask.scheduled_date.asc(), MaintenanceTask.id.asc())
        )
        if kind is not None:
            query = query.where(MaintenanceTask.kind == kind)
        result = await self.session.execute(query)
        return result.scalars().all()


class EscalationRuleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_active_rules(self, entity_type: TaskKind) -> list[EscalationRule]:
        result = await self.session.execute(
            select(EscalationRule)
            .where(EscalationRule.entity_type == entity_type, EscalationRule.is_active == True)
            .order_by(EscalationRule.days_overdue.asc(), EscalationRule.escalation_level.asc())
        )
        return result.scalars().all()


class EscalationRecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, entity_type: TaskKind, entity_id: int, level: int) -> bool:
        result = await self.session.execute(
            select(exists().where(
                EscalationRecord.entity_type == entity_type,
                EscalationRecord.entity_id == entity_id,
                EscalationRecord.escalation_level == level,
            ))
        )
        return bool(result.scalar())

    async def record_escalation(
        self,
        entity_type: TaskKind,
        entity_id: int,
        level: int,
        user_ids: list[int],
        rule_id: int | None = None,
        days_overdue: int | None = None,
    ) -> EscalationRecord:
        """Insert the dedup row. A concurrent insert for the same key raises IntegrityError."""
        record = EscalationRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            escalation_level=level,
            rule_id=rule_id,
            days_overdue=days_overdue,
            notified_user_ids=list(user_ids),
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_for_entity(self, entity_type: TaskKind, entity_id: int) -> list[EscalationRecord]:
        result = await self.session.execute(
            select(EscalationRecord)
            .where(EscalationRecord.entity_type == entity_type, EscalationRecord.entity_id == entity_id)
            .order_by(EscalationRecord.escalation_level)
        )
        return result.scalars().all()


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_users(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(User).where(User.id.in_(ids), User.is_active == True)
        )
        return {u.id: u for u in result.scalars().all()}
