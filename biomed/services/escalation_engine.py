"""
Escalation engine — tiered, deduplicated alerts for overdue tasks.

For every OVERDUE task the engine walks the active rules of the task's kind
in ascending ``days_overdue`` order. A rule whose threshold the task has
reached is armed; an armed rule fires at most once per (task, level):

    in one transaction:
        task no longer OVERDUE?     → skip
        exists(kind, task, level)?  → skip
        insert EscalationRecord   (unique key: kind, task, level)
        one in-app notification per rule recipient
        audit entry
    after commit: e-mail each recipient with an address (best-effort)

The unique key makes overlapping sweeps safe: the loser's insert fails with
IntegrityError and it backs off. E-mail failures never remove the record.
Tasks that left OVERDUE (rescheduled, completed) are no longer evaluated;
their records stay as history.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from biomed.db.models import MaintenanceTask, EscalationRule, Notification, TaskKind, TaskStatus, NotificationType
from biomed.db.repositories import (
    TaskRepository, EscalationRuleRepository, EscalationRecordRepository, UserRepository,
)
from biomed.services.audit_service import log_action
from biomed.services.notification_service import NotificationDispatcher
from biomed.services.recurrence import overdue_days
from biomed.utils.formatters import escalation_title, escalation_text

logger = logging.getLogger(__name__)


@dataclass
class FiredEscalation:
    task_id: int
    kind: TaskKind
    level: int
    days_overdue: int
    rule_id: int
    notifications: list[Notification] = field(default_factory=list)
    emails_sent: int = 0
    email_failures: int = 0


@dataclass
class EscalationError:
    task_id: int
    level: int
    reason: str


@dataclass
class EscalationResult:
    fired: list[FiredEscalation] = field(default_factory=list)
    errors: list[EscalationError] = field(default_factory=list)
    already_escalated: int = 0

    @property
    def notifications(self) -> list[Notification]:
        return [n for f in self.fired for n in f.notifications]

    def summary(self) -> str:
        return (
            f"fired={len(self.fired)} notifications={len(self.notifications)} "
            f"already={self.already_escalated} errors={len(self.errors)}"
        )


class EscalationEngine:
    def __init__(self, session_factory, dispatcher: NotificationDispatcher | None = None):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher()

    async def evaluate(self, now: datetime, kind: TaskKind | None = None) -> EscalationResult:
        today = now.date()
        result = EscalationResult()

        async with self.session_factory() as session:
            overdue = await TaskRepository(session).list_overdue(kind)
            rules_repo = EscalationRuleRepository(session)
            rules: dict[TaskKind, list[EscalationRule]] = {}
            for task in overdue:
                if task.kind not in rules:
                    rules[task.kind] = await rules_repo.list_active_rules(task.kind)

        for task in overdue:
            days = overdue_days(task.scheduled_date, today)
            for rule in rules.get(task.kind, []):
                if days < rule.days_overdue:
                    break  # rules are sorted by threshold
                if not rule.notify_user_ids:
                    logger.warning(f"Escalation rule {rule.id} has no recipients, skipped")
                    continue
                fired = await self._fire(task, rule, days, result)
                if fired:
                    result.fired.append(fired)

        logger.info(f"Escalation sweep over {len(overdue)} overdue task(s): {result.summary()}")
        return result

    async def _fire(
        self, task: MaintenanceTask, rule: EscalationRule, days: int, result: EscalationResult,
    ) -> FiredEscalation | None:
        level = rule.escalation_level
        asset = task.asset
        title = escalation_title(task.kind, level, asset.name)
        text = escalation_text(task.kind, level, asset.name, task.scheduled_date, days, asset.serial_number)

        async with self.session_factory() as session:
            records = EscalationRecordRepository(session)
            fired = FiredEscalation(task.id, task.kind, level, days, rule.id)
            try:
                # the task may have been completed or rescheduled since it was listed
                status = await TaskRepository(session).current_status(task.id)
                if status != TaskStatus.OVERDUE:
                    logger.debug(f"Task {task.id} left OVERDUE ({status}), escalation L{level} skipped")
                    return None
                if await records.exists(task.kind, task.id, level):
                    result.already_escalated += 1
                    return None

                await records.record_escalation(
                    task.kind, task.id, level, rule.notify_user_ids,
                    rule_id=rule.id, days_overdue=days,
                )
                users = await UserRepository(session).get_active_users(rule.notify_user_ids)
                for user_id in rule.notify_user_ids:
                    if user_id not in users:
                        logger.warning(f"Escalation recipient {user_id} unknown or inactive, skipped")
                        continue
                    notif = await self.dispatcher.notify(
                        session, user_id, title, text,
                        entity_type=task.kind.value, entity_id=task.id,
                        type=NotificationType.ESCALATION,
                    )
                    fired.notifications.append(notif)
                await log_action(
                    session, None, "escalated", task.kind.value, task.id,
                    new_value={"level": level, "days_overdue": days, "rule_id": rule.id,
                               "notified": [n.user_id for n in fired.notifications]},
                )
                await session.commit()
            except IntegrityError:
                # a concurrent sweep recorded this level first
                await session.rollback()
                result.already_escalated += 1
                return None
            except SQLAlchemyError as e:
                await session.rollback()
                logger.exception(f"Escalation L{level} for task {task.id} failed, will retry next sweep")
                result.errors.append(EscalationError(task.id, level, f"write failed: {e}"))
                return None

        logger.warning(
            f"🚨 ESCALATION L{level}: {task.kind.value} task {task.id} "
            f"({asset.name}) {days}d overdue → {len(fired.notifications)} recipient(s)"
        )

        for user in users.values():
            if not user.email:
                continue
            if await self.dispatcher.send_email(user.email, title, text):
                fired.emails_sent += 1
            else:
                fired.email_failures += 1

        return fired
