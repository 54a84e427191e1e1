from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from biomed.db.models import EscalationRecord, EscalationRule, MaintenanceTask, Notification, TaskKind, TaskStatus
from biomed.db.repositories import EscalationRecordRepository, TaskRepository
from biomed.services import task_service
from biomed.services.escalation_engine import EscalationEngine
from biomed.services.notification_service import NotificationDispatcher
from biomed.services.overdue import OverdueDetector
from biomed.utils.clock import FixedClock

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def ladder(session_factory, staff):
    """Rules at 1 / 3 / 7 days for PM; returns an installer."""
    async def install(entity_type=TaskKind.PM, recipients=None):
        recipients = recipients or [
            [staff["admin"]],
            [staff["admin"], staff["manager"]],
            [staff["admin"], staff["manager"], staff["engineer"]],
        ]
        async with session_factory() as session:
            for (days, level), users in zip([(1, 1), (3, 2), (7, 3)], recipients):
                session.add(EscalationRule(
                    entity_type=entity_type, days_overdue=days, escalation_level=level, notify_user_ids=users,
                ))
            await session.commit()
    return install


async def overdue_task(session_factory, make_asset, scheduled, kind=TaskKind.PM):
    asset_id = await make_asset()
    async with session_factory() as session:
        task = MaintenanceTask(asset_id=asset_id, kind=kind, scheduled_date=scheduled, status=TaskStatus.SCHEDULED)
        session.add(task)
        await session.commit()
        task_id = task.id
    await OverdueDetector(session_factory).sweep_overdue(NOW)
    return task_id


async def records(session_factory, kind, task_id):
    async with session_factory() as session:
        return [r.escalation_level for r in await EscalationRecordRepository(session).list_for_entity(kind, task_id)]


async def notification_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count(Notification.id)))).scalar()


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_ten_days_overdue_fires_every_crossed_level_once(self, session_factory, make_asset, ladder, staff, email_sender):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 5))
        engine = EscalationEngine(session_factory, NotificationDispatcher(email_sender))

        result = await engine.evaluate(NOW)

        assert [f.level for f in result.fired] == [1, 2, 3]
        assert [len(f.notifications) for f in result.fired] == [1, 2, 3]
        assert await records(session_factory, TaskKind.PM, task_id) == [1, 2, 3]
        assert result.fired[2].days_overdue == 10

        again = await engine.evaluate(NOW)
        assert again.fired == []
        assert again.already_escalated == 3
        assert await records(session_factory, TaskKind.PM, task_id) == [1, 2, 3]
        assert await notification_count(session_factory) == 6

    @pytest.mark.asyncio
    async def test_levels_accumulate_as_task_ages(self, session_factory, make_asset, ladder):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 14))
        clock = FixedClock(NOW)
        engine = EscalationEngine(session_factory)

        fired_by_day = []
        for _ in range(8):
            result = await engine.evaluate(clock.now())
            fired_by_day.append([f.level for f in result.fired])
            clock.advance(days=1)

        # 1 day overdue on the 15th, 3 on the 17th, 7 on the 21st
        assert fired_by_day == [[1], [], [2], [], [], [], [3], []]
        assert await records(session_factory, TaskKind.PM, task_id) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_below_first_threshold_fires_nothing(self, session_factory, make_asset, ladder):
        await ladder()
        await overdue_task(session_factory, make_asset, date(2024, 1, 14))

        result = await EscalationEngine(session_factory).evaluate(datetime(2024, 1, 14, 18, 0, tzinfo=timezone.utc))

        assert result.fired == []

    @pytest.mark.asyncio
    async def test_rules_scoped_by_kind(self, session_factory, make_asset, ladder):
        await ladder(entity_type=TaskKind.CALIBRATION)
        pm_id = await overdue_task(session_factory, make_asset, date(2024, 1, 5))

        result = await EscalationEngine(session_factory).evaluate(NOW)

        assert result.fired == []
        assert await records(session_factory, TaskKind.PM, pm_id) == []

    @pytest.mark.asyncio
    async def test_email_failure_keeps_record(self, session_factory, make_asset, ladder, staff, failing_email_sender):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 12))
        sender = failing_email_sender("dana@hospital.example")
        engine = EscalationEngine(session_factory, NotificationDispatcher(sender))

        result = await engine.evaluate(NOW)

        # levels 1 and 2: the admin's mail fails, the manager's goes out
        assert [(f.level, f.emails_sent, f.email_failures) for f in result.fired] == [(1, 0, 1), (2, 1, 1)]
        assert [to for to, _, _ in sender.sent] == ["ravi@hospital.example"]
        assert await records(session_factory, TaskKind.PM, task_id) == [1, 2]

        again = await engine.evaluate(NOW)
        assert again.fired == []

    @pytest.mark.asyncio
    async def test_recipients_without_email_get_inbox_only(self, session_factory, make_asset, ladder, staff, email_sender):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 5))

        await EscalationEngine(session_factory, NotificationDispatcher(email_sender)).evaluate(NOW)

        async with session_factory() as session:
            inbox = (await session.execute(
                select(Notification.user_id).where(Notification.entity_id == task_id)
            )).scalars().all()
        assert inbox.count(staff["engineer"]) == 1
        assert len(email_sender.sent) == 5  # admin x3, manager x2

    @pytest.mark.asyncio
    async def test_unknown_recipient_skipped(self, session_factory, make_asset, ladder, staff):
        await ladder(recipients=[[staff["admin"], 999], [staff["admin"]], [staff["admin"]]])
        await overdue_task(session_factory, make_asset, date(2024, 1, 13))

        result = await EscalationEngine(session_factory).evaluate(NOW)

        assert [n.user_id for n in result.fired[0].notifications] == [staff["admin"]]

    @pytest.mark.asyncio
    async def test_existing_record_blocks_refire(self, session_factory, make_asset, ladder, staff):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 13))
        async with session_factory() as session:
            session.add(EscalationRecord(
                entity_type=TaskKind.PM, entity_id=task_id, escalation_level=1, notified_user_ids=[staff["admin"]],
            ))
            await session.commit()

        result = await EscalationEngine(session_factory).evaluate(NOW)

        assert result.fired == []
        assert result.already_escalated == 1

    @pytest.mark.asyncio
    async def test_rescheduled_task_stops_escalating(self, session_factory, make_asset, ladder):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 13))
        engine = EscalationEngine(session_factory)
        assert [f.level for f in (await engine.evaluate(NOW)).fired] == [1]

        async with session_factory() as session:
            task = await task_service.reschedule_task(session, task_id, date(2024, 1, 20))
            await session.commit()
        assert task.status == TaskStatus.SCHEDULED

        later = datetime(2024, 1, 19, 9, 0, tzinfo=timezone.utc)
        assert (await engine.evaluate(later)).fired == []
        assert await records(session_factory, TaskKind.PM, task_id) == [1]

    @pytest.mark.asyncio
    async def test_notification_wording(self, session_factory, make_asset, ladder, staff):
        await ladder()
        await overdue_task(session_factory, make_asset, date(2024, 1, 13))

        result = await EscalationEngine(session_factory).evaluate(NOW)

        notif = result.fired[0].notifications[0]
        assert "Escalation Level 1" in notif.title
        assert "Ward Monitor A" in notif.title
        assert "2 days" in notif.text

    @pytest.mark.asyncio
    async def test_racing_insert_backs_off(self, session_factory, make_asset, ladder, staff):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 13))
        async with session_factory() as session:
            session.add(EscalationRecord(
                entity_type=TaskKind.PM, entity_id=task_id, escalation_level=1, notified_user_ids=[staff["admin"]],
            ))
            await session.commit()

        async def not_yet(self, entity_type, entity_id, level):
            return False

        # the other sweep inserts between our existence check and our insert
        with patch.object(EscalationRecordRepository, "exists", not_yet):
            result = await EscalationEngine(session_factory).evaluate(NOW)

        assert result.fired == []
        assert result.already_escalated == 1
        assert result.errors == []
        assert await notification_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_read_failure_on_one_task_does_not_abort_sweep(self, session_factory, make_asset, ladder):
        await ladder()
        first = await overdue_task(session_factory, make_asset, date(2024, 1, 13))
        second = await overdue_task(session_factory, make_asset, date(2024, 1, 13))
        original = EscalationRecordRepository.exists
        calls = []

        async def flaky_exists(self, entity_type, entity_id, level):
            calls.append(entity_id)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("server closed the connection"))
            return await original(self, entity_type, entity_id, level)

        engine = EscalationEngine(session_factory)
        with patch.object(EscalationRecordRepository, "exists", flaky_exists):
            result = await engine.evaluate(NOW)

        assert [(f.task_id, f.level) for f in result.fired] == [(second, 1)]
        assert [(e.task_id, e.level) for e in result.errors] == [(first, 1)]

        retry = await engine.evaluate(NOW)
        assert [(f.task_id, f.level) for f in retry.fired] == [(first, 1)]

    @pytest.mark.asyncio
    async def test_task_completed_mid_sweep_is_not_escalated(self, session_factory, make_asset, ladder):
        await ladder()
        task_id = await overdue_task(session_factory, make_asset, date(2024, 1, 5))
        original = TaskRepository.list_overdue

        async def listed_then_completed(self, kind=None):
            listed = await original(self, kind)
            async with session_factory() as other:
                await task_service.complete_task(other, task_id, date(2024, 1, 15))
                await other.commit()
            return listed

        with patch.object(TaskRepository, "list_overdue", listed_then_completed):
            result = await EscalationEngine(session_factory).evaluate(NOW)

        assert result.fired == []
        assert result.errors == []
        assert await records(session_factory, TaskKind.PM, task_id) == []
        assert await notification_count(session_factory) == 0
