"""
Shared fixtures: a throwaway SQLite database per test, a frozen clock and
an e-mail sender that records instead of talking to SMTP.
"""
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio

from biomed.db.models import Asset, MaintenanceTemplate, User, UserRole, TaskKind, ChecklistValueType
from biomed.db.session import make_engine, make_session_factory, init_db
from biomed.exceptions import DispatchFailure
from biomed.utils.clock import FixedClock


class RecordingEmailSender:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, to, subject, body, html=None):
        if to in self.fail_for:
            raise DispatchFailure(f"SMTP delivery to {to} failed: connection refused")
        self.sent.append((to, subject, body))
        return True


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'biomed.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest_asyncio.fixture
async def staff(session_factory):
    """Ids of an admin, a manager and an engineer without e-mail, by role."""
    async with session_factory() as session:
        admin = User(full_name="Dana Whitfield", email="dana@hospital.example", role=UserRole.ADMIN)
        manager = User(full_name="Ravi Menon", email="ravi@hospital.example", role=UserRole.MANAGER)
        engineer = User(full_name="Lena Ortiz", email=None, role=UserRole.ENGINEER)
        session.add_all([admin, manager, engineer])
        await session.commit()
        return {"admin": admin.id, "manager": manager.id, "engineer": engineer.id}


async def add_template(
    session_factory,
    equipment_type="Patient Monitor",
    manufacturer=None,
    frequency_months=3,
    kind=TaskKind.PM,
    checklist=None,
) -> int:
    if checklist is None:
        checklist = [
            {"task": "Visual inspection", "value_type": ChecklistValueType.BOOLEAN.value, "order": 1},
            {"task": "Leakage current (uA)", "value_type": ChecklistValueType.NUMBER.value, "order": 2},
            {"task": "Remarks", "value_type": ChecklistValueType.TEXT.value, "order": 3},
        ]
    async with session_factory() as session:
        template = MaintenanceTemplate(
            kind=kind,
            equipment_type=equipment_type,
            manufacturer=manufacturer,
            frequency_months=frequency_months,
            checklist_skeleton=checklist,
        )
        session.add(template)
        await session.commit()
        return template.id


async def add_asset(
    session_factory,
    name="Ward Monitor A",
    equipment_type="Patient Monitor",
    manufacturer="Philips",
    purchase_date=date(2024, 1, 1),
    **extra,
) -> int:
    async with session_factory() as session:
        asset = Asset(
            name=name,
            equipment_type=equipment_type,
            manufacturer=manufacturer,
            serial_number=f"SN-{name.replace(' ', '-')}",
            purchase_date=purchase_date,
            **extra,
        )
        session.add(asset)
        await session.commit()
        return asset.id


@pytest.fixture
def make_template(session_factory):
    async def _make(**kwargs):
        return await add_template(session_factory, **kwargs)
    return _make


@pytest.fixture
def make_asset(session_factory):
    async def _make(**kwargs):
        return await add_asset(session_factory, **kwargs)
    return _make


@pytest.fixture
def failing_email_sender():
    """Sender whose deliveries to the given addresses raise DispatchFailure."""
    def _make(*addresses):
        return RecordingEmailSender(fail_for=addresses)
    return _make
