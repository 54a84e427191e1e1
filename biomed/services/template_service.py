import logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from biomed.db.models import MaintenanceTemplate, ChecklistItem, ChecklistValueType, TaskKind
from biomed.schemas import TemplateIn, ChecklistSkeletonItem

logger = logging.getLogger(__name__)


def materialize_checklist(template: MaintenanceTemplate) -> list[ChecklistItem]:
    """Fresh checklist rows copied from the template skeleton, results empty."""
    items = []
    for index, raw in enumerate(template.checklist_skeleton or []):
        entry = ChecklistSkeletonItem.model_validate(raw)
        items.append(ChecklistItem(
            title=entry.task,
            value_type=entry.value_type,
            order_index=entry.order if entry.order else index + 1,
        ))
    return sorted(items, key=lambda item: item.order_index)


async def create_template(session: AsyncSession, data: TemplateIn) -> MaintenanceTemplate:
    template = MaintenanceTemplate(
        kind=data.kind,
        equipment_type=data.equipment_type,
        manufacturer=data.manufacturer,
        frequency_months=data.frequency_months,
        checklist_skeleton=data.skeleton(),
    )
    session.add(template)
    await session.flush()
    return template


async def update_template(
    session: AsyncSession,
    template_id: int,
    frequency_months: int | None = None,
    checklist: list[ChecklistSkeletonItem] | None = None,
) -> MaintenanceTemplate | None:
    """Update frequency / skeleton. Tasks that already copied a checklist keep their copy."""
    template = await session.get(MaintenanceTemplate, template_id)
    if not template:
        return None
    if frequency_months is not None:
        if frequency_months <= 0:
            raise ValueError("frequency_months must be positive")
        template.frequency_months = frequency_months
    if checklist is not None:
        template.checklist_skeleton = [
            item.model_dump(mode="json") for item in sorted(checklist, key=lambda i: i.order)
        ]
    await session.flush()
    return template


async def list_templates(session: AsyncSession, kind: TaskKind | None = None) -> list[MaintenanceTemplate]:
    query = select(MaintenanceTemplate).order_by(
        MaintenanceTemplate.equipment_type, MaintenanceTemplate.manufacturer,
    )
    if kind is not None:
        query = query.where(MaintenanceTemplate.kind == kind)
    result = await session.execute(query)
    return result.scalars().all()


def _bool_items(*titles: str) -> list[ChecklistSkeletonItem]:
    return [
        ChecklistSkeletonItem(task=title, value_type=ChecklistValueType.BOOLEAN, order=i)
        for i, title in enumerate(titles, start=1)
    ]


DEFAULT_TEMPLATES = [
    TemplateIn(
        equipment_type="Ventilator", manufacturer="Getinge", frequency_months=6,
        checklist=_bool_items(
            "Visual inspection of exterior",
            "Check power cord and plug",
            "Verify battery backup function",
            "Clean filters and vents",
            "Run self-test diagnostic",
            "Verify alarm functionality",
            "Check pressure sensors",
            "Inspect breathing circuits",
        ),
    ),
    TemplateIn(
        equipment_type="Patient Monitor", frequency_months=3,
        checklist=_bool_items(
            "Visual inspection",
            "Check display functionality",
            "Verify ECG leads",
            "Test SPO2 sensor",
            "Check NIBP cuff",
            "Verify alarm system",
            "Battery backup test",
        ),
    ),
    TemplateIn(
        equipment_type="Defibrillator", frequency_months=6,
        checklist=_bool_items(
            "Visual inspection",
            "Battery check",
            "Paddle/pad inspection",
            "Self-test diagnostic",
            "Energy delivery test",
            "ECG display test",
            "Alarm functionality",
        ),
    ),
    TemplateIn(
        equipment_type="Infusion Pump", frequency_months=3,
        checklist=_bool_items(
            "Visual inspection",
            "Flow rate accuracy test",
            "Occlusion alarm test",
            "Air-in-line detection test",
            "Battery backup test",
            "Display and keypad check",
        ),
    ),
    TemplateIn(
        kind=TaskKind.CALIBRATION, equipment_type="Infusion Pump", frequency_months=12,
        checklist=[
            ChecklistSkeletonItem(task="Measured flow rate (ml/h) at 100 ml/h setting",
                                  value_type=ChecklistValueType.NUMBER, order=1),
            ChecklistSkeletonItem(task="Within ±5% tolerance", order=2),
            ChecklistSkeletonItem(task="Certificate reference",
                                  value_type=ChecklistValueType.TEXT, order=3),
        ],
    ),
]


async def seed_default_templates(session: AsyncSession) -> int:
    """Insert the built-in templates that are missing. Returns how many were added."""
    added = 0
    for data in DEFAULT_TEMPLATES:
        query = select(MaintenanceTemplate.id).where(
            MaintenanceTemplate.kind == data.kind,
            MaintenanceTemplate.equipment_type == data.equipment_type,
        )
        if data.manufacturer:
            query = query.where(MaintenanceTemplate.manufacturer == data.manufacturer)
        else:
            query = query.where(MaintenanceTemplate.manufacturer.is_(None))
        existing = (await session.execute(query.limit(1))).scalar()
        if existing:
            continue
        await create_template(session, data)
        added += 1
    if added:
        logger.info(f"Seeded {added} maintenance templates")
    return added
