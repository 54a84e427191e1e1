import logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from biomed.db.models import EscalationRule, TaskKind, User, UserRole
from biomed.schemas import EscalationRuleIn, EscalationRuleUpdate

logger = logging.getLogger(__name__)


async def create_rule(session: AsyncSession, data: EscalationRuleIn) -> EscalationRule:
    rule = EscalationRule(**data.model_dump())
    session.add(rule)
    await session.flush()
    return rule


async def update_rule(session: AsyncSession, rule_id: int, data: EscalationRuleUpdate) -> EscalationRule | None:
    rule = await session.get(EscalationRule, rule_id)
    if not rule:
        return None
    for key, value in data.model_dump(exclude_none=True).items():
        setattr(rule, key, value)
    await session.flush()
    return rule


async def deactivate_rule(session: AsyncSession, rule_id: int) -> EscalationRule | None:
    return await update_rule(session, rule_id, EscalationRuleUpdate(is_active=False))


async def list_rules(session: AsyncSession, entity_type: TaskKind | None = None) -> list[EscalationRule]:
    query = select(EscalationRule).where(EscalationRule.is_active == True)
    if entity_type is not None:
        query = query.where(EscalationRule.entity_type == entity_type)
    result = await session.execute(
        query.order_by(EscalationRule.entity_type, EscalationRule.escalation_level)
    )
    return result.scalars().all()


# (days_overdue, level, how many of the admins/managers to notify; None = all)
DEFAULT_LADDER = [(1, 1, 1), (3, 2, 2), (7, 3, None)]


async def seed_default_rules(
    session: AsyncSession, entity_types: tuple[TaskKind, ...] = (TaskKind.PM, TaskKind.CALIBRATION),
) -> int:
    """1 / 3 / 7 days → levels 1 / 2 / 3, widening the admin/manager audience."""
    admins = (await session.execute(
        select(User.id)
        .where(User.role.in_([UserRole.ADMIN, UserRole.MANAGER]), User.is_active == True)
        .order_by(User.id)
    )).scalars().all()
    if not admins:
        logger.warning("No admin or manager users found for escalation rules")
        return 0

    added = 0
    for entity_type in entity_types:
        for days, level, take in DEFAULT_LADDER:
            existing = (await session.execute(
                select(EscalationRule.id).where(
                    EscalationRule.entity_type == entity_type,
                    EscalationRule.days_overdue == days,
                    EscalationRule.escalation_level == level,
                ).limit(1)
            )).scalar()
            if existing:
                continue
            recipients = list(admins if take is None else admins[:take])
            await create_rule(session, EscalationRuleIn(
                entity_type=entity_type, days_overdue=days,
                escalation_level=level, notify_user_ids=recipients,
            ))
            added += 1
    if added:
        logger.info(f"Seeded {added} escalation rules")
    return added
