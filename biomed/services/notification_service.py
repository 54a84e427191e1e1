import logging
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from biomed.db.models import Notification, NotificationType
from biomed.exceptions import DispatchFailure

logger = logging.getLogger(__name__)


async def create_notification(
    session: AsyncSession,
    user_id: int,
    type: NotificationType,
    title: str,
    text: str = "",
    entity_type: str = "",
    entity_id: int | None = None,
) -> Notification:
    notif = Notification(
        user_id=user_id,
        type=type,
        title=title,
        text=text,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    session.add(notif)
    await session.flush()
    return notif


class NotificationDispatcher:
    """Fans a notification out to the in-app inbox and, optionally, email.

    Does not deduplicate: callers decide whether to dispatch at all.
    """

    def __init__(self, email_sender=None):
        self.email_sender = email_sender

    async def notify(
        self,
        session: AsyncSession,
        user_id: int,
        title: str,
        message: str = "",
        entity_type: str = "",
        entity_id: int | None = None,
        type: NotificationType = NotificationType.ESCALATION,
    ) -> Notification:
        """Persist the in-app record inside the caller's transaction."""
        return await create_notification(session, user_id, type, title, message, entity_type, entity_id)

    async def send_email(self, address: str, subject: str, body: str) -> bool:
        """Best-effort: failures are logged and reported as False, never raised."""
        if not self.email_sender or not address:
            return False
        try:
            return bool(await self.email_sender.send(address, subject, body))
        except DispatchFailure as e:
            logger.warning(f"Email to {address} failed: {e}")
            return False


async def get_unread_count(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read == False,
        )
    )
    return result.scalar() or 0


async def get_notifications(
    session: AsyncSession, user_id: int, limit: int = 20, unread_only: bool = False,
) -> list[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read == False)
    result = await session.execute(
        query.order_by(Notification.is_read, Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return result.scalars().all()


async def get_entity_notifications(
    session: AsyncSession, entity_type: str, entity_id: int,
) -> list[Notification]:
    result = await session.execute(
        select(Notification)
        .where(Notification.entity_type == entity_type, Notification.entity_id == entity_id)
        .order_by(Notification.id)
    )
    return result.scalars().all()


async def mark_read(session: AsyncSession, notification_id: int):
    result = await session.execute(select(Notification).where(Notification.id == notification_id))
    notif = result.scalar_one_or_none()
    if notif:
        notif.is_read = True
        await session.flush()
    return notif


async def mark_all_read(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read == False)
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
