import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from biomed.db.models import TaskKind, TaskStatus, PRE_OVERDUE_STATUSES
from biomed.db.repositories import TaskRepository
from biomed.exceptions import RepositoryWriteFailure

logger = logging.getLogger(__name__)


class OverdueDetector:
    """Marks tasks whose scheduled date has passed as OVERDUE.

    Only state changes here; escalation reads the result later.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def sweep_overdue(self, now: datetime, kind: TaskKind | None = None) -> int:
        cutoff = now.date()  # scheduled_date < start of today
        async with self.session_factory() as session:
            try:
                count = await TaskRepository(session).bulk_transition_status(
                    PRE_OVERDUE_STATUSES, TaskStatus.OVERDUE, cutoff, kind,
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise RepositoryWriteFailure(f"Overdue sweep failed: {e}") from e

        if count:
            logger.info(f"🔴 {count} task(s) marked OVERDUE (cutoff {cutoff})")
        else:
            logger.debug(f"No newly overdue tasks (cutoff {cutoff})")
        return count
