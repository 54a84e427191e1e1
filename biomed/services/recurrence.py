"""
Recurrence calculator — when is a recurring PM / calibration next due.

Pure functions only: no sessions, no clock. Callers pass ``today`` in.
"""
from collections.abc import Iterable
from datetime import date

from dateutil.relativedelta import relativedelta

from biomed.exceptions import TemplateNotFound


def add_months(base: date, months: int) -> date:
    """Calendar-month addition; clamps to the last day of shorter months."""
    return base + relativedelta(months=months)


def resolve_template(candidates: Iterable, equipment_type: str, manufacturer: str | None = None, kind=None):
    """Pick the most specific template among ``candidates``.

    Exact (equipment_type, manufacturer) wins; otherwise the generic
    template for the equipment type (manufacturer is None). Candidates are
    expected newest-first, so the newest of equal specificity wins.
    """
    generic = None
    for template in candidates:
        if template.equipment_type != equipment_type:
            continue
        if manufacturer and template.manufacturer == manufacturer:
            return template
        if template.manufacturer is None and generic is None:
            generic = template
    if generic is None:
        raise TemplateNotFound(equipment_type, manufacturer, kind)
    return generic


def next_due_date(
    frequency_months: int,
    *,
    today: date,
    override: date | None = None,
    last_task=None,
    purchase_date: date | None = None,
) -> date:
    """Next due date, first applicable rule wins:

    1. explicit next-due override on the asset
    2. last task completed → completed_date + frequency
    3. last task not completed → scheduled_date + frequency
    4. first task → purchase_date (or today) + frequency
    """
    if frequency_months is None or frequency_months <= 0:
        raise ValueError(f"frequency_months must be positive, got {frequency_months!r}")

    if override is not None:
        return override

    if last_task is not None:
        if last_task.completed_date is not None:
            return add_months(last_task.completed_date, frequency_months)
        return add_months(last_task.scheduled_date, frequency_months)

    return add_months(purchase_date or today, frequency_months)


def next_due_for_asset(asset, kind, template, last_task=None, *, today: date) -> date:
    return next_due_date(
        template.frequency_months,
        today=today,
        override=asset.next_due_for(kind),
        last_task=last_task,
        purchase_date=asset.purchase_date,
    )


def calendar_period(due: date) -> tuple[date, date]:
    """[first day of due's month, first day of the following month)."""
    start = due.replace(day=1)
    return start, add_months(start, 1)


def overdue_days(scheduled: date, today: date) -> int:
    return (today - scheduled).days
