"""
Formatters — wording of notification titles and bodies.
"""
from datetime import date
from biomed.db.models import TaskKind


KIND_LABELS = {
    TaskKind.PM: "Preventive maintenance",
    TaskKind.CALIBRATION: "Calibration",
}

KIND_SHORT = {
    TaskKind.PM: "PM",
    TaskKind.CALIBRATION: "Calibration",
}

LEVEL_ICON = {1: "⏰", 2: "⚠️", 3: "🚨"}


def fmt_date(d: date | None) -> str:
    return d.strftime("%d.%m.%Y") if d else "—"


def plural_days(n: int) -> str:
    return f"{n} day" if n == 1 else f"{n} days"


def escalation_title(kind: TaskKind, level: int, asset_name: str) -> str:
    icon = LEVEL_ICON.get(level, "🚨")
    return f"{icon} Escalation Level {level}: {KIND_SHORT[kind]} overdue — {asset_name}"


def escalation_text(
    kind: TaskKind, level: int, asset_name: str, scheduled: date, days_overdue: int,
    serial_number: str | None = None,
) -> str:
    asset = f"{asset_name} (S/N {serial_number})" if serial_number else asset_name
    return (
        f"{KIND_LABELS[kind]} for {asset} is {plural_days(days_overdue)} overdue "
        f"(scheduled: {fmt_date(scheduled)}). "
        f"This requires immediate attention at escalation level {level}."
    )

