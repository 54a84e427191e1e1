from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


class SystemClock:
    def __init__(self, tz: str = "UTC"):
        self.tz = ZoneInfo(tz) if tz != "UTC" else timezone.utc

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock frozen at ``at``; ``advance`` moves it for multi-day scenarios."""

    def __init__(self, at: datetime):
        self.at = at

    def now(self) -> datetime:
        return self.at

    def today(self) -> date:
        return self.at.date()

    def advance(self, **delta):
        self.at = self.at + timedelta(**delta)
        return self.at
