import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional


@dataclass
class RawDay:
    date_text: str
    minutes: int


@dataclass
class RawEntityRow:
    """One entity as read from one report. Discarded once folded into a series."""

    name: str
    row_id: str = ""
    total_minutes: Optional[int] = None
    days: List[RawDay] = field(default_factory=list)
    email: str = ""
    client: Optional[str] = None
    # False when a drill-down failed and only the roster figures are known.
    complete: bool = True
    # Most recent day with time logged, when the source report exposes it.
    last_active: Optional[date] = None
    source: str = ""

    def has_activity(self) -> bool:
        if any(day.minutes > 0 for day in self.days):
            return True
        return bool(self.total_minutes and self.total_minutes > 0)

    def key(self) -> str:
        return self.row_id or normalize_name(self.name)


def normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", str(name or "")).strip().casefold()
