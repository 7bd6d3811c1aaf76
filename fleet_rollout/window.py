import re
from dataclasses import dataclass
from datetime import time

DAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_PATTERN = re.compile(r"^\s*([A-Za-z,\s]+?)\s+(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True)
class MaintenanceWindow:
    """Weekly window such as ``Sun 02:00-06:00`` or ``Sat,Sun 01:00-05:30``.

    The window covers ``start <= t < end`` on each listed weekday, in the
    local time of whatever clock is passed to ``contains``.
    """
    days: tuple  # weekday numbers, Monday is 0
    start: time
    end: time

    @classmethod
    def parse(cls, text):
        match = _PATTERN.match(text or "")
        if not match:
            raise ValueError(f"invalid maintenance window {text!r}, expected e.g. 'Sun 02:00-06:00'")

        names, start_h, start_m, end_h, end_m = match.groups()
        days = set()
        for name in names.split(","):
            key = name.strip().lower()[:3]
            if key not in DAYS:
                raise ValueError(f"unknown weekday {name.strip()!r} in maintenance window")
            days.add(DAYS.index(key))

        start = time(int(start_h), int(start_m))
        end = time(int(end_h), int(end_m))
        if end <= start:
            raise ValueError(f"maintenance window {text!r} must end after it starts")
        return cls(tuple(sorted(days)), start, end)

    def contains(self, moment):
        return moment.weekday() in self.days and self.start <= moment.time() < self.end

    def __str__(self):
        names = ",".join(DAYS[d].capitalize() for d in self.days)
        return f"{names} {self.start:%H:%M}-{self.end:%H:%M}"
