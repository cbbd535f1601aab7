"""
human_timedelta by Rapptz
Source:
https://github.com/Rapptz/RoboDanny/blob/rewrite/cogs/utils/time.py
"""
import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from core.utils import human_join


class plural:
    def __init__(self, value: int):
        self.value = value

    def __format__(self, format_spec: str) -> str:
        singular, _, plural_form = format_spec.partition("|")
        plural_form = plural_form or f"{singular}s"
        if abs(self.value) != 1:
            return f"{self.value} {plural_form}"
        return f"{self.value} {singular}"


def human_timedelta(
    dt: datetime.datetime,
    *,
    source: Optional[datetime.datetime] = None,
    accuracy: Optional[int] = 3,
    suffix: bool = True,
) -> str:
    now = source or datetime.datetime.now(datetime.timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)

    now = now.replace(microsecond=0)
    dt = dt.replace(microsecond=0)

    # relativedelta keeps month and year lengths exact
    if dt > now:
        delta = relativedelta(dt, now)
        output_suffix = ""
    else:
        delta = relativedelta(now, dt)
        output_suffix = " ago" if suffix else ""

    output = []
    for attr in ("year", "month", "day", "hour", "minute", "second"):
        elem = getattr(delta, attr + "s")
        if not elem:
            continue

        if attr == "day":
            weeks = delta.weeks
            if weeks:
                elem -= weeks * 7
                output.append(format(plural(weeks), "week"))

        if elem <= 0:
            continue
        output.append(format(plural(elem), attr))

    if accuracy is not None:
        output = output[:accuracy]

    if not output:
        return "now"
    return human_join(output, final="and") + output_suffix
