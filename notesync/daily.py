from __future__ import annotations

import calendar
import re
from datetime import date, timedelta

_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
_TOKEN_RE = re.compile(r"YYYY|MM|DD|dddd|ddd")
_TEMPLATE_DATE_RE = re.compile(r"\{\{date([+-]\d+[dmy])?:(.*?)\}\}", re.IGNORECASE)


def format_date(day: date, fmt: str) -> str:
    """Format with YYYY, MM, DD, dddd (weekday) and ddd (short weekday) tokens."""
    values = {
        "YYYY": f"{day.year:04d}",
        "MM": f"{day.month:02d}",
        "DD": f"{day.day:02d}",
        "dddd": _DAYS[day.weekday()],
        "ddd": _DAYS[day.weekday()][:3],
    }
    return _TOKEN_RE.sub(lambda m: values[m.group(0)], fmt)


def _add_months(day: date, months: int) -> date:
    total = day.year * 12 + (day.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last))


def shift_date(day: date, offset: str) -> date:
    sign = -1 if offset[0] == "-" else 1
    amount = int(offset[1:-1]) * sign
    unit = offset[-1].lower()
    if unit == "d":
        return day + timedelta(days=amount)
    if unit == "m":
        return _add_months(day, amount)
    return _add_months(day, amount * 12)


def process_template(template: str, title: str, today: date | None = None) -> str:
    """Expand ``{{title}}`` and ``{{date[+-N(d|m|y)]:FORMAT}}`` placeholders."""
    today = today or date.today()
    result = template.replace("{{title}}", title)

    def _date(match: re.Match) -> str:
        offset, fmt = match.group(1), match.group(2)
        return format_date(shift_date(today, offset) if offset else today, fmt)

    return _TEMPLATE_DATE_RE.sub(_date, result)
