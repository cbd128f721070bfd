from __future__ import annotations

from datetime import date


def week_number(value: date) -> int:
    """Week of the year for ``value``, counting Sunday-started weeks.

    Week 1 is the (possibly partial) week containing January 1, so January 1
    is always in week 1 and the next Sunday starts week 2. This is not the
    ISO-8601 week: there is no week 0 or week belonging to the previous year,
    and a year can reach week 54.

    Equivalent to ``ceil((days_since_jan1 + jan1_weekday + 1) / 7)`` with
    Sunday as weekday 0.
    """
    jan1 = date(value.year, 1, 1)
    days_since_jan1 = (value - jan1).days
    jan1_weekday = jan1.isoweekday() % 7
    return (days_since_jan1 + jan1_weekday + 1 + 6) // 7
