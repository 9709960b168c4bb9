"""
Business-day calendar for payout scheduling.

Weekends are never business days. Each supported country adds its public
holidays; a fixed-date holiday that lands on a weekend is observed on the
nearest weekday (Saturday -> Friday, Sunday -> Monday). Unknown countries
fall back to weekends only.
"""

from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Union

from dateutil.easter import easter
from dateutil.relativedelta import MO, TH, relativedelta

SATURDAY, SUNDAY = 5, 6


def observed(day: date) -> date:
    if day.weekday() == SATURDAY:
        return day - timedelta(days=1)
    if day.weekday() == SUNDAY:
        return day + timedelta(days=1)
    return day


def us_holidays(year: int) -> set[date]:
    new_year = date(year, 1, 1)
    return {
        observed(new_year),  # New Year's Day
        new_year + relativedelta(month=1, weekday=MO(+3)),  # Martin Luther King Jr. Day
        new_year + relativedelta(month=2, weekday=MO(+3)),  # Presidents' Day
        new_year + relativedelta(month=5, day=31, weekday=MO(-1)),  # Memorial Day
        observed(date(year, 6, 19)),  # Juneteenth
        observed(date(year, 7, 4)),  # Independence Day
        new_year + relativedelta(month=9, weekday=MO(+1)),  # Labor Day
        new_year + relativedelta(month=10, weekday=MO(+2)),  # Columbus Day
        observed(date(year, 11, 11)),  # Veterans Day
        new_year + relativedelta(month=11, weekday=TH(+4)),  # Thanksgiving
        observed(date(year, 12, 25)),  # Christmas
    }


def ca_holidays(year: int) -> set[date]:
    new_year = date(year, 1, 1)
    christmas = date(year, 12, 25)
    boxing_day = date(year, 12, 26)
    if christmas.weekday() in (SATURDAY, SUNDAY):
        # Christmas takes the Monday; Boxing Day moves to the Tuesday
        christmas_observed = christmas + relativedelta(weekday=MO)
        boxing_observed = christmas_observed + timedelta(days=1)
    else:
        christmas_observed = christmas
        # Christmas on a Friday puts Boxing Day on Saturday, observed Monday
        boxing_observed = boxing_day + relativedelta(weekday=MO) if boxing_day.weekday() == SATURDAY else boxing_day

    return {
        observed(new_year),  # New Year's Day
        new_year + relativedelta(month=2, weekday=MO(+3)),  # Family Day
        easter(year) - timedelta(days=2),  # Good Friday
        new_year + relativedelta(month=5, day=24, weekday=MO(-1)),  # Victoria Day
        observed(date(year, 7, 1)),  # Canada Day
        new_year + relativedelta(month=9, weekday=MO(+1)),  # Labour Day
        observed(date(year, 9, 30)),  # National Day for Truth and Reconciliation
        new_year + relativedelta(month=10, weekday=MO(+2)),  # Thanksgiving
        observed(date(year, 11, 11)),  # Remembrance Day
        christmas_observed,  # Christmas Day
        boxing_observed,  # Boxing Day
    }


HOLIDAY_CALENDARS = {
    "US": us_holidays,
    "CA": ca_holidays,
}


@lru_cache(maxsize=64)
def holidays_for(country_code: str, year: int) -> frozenset:
    calendar = HOLIDAY_CALENDARS.get(country_code)
    if calendar is None:
        return frozenset()
    # New Year's Day of the following year can be observed on Dec 31
    return frozenset(calendar(year) | {d for d in calendar(year + 1) if d.year == year})


def is_business_day(day: date, country_code: str = "US") -> bool:
    if day.weekday() >= SATURDAY:
        return False
    return day not in holidays_for((country_code or "US").upper(), day.year)


def next_business_day(start: Union[date, datetime], country_code: str = "US") -> date:
    """First business day strictly after ``start`` in the given country"""
    day = start.date() if isinstance(start, datetime) else start
    day += timedelta(days=1)
    while not is_business_day(day, country_code):
        day += timedelta(days=1)
    return day
