from datetime import date, datetime, timedelta

from src.errors import ValidationError


def parse_iso_date(value) -> date:
    """Coerce a ``date``, ``datetime`` or ``YYYY-MM-DD`` string to a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValidationError(f"Malformed date: {value!r}") from None
    raise ValidationError(f"Malformed date: {value!r}")


def days_between(a, b) -> int:
    """Whole days from ``a`` to ``b``. Negative if ``b`` precedes ``a``.

    Time-of-day is dropped before subtracting, so DST shifts never turn
    23 hours into "0 days".
    """
    return (parse_iso_date(b) - parse_iso_date(a)).days


def add_days(d, days: int) -> date:
    return parse_iso_date(d) + timedelta(days=days)


def local_today() -> date:
    # date.today() reads the local wall clock, not UTC
    return date.today()


def today_local() -> str:
    """Current local calendar date as ``YYYY-MM-DD``."""
    return local_today().isoformat()


def month_key(date_iso) -> str:
    """``YYYY-MM`` bucket for a date."""
    return parse_iso_date(date_iso).strftime("%Y-%m")
