"""
Clock and time-zone helpers.

Services never read the system clock directly: they receive a ``Clock``
(a callable returning an aware UTC datetime) so tests can pin "now" to
either side of a local midnight.
"""

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional
import pytz

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def fixed_clock(moment: datetime) -> Clock:
    """Clock frozen at ``moment`` (naive values are read as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return lambda: moment


def resolve_timezone(name: Optional[str], fallback: str = "UTC"):
    """
    Return the pytz zone for ``name``. A missing or unknown name falls back
    to ``fallback`` (UTC by default) and the fallback is logged.
    """
    if name:
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown time zone {name!r} — falling back to {fallback}")
    else:
        logger.info(f"No time zone configured — falling back to {fallback}")
    return pytz.timezone(fallback)


def local_today(clock: Clock, tz) -> date:
    """The calendar date it currently is in ``tz``."""
    return clock().astimezone(tz).date()
