"""
Ready-made entry parsers.

An entry parser receives each decoded entry together with its raw
attributes and returns the entry to keep, or ``None`` to drop it::

    def with_mail(entry, raw):
        return entry if entry.get("mail") else None

    client.find_users(SearchOptions(entry_parser=chain(parse_timestamps, with_mail)))

Parsers may also be set for every search with ``DirectoryConfig.entry_parser``.
"""

import datetime
from collections.abc import Callable

import pytz

from .typing import Entry, EntryParser, RawAttributes

#: Generalized time attributes
GENERALIZED_TIME_ATTRIBUTES: tuple[str, ...] = ("whenCreated", "whenChanged")
#: FILETIME attributes: 100-nanosecond intervals since 1601-01-01 UTC
FILETIME_ATTRIBUTES: tuple[str, ...] = (
    "pwdLastSet",
    "lockoutTime",
    "lastLogonTimestamp",
    "accountExpires",
)
LDAP_DATETIME_FORMATS: list[str] = [
    "%Y%m%d%H%M%S.0Z",
    "%Y%m%d%H%M%SZ",
    "%Y%m%d%H%M%S+0000",
]

#: The Active Directory epoch (January 1, 1601 UTC).
AD_EPOCH: datetime.datetime = datetime.datetime(1601, 1, 1, tzinfo=pytz.UTC)
#: The number of 100-nanosecond intervals per second.
INTERVALS_PER_SECOND: int = 10_000_000
#: ``accountExpires`` value meaning "never"
AD_NEVER: int = 0x7FFFFFFFFFFFFFFF


def parse_generalized_time(value: str) -> datetime.datetime | None:
    """
    Convert an LDAP generalized time string to an aware UTC datetime.

    Returns:
        The datetime, or ``None`` if ``value`` is in none of the known formats.

    """
    for fmt in LDAP_DATETIME_FORMATS:
        try:
            dt = datetime.datetime.strptime(value, fmt)
        except ValueError:  # noqa: PERF203
            continue
        return pytz.utc.localize(dt)
    return None


def parse_filetime(value: str | int) -> datetime.datetime | None:
    """
    Convert an Active Directory FILETIME to an aware UTC datetime.

    ``0`` and the "never" sentinel both become ``None``.

    Raises:
        ValueError: ``value`` is not an integer

    """
    timestamp = int(value)
    if timestamp <= 0 or timestamp >= AD_NEVER:
        return None
    try:
        return AD_EPOCH + datetime.timedelta(seconds=timestamp / INTERVALS_PER_SECOND)
    except OverflowError:
        return None


def parse_timestamps(entry: Entry, raw: RawAttributes) -> Entry:  # noqa: ARG001
    """
    Entry parser that replaces the timestamp attributes of ``entry`` with
    aware UTC datetimes.  Values that do not parse are left alone.
    """
    for name in GENERALIZED_TIME_ATTRIBUTES:
        value = entry.get(name)
        if isinstance(value, str):
            parsed = parse_generalized_time(value)
            if parsed is not None:
                entry[name] = parsed
    for name in FILETIME_ATTRIBUTES:
        value = entry.get(name)
        if isinstance(value, str):
            try:
                entry[name] = parse_filetime(value)
            except ValueError:
                pass
    return entry


def chain(*parsers: EntryParser) -> Callable[[Entry, RawAttributes], Entry | None]:
    """
    Compose entry parsers left to right.  The first one to return ``None``
    drops the entry and the rest are not called.
    """

    def parse(entry: Entry, raw: RawAttributes) -> Entry | None:
        for parser in parsers:
            result = parser(entry, raw)
            if result is None:
                return None
            entry = result
        return entry

    return parse
