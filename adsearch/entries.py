"""
Turning python-ldap result tuples into entries, and sorting out what they are.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .filters import should_include_all_attributes
from .typing import Entry, RawAttributes

GROUP_CATEGORY_RE = re.compile(r"CN=Group,CN=Schema,CN=Configuration,.*", re.IGNORECASE)
USER_CATEGORY_RE = re.compile(r"CN=Person,CN=Schema,CN=Configuration,.*", re.IGNORECASE)
RANGE_RE = re.compile(
    r"^(?P<name>[^;]+);range=(?P<low>\d+)-(?P<high>\d+|\*)$", re.IGNORECASE
)


def _decode(value: bytes) -> str | bytes:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        # objectGUID, objectSid and friends
        return value


def decode_entry(dn: str, attrs: RawAttributes) -> Entry:
    """
    Decode one python-ldap search result.

    Values become ``str`` where they are valid UTF-8.  An attribute with a
    single value maps to that value, one with several values to a list.  The
    DN is stored under ``dn``.

    Args:
        dn: the DN of the entry
        attrs: the attribute dictionary as python-ldap returned it

    Returns:
        The decoded entry.

    """
    entry: Entry = {"dn": dn}
    for name, values in attrs.items():
        decoded = [_decode(v) if isinstance(v, bytes) else v for v in values]
        entry[name] = decoded[0] if len(decoded) == 1 else decoded
    return entry


def as_list(value: Any) -> list[Any]:
    """Normalize a scalar-or-list attribute value to a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _object_classes(entry: Entry) -> list[str]:
    return [str(c).lower() for c in as_list(entry.get("objectClass"))]


def is_group_result(entry: Entry) -> bool:
    if entry.get("groupType") not in (None, [], ""):
        return True
    category = entry.get("objectCategory")
    if category and GROUP_CATEGORY_RE.match(str(category)):
        return True
    return "group" in _object_classes(entry)


def is_user_result(entry: Entry) -> bool:
    if entry.get("userPrincipalName") not in (None, [], ""):
        return True
    category = entry.get("objectCategory")
    if category and USER_CATEGORY_RE.match(str(category)):
        return True
    return "user" in _object_classes(entry)


def classify(entry: Entry) -> str:
    """
    Return ``"group"``, ``"user"`` or ``"other"`` for ``entry``.

    Group markers win over user markers, so an entry with both ``groupType``
    and ``userPrincipalName`` is a group.
    """
    if is_group_result(entry):
        return "group"
    if is_user_result(entry):
        return "user"
    return "other"


def project(entry: Entry, wanted: Sequence[str] | None) -> Entry:
    """
    Keep only the ``wanted`` attributes of ``entry`` (plus ``dn``).

    Empty or ``*``-containing ``wanted`` returns the entry unchanged.
    """
    if not wanted or should_include_all_attributes(wanted):
        return entry
    return {
        key: value
        for key, value in entry.items()
        if key == "dn" or key in wanted
    }


@dataclass(frozen=True)
class RangedAttribute:
    """
    One slice of a multi-valued attribute that Active Directory delivered in
    pieces, e.g. ``member;range=0-1499``.  ``high`` is ``None`` for the final
    slice (``member;range=1500-*``).
    """

    name: str
    low: int
    high: int | None

    @classmethod
    def parse(cls, key: str) -> "RangedAttribute | None":
        match = RANGE_RE.match(key)
        if not match:
            return None
        high = match.group("high")
        return cls(
            name=match.group("name"),
            low=int(match.group("low")),
            high=None if high == "*" else int(high),
        )

    @property
    def complete(self) -> bool:
        return self.high is None

    def next(self) -> "RangedAttribute | None":
        """The slice to ask for next, or ``None`` if this was the last one."""
        if self.complete:
            return None
        return RangedAttribute(self.name, self.high + 1, None)  # type: ignore[operator]

    def __str__(self) -> str:
        high = "*" if self.high is None else str(self.high)
        return f"{self.name};range={self.low}-{high}"


def merge_ranges(entry: Entry) -> list[RangedAttribute]:
    """
    Fold every range-qualified attribute of ``entry`` into its plain name.

    Values are appended after any values already present, in arrival order
    and without deduplication, and the qualified key is removed.

    Args:
        entry: a decoded entry; modified in place

    Returns:
        The follow-up slices still to fetch, one per incomplete attribute.

    """
    pending: list[RangedAttribute] = []
    for key in list(entry):
        ranged = RangedAttribute.parse(key)
        if ranged is None:
            continue
        values = as_list(entry.pop(key))
        entry[ranged.name] = as_list(entry.get(ranged.name)) + values
        follow_up = ranged.next()
        if follow_up is not None:
            pending.append(follow_up)
    return pending
