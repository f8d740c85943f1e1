"""
Result records handed back by :py:class:`adsearch.client.DirectoryClient`.

Records are read-only mappings of attribute name to value, with attribute
access as a convenience::

    user = await client.find_user("jdoe")
    user["mail"] == user.mail

The only mutable part of a record is :py:attr:`DirectoryEntry.groups`, which
is filled in when group membership is requested.
"""

from collections.abc import Iterator, Mapping
from typing import Any

from .entries import classify
from .typing import Entry


class DirectoryEntry(Mapping):
    """A directory object that is neither a user nor a group."""

    kind = "other"

    def __init__(self, attributes: Entry) -> None:
        self.__dict__["_attributes"] = dict(attributes)
        self.__dict__["groups"] = None

    def __getitem__(self, key: str) -> Any:
        return self._attributes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__dict__["_attributes"][name]
        except KeyError:
            msg = f"{self.__class__.__name__!r} object has no attribute {name!r}"
            raise AttributeError(msg) from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name != "groups":
            msg = f"{self.__class__.__name__} is read-only"
            raise AttributeError(msg)
        self.__dict__["groups"] = value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DirectoryEntry):
            return self.kind == other.kind and self._attributes == other._attributes
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.dn}>"

    @property
    def dn(self) -> str | None:
        return self._attributes.get("dn")

    @property
    def cn(self) -> str | None:
        return self._attributes.get("cn")

    def to_dict(self) -> Entry:
        data = dict(self._attributes)
        if self.groups is not None:
            data["groups"] = [group.to_dict() for group in self.groups]
        return data


class Group(DirectoryEntry):
    kind = "group"


class User(DirectoryEntry):
    kind = "user"

    def is_member_of(self, group: str) -> bool:
        """
        Return ``True`` if ``group`` (a DN or common name) is one of this
        user's resolved groups.  Always ``False`` before membership has been
        resolved.
        """
        wanted = (group or "").lower()
        return any(
            wanted in (str(g.dn or "").lower(), str(g.cn or "").lower())
            for g in self.groups or ()
        )


Other = DirectoryEntry

RECORD_CLASSES: dict[str, type[DirectoryEntry]] = {
    "user": User,
    "group": Group,
    "other": Other,
}


def make_record(attributes: Entry, kind: str | None = None) -> DirectoryEntry:
    """Wrap ``attributes`` in the record class for ``kind`` (or its classification)."""
    return RECORD_CLASSES[kind or classify(attributes)](attributes)
