"""
Request structures.

A caller describes what it wants with :py:class:`SearchOptions`; the client
resolves that once, at the API boundary, into the :py:class:`SearchRequest`
that a :py:class:`~adsearch.search.SearchSession` executes.
"""

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ldap.controls import LDAPControl

from adsearch import ldap

from .filters import MEMBERSHIP_KINDS, include_membership_for
from .typing import EntryParser

SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,
    "one": ldap.SCOPE_ONELEVEL,
    "sub": ldap.SCOPE_SUBTREE,
}


def resolve_scope(scope: str | int) -> int:
    """
    Translate ``base``/``one``/``sub`` into the python-ldap scope constant.

    Raises:
        ValueError: ``scope`` is not one of the known scopes

    """
    if isinstance(scope, int):
        if scope not in SCOPES.values():
            msg = f"Unknown search scope: {scope}"
            raise ValueError(msg)
        return scope
    try:
        return SCOPES[scope.lower()]
    except KeyError as e:
        msg = f"Unknown search scope: {scope}"
        raise ValueError(msg) from e


@dataclass(frozen=True)
class SearchOptions:
    """
    Caller-supplied options for any read operation.

    Attributes:
        filter: an LDAP filter; overrides the filter the operation would build
        scope: ``base``, ``one`` or ``sub``
        attributes: attributes to return; ``None`` for the operation's
            defaults, ``()`` or ``("*",)`` for all of them
        sizelimit: server-side size limit, 0 for none
        timelimit: server-side time limit in seconds, 0 for none
        include_deleted: also return tombstoned objects
        entry_parser: hook applied to every entry before it is returned
        basedn: search base; overrides the configured one
        include_membership: any of ``all``, ``user``, ``group``
        controls: extra server controls to send with every search

    """

    filter: str | None = None
    scope: str = "sub"
    attributes: Sequence[str] | None = None
    sizelimit: int = 0
    timelimit: int = 0
    include_deleted: bool = False
    entry_parser: EntryParser | None = None
    basedn: str | None = None
    include_membership: Sequence[str] = ()
    controls: Sequence[LDAPControl] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        resolve_scope(self.scope)
        for kind in self.include_membership:
            if kind.lower() not in MEMBERSHIP_KINDS:
                msg = f"Unknown includeMembership value: {kind}"
                raise ValueError(msg)

    def includes_membership_for(self, kind: str) -> bool:
        return include_membership_for(self.include_membership, kind)

    def with_(self, **changes: Any) -> "SearchOptions":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class SearchRequest:
    """One fully resolved logical search."""

    basedn: str
    filter: str
    scope: int = ldap.SCOPE_SUBTREE
    attributes: Sequence[str] = ()
    sizelimit: int = 0
    timelimit: int = 0
    include_deleted: bool = False
    entry_parser: EntryParser | None = None
    controls: Sequence[LDAPControl] = ()

    @property
    def attrlist(self) -> list[str] | None:
        """The attribute list as python-ldap wants it: ``None`` for all."""
        if not self.attributes or "*" in self.attributes:
            return None
        # "1.1" asks for no attributes at all
        return [a for a in self.attributes if a != "dn"] or ["1.1"]

    def with_(self, **changes: Any) -> "SearchRequest":
        return dataclasses.replace(self, **changes)
