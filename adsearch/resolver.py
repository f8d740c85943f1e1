"""
Transitive group membership.

Two directions share one pattern: search, classify the results, and recurse
into every group not yet seen during this resolution.  A
:py:class:`VisitedSet` scoped to the top-level call guarantees that each DN is
expanded at most once, so membership cycles (A is a member of B, B of A)
terminate.
"""

import logging
from typing import TYPE_CHECKING

from adsearch import ldap

from .entries import as_list, classify, project
from .exceptions import RecursionGuardStop, SearchResults
from .filters import (
    build_group_filter,
    join_attributes,
    members_filter,
    membership_filter,
    required_attributes,
)
from .limiter import ConcurrencyLimiter, settle
from .models import Group, User
from .options import SearchOptions, SearchRequest
from .typing import Entry

if TYPE_CHECKING:
    from .client import DirectoryClient

logger = logging.getLogger("adsearch")

#: What classify() needs to tell users from groups
CLASSIFICATION_ATTRIBUTES = ["groupType", "objectCategory", "objectClass"]


class VisitedSet:
    """DNs already expanded during one resolution, compared case-insensitively."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def __contains__(self, dn: str) -> bool:
        return dn.lower() in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def claim(self, dn: str) -> None:
        """
        Mark ``dn`` as expanded.

        Raises:
            RecursionGuardStop: ``dn`` was already claimed

        """
        key = dn.lower()
        if key in self._seen:
            raise RecursionGuardStop(dn)
        self._seen.add(key)


class GroupResolver:
    """
    Resolve group membership on behalf of a
    :py:class:`~adsearch.client.DirectoryClient`.

    Args:
        client: the client whose configuration and search execution to use

    """

    def __init__(self, client: "DirectoryClient") -> None:
        self.client = client

    @property
    def config(self):
        return self.client.config

    def _request(self, options: SearchOptions, basedn: str, ldap_filter: str, attributes) -> SearchRequest:
        return SearchRequest(
            basedn=options.basedn or basedn,
            filter=ldap_filter,
            scope=ldap.SCOPE_SUBTREE,
            attributes=tuple(attributes),
            sizelimit=options.sizelimit,
            timelimit=options.timelimit,
            entry_parser=options.entry_parser,
            controls=tuple(options.controls),
        )

    # ------------------------------------------------------------------
    # Membership: the groups containing a DN
    # ------------------------------------------------------------------

    async def groups_containing(
        self, dn: str, options: SearchOptions | None = None
    ) -> list[Group]:
        """
        Return every group that ``dn`` belongs to, directly or through nested
        groups.

        Args:
            dn: the distinguished name of a user or group

        Keyword Args:
            options: ``attributes``, ``basedn``, size and time limits are
                honoured; ``filter`` and ``scope`` are not

        Raises:
            ValueError: ``dn`` is empty
            DirectoryError: a search failed

        Returns:
            The groups, deduplicated by DN and sorted by common name.

        """
        if not dn:
            msg = "No distinguishedName (dn) specified for group membership retrieval."
            raise ValueError(msg)
        options = options or SearchOptions()
        wanted = self.config.attributes.group if options.attributes is None else options.attributes
        found: dict[str, Entry] = {}
        await self._expand_membership(dn, options, VisitedSet(), found)
        groups = sorted(
            found.values(),
            key=lambda group: (str(group.get("cn") or "").lower(), group["dn"].lower()),
        )
        logger.info(
            "membership.resolved dn=%s groups=%d", dn, len(groups)
        )
        return [Group(project(group, wanted)) for group in groups]

    async def _expand_membership(
        self,
        dn: str,
        options: SearchOptions,
        visited: VisitedSet,
        found: dict[str, Entry],
    ) -> None:
        wanted = self.config.attributes.group if options.attributes is None else options.attributes
        request = self._request(
            options,
            self.config.basedn_for("group"),
            membership_filter(dn),
            join_attributes(wanted, ["dn", "cn"], CLASSIFICATION_ATTRIBUTES),
        )
        results = await self.client.execute(request)
        children: list[str] = []
        for entry in results:
            if classify(entry) != "group":
                continue
            try:
                visited.claim(entry["dn"])
            except RecursionGuardStop:
                continue
            logger.debug("membership.nested group=%s member=%s", entry["dn"], dn)
            found[entry["dn"].lower()] = entry
            children.append(entry["dn"])
        await settle(
            self._expand_membership(child, options, visited, found)
            for child in children
        )

    # ------------------------------------------------------------------
    # Containment: the users inside a group
    # ------------------------------------------------------------------

    async def members_of(
        self, group_name: str, options: SearchOptions | None = None
    ) -> list[User]:
        """
        Return the users in ``group_name``, including the users of nested
        groups.

        Member DNs are looked up in chunks of ``config.chunk_size``, each
        chunk admitted through the ``config.chunk_pool_key`` pool.  Users
        reachable through more than one nested group are listed once per path.

        Args:
            group_name: common name or DN of the group

        Keyword Args:
            options: ``attributes`` picks the user attributes returned

        Raises:
            DirectoryError: a search failed, after all sibling branches settled

        Returns:
            The users; empty if the group does not exist.

        """
        options = options or SearchOptions()
        return await self._expand_members(group_name, options, VisitedSet())

    async def _lookup_group(self, group_name: str, options: SearchOptions) -> Entry | None:
        request = self._request(
            options,
            self.config.basedn_for("group"),
            build_group_filter(group_name),
            ["dn", "cn", "member"],
        )
        results = await self.client.execute(request)
        return results[0] if results else None

    async def _expand_members(
        self,
        group_name: str,
        options: SearchOptions,
        visited: VisitedSet,
        *,
        claimed: bool = False,
    ) -> list[User]:
        group = await self._lookup_group(group_name, options)
        if group is None:
            logger.warning("members.group_not_found group=%s", group_name)
            return []
        if not claimed:
            try:
                visited.claim(group["dn"])
            except RecursionGuardStop:
                return []
        members = [str(m) for m in as_list(group.get("member"))]
        size = self.config.chunk_size
        chunks = [members[i : i + size] for i in range(0, len(members), size)]
        logger.debug(
            "members.chunks group=%s members=%d chunks=%d",
            group["dn"],
            len(members),
            len(chunks),
        )
        found = await ConcurrencyLimiter.map(
            self.config.chunk_pool_key,
            self.config.max_chunk_searches,
            chunks,
            lambda chunk: self._search_chunk(chunk, options),
        )
        wanted = self.config.attributes.user if options.attributes is None else options.attributes
        users: list[User] = []
        nested: list[str] = []
        for entries in found:
            for entry in entries:
                kind = classify(entry)
                if kind == "group":
                    if entry["dn"] in visited:
                        continue
                    visited.claim(entry["dn"])
                    nested.append(entry["dn"])
                elif kind == "user":
                    users.append(User(project(entry, wanted)))
                else:
                    logger.debug("members.skipped dn=%s", entry["dn"])
        for nested_users in await settle(
            self._expand_members(dn, options, visited, claimed=True) for dn in nested
        ):
            users.extend(nested_users)
        logger.info("members.resolved group=%s users=%d", group["dn"], len(users))
        return users

    async def _search_chunk(self, chunk: list[str], options: SearchOptions) -> SearchResults:
        wanted = self.config.attributes.user if options.attributes is None else options.attributes
        request = self._request(
            options,
            self.config.basedn_for("default"),
            members_filter(chunk),
            join_attributes(
                wanted,
                required_attributes(options.attributes),
                CLASSIFICATION_ATTRIBUTES,
                ["userPrincipalName"],
            ),
        )
        return await self.client.execute(request)
