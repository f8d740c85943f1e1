"""
The public face of adsearch.

:py:class:`DirectoryClient` resolves each call into a filter and an attribute
list, runs it through a :py:class:`~adsearch.search.SearchSession`, classifies
and projects what comes back and, when asked, resolves group membership with
:py:class:`~adsearch.resolver.GroupResolver`::

    client = DirectoryClient.from_settings("default")
    user = await client.find_user(
        "jdoe", SearchOptions(include_membership=["user"])
    )
    if user and user.is_member_of("Domain Admins"):
        ...

Every operation is a coroutine.  Observers subscribed on
:py:attr:`DirectoryClient.observers` are told about each record and each
collection as a side channel.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from adsearch import ldap

from .conf import DirectoryConfig
from .connection import DirectoryConnection, SearchEntry
from .entries import classify, decode_entry, project
from .exceptions import (
    DirectoryError,
    InvalidCredentials,
    SearchResults,
    is_connection_reset,
    translate_ldap_error,
)
from .filters import (
    build_group_filter,
    build_user_filter,
    group_objects_filter,
    is_distinguished_name,
    join_attributes,
    required_attributes,
    truncate_log_output,
    user_objects_filter,
)
from .limiter import ConcurrencyLimiter, FailurePolicy
from .models import DirectoryEntry, Group, User, make_record
from .observers import DirectoryObserver, ObserverRegistry
from .options import SearchOptions, SearchRequest, resolve_scope
from .resolver import GroupResolver
from .rootdse import RootDSE
from .search import SearchSession
from .typing import Entry

logger = logging.getLogger("adsearch")


@dataclass
class FindResult:
    """What :py:meth:`DirectoryClient.find` found, sorted by kind."""

    users: list[User] = field(default_factory=list)
    groups: list[Group] = field(default_factory=list)
    other: list[DirectoryEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.users) + len(self.groups) + len(self.other)

    def by_kind(self, kind: str) -> list:
        """The list holding records classified as ``kind``."""
        return {"user": self.users, "group": self.groups, "other": self.other}[kind]


@dataclass(frozen=True)
class AuthenticationResult:
    """
    The outcome of :py:meth:`DirectoryClient.authenticate`.  Truthy when the
    credentials were accepted; otherwise ``error`` says why not.
    """

    authenticated: bool
    error: DirectoryError | None = None

    def __bool__(self) -> bool:
        return self.authenticated


class DirectoryClient:
    """
    Query one Active Directory (or compatible) server.

    Args:
        config: how to reach the server and what to return by default

    Keyword Args:
        connection_class: factory for connections, called as
            ``connection_class(config, url=...)``

    """

    def __init__(
        self,
        config: DirectoryConfig,
        connection_class: Callable[..., DirectoryConnection] = DirectoryConnection,
    ) -> None:
        self.config = config
        self.connection_class = connection_class
        self.observers = ObserverRegistry()
        self.resolver = GroupResolver(self)

    @classmethod
    def from_settings(cls, name: str = "default", **kwargs) -> "DirectoryClient":
        """Build a client for ``settings.LDAP_SERVERS[name]``."""
        return cls(DirectoryConfig.from_settings(name), **kwargs)

    def __repr__(self) -> str:
        return f"<DirectoryClient {self.config.url}>"

    def subscribe(self, observer: DirectoryObserver) -> Callable[[], None]:
        return self.observers.subscribe(observer)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _request(
        self,
        options: SearchOptions,
        ldap_filter: str,
        attributes: Sequence[str],
        kind: str = "default",
    ) -> SearchRequest:
        return SearchRequest(
            basedn=options.basedn or self.config.basedn_for(kind),
            filter=ldap_filter,
            scope=resolve_scope(options.scope),
            attributes=tuple(attributes),
            sizelimit=options.sizelimit,
            timelimit=options.timelimit,
            include_deleted=options.include_deleted,
            entry_parser=options.entry_parser,
            controls=tuple(options.controls),
        )

    def _wanted(self, options: SearchOptions, default: Sequence[str]) -> Sequence[str]:
        return default if options.attributes is None else options.attributes

    async def execute(self, request: SearchRequest) -> SearchResults:
        """
        Run ``request`` to completion in a new
        :py:class:`~adsearch.search.SearchSession`.
        """
        try:
            return await SearchSession(
                self.config, request, connection_class=self.connection_class
            ).execute()
        except DirectoryError as e:
            self.observers.notify("error", e)
            raise

    async def search(self, options: SearchOptions | None = None) -> SearchResults:
        """
        Run a raw search and return the decoded entries, unclassified.

        Without a filter every object under the base DN matches.
        """
        options = options or SearchOptions()
        request = self._request(
            options, options.filter or "(objectClass=*)", options.attributes or ()
        )
        return await self.execute(request)

    async def get_distinguished_names(
        self, ldap_filter: str, options: SearchOptions | None = None
    ) -> list[str]:
        """Return the DN of every entry matching ``ldap_filter``."""
        options = options or SearchOptions()
        request = self._request(options, ldap_filter, join_attributes(["dn"]))
        results = await self.execute(request)
        logger.info(
            "dns.found filter=%s count=%d",
            truncate_log_output(ldap_filter),
            len(results),
        )
        return [entry["dn"] for entry in results]

    async def get_user_dn(
        self, username: str, options: SearchOptions | None = None
    ) -> str | None:
        """
        Return the DN of ``username`` (a ``sAMAccountName`` or
        ``userPrincipalName``), or ``username`` itself if it already is a DN.
        """
        if is_distinguished_name(username):
            return username
        options = options or SearchOptions()
        request = self._request(options, build_user_filter(username), ["dn"], "user")
        results = await self.execute(request)
        return results[0]["dn"] if results else None

    async def get_group_dn(
        self, group_name: str, options: SearchOptions | None = None
    ) -> str | None:
        """Return the DN of the group called ``group_name``, or ``None``."""
        if is_distinguished_name(group_name):
            return group_name
        options = options or SearchOptions()
        request = self._request(options, build_group_filter(group_name), ["dn"], "group")
        results = await self.execute(request)
        return results[0]["dn"] if results else None

    async def _with_membership(self, record: DirectoryEntry, options: SearchOptions) -> None:
        if options.includes_membership_for(record.kind):
            record.groups = await self.resolver.groups_containing(
                record.dn, options.with_(attributes=None)
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def find_user(
        self, username: str | Sequence[str] | None, options: SearchOptions | None = None
    ) -> User | None:
        """
        Find a user by ``sAMAccountName``, ``userPrincipalName`` or DN.

        Args:
            username: who to look for; a list finds the first of several

        Keyword Args:
            options: ``filter`` replaces the filter built from ``username``;
                ``include_membership=["user"]`` fills in ``user.groups``

        Raises:
            DirectoryError: the search failed

        Returns:
            The first matching user, or ``None``.

        """
        options = options or SearchOptions()
        wanted = self._wanted(options, self.config.attributes.user)
        ldap_filter = options.filter or build_user_filter(username)
        request = self._request(
            options,
            ldap_filter,
            join_attributes(
                wanted, required_attributes(options.attributes, options.include_membership)
            ),
            "user",
        )
        results = await self.execute(request)
        if not results:
            logger.warning(
                "user.not_found user=%s filter=%s", username, truncate_log_output(ldap_filter)
            )
            return None
        user = User(project(results[0], wanted))
        logger.info(
            "user.found user=%s count=%d dn=%s", username, len(results), user.dn
        )
        await self._with_membership(user, options)
        self.observers.notify("user", user)
        return user

    async def find_users(self, options: SearchOptions | None = None) -> list[User]:
        """
        Find every user object, optionally narrowed by ``options.filter``.
        """
        options = options or SearchOptions()
        wanted = self._wanted(options, self.config.attributes.user)
        ldap_filter = user_objects_filter(options.filter)
        request = self._request(
            options,
            ldap_filter,
            join_attributes(
                wanted,
                required_attributes(options.attributes, options.include_membership),
                ["objectCategory", "objectClass", "userPrincipalName"],
            ),
            "user",
        )
        results = await self.execute(request)
        if not results:
            logger.warning("users.not_found filter=%s", truncate_log_output(ldap_filter))
        users = [User(project(entry, wanted)) for entry in results if classify(entry) == "user"]
        for user in users:
            await self._with_membership(user, options)
            self.observers.notify("user", user)
        logger.info(
            "users.found filter=%s count=%d", truncate_log_output(ldap_filter), len(users)
        )
        self.observers.notify("users", users)
        return users

    async def user_exists(self, username: str, options: SearchOptions | None = None) -> bool:
        options = (options or SearchOptions()).with_(attributes=["dn"], include_membership=())
        return await self.find_user(username, options) is not None

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def find_group(
        self, group_name: str, options: SearchOptions | None = None
    ) -> Group | None:
        """
        Find a group by common name or DN.

        Returns:
            The first matching group, or ``None``.

        """
        options = options or SearchOptions()
        wanted = self._wanted(options, self.config.attributes.group)
        ldap_filter = options.filter or build_group_filter(group_name)
        request = self._request(
            options,
            ldap_filter,
            join_attributes(
                wanted, required_attributes(options.attributes, options.include_membership)
            ),
            "group",
        )
        results = await self.execute(request)
        if not results:
            logger.warning(
                "group.not_found group=%s filter=%s", group_name, truncate_log_output(ldap_filter)
            )
            return None
        group = Group(project(results[0], wanted))
        logger.info("group.found group=%s dn=%s", group_name, group.dn)
        await self._with_membership(group, options)
        self.observers.notify("group", group)
        return group

    async def find_groups(self, options: SearchOptions | None = None) -> list[Group]:
        """
        Find every group object, optionally narrowed by ``options.filter``.
        """
        options = options or SearchOptions()
        wanted = self._wanted(options, self.config.attributes.group)
        ldap_filter = group_objects_filter(options.filter)
        request = self._request(
            options,
            ldap_filter,
            join_attributes(
                wanted,
                required_attributes(options.attributes, options.include_membership),
                ["groupType", "objectCategory", "objectClass"],
            ),
            "group",
        )
        results = await self.execute(request)
        if not results:
            logger.warning("groups.not_found filter=%s", truncate_log_output(ldap_filter))
        groups = [Group(project(entry, wanted)) for entry in results if classify(entry) == "group"]
        for group in groups:
            await self._with_membership(group, options)
            self.observers.notify("group", group)
        logger.info(
            "groups.found filter=%s count=%d", truncate_log_output(ldap_filter), len(groups)
        )
        self.observers.notify("groups", groups)
        return groups

    async def group_exists(self, group_name: str, options: SearchOptions | None = None) -> bool:
        options = (options or SearchOptions()).with_(attributes=["dn"], include_membership=())
        return await self.find_group(group_name, options) is not None

    # ------------------------------------------------------------------
    # Anything
    # ------------------------------------------------------------------

    async def find(self, options: SearchOptions | None = None) -> FindResult:
        """
        Search with ``options.filter`` and sort the matches into users,
        groups and everything else (computers, contacts, containers...).
        """
        options = options or SearchOptions()
        ldap_filter = options.filter or "(objectClass=*)"
        attributes = self.config.attributes
        request = self._request(
            options,
            ldap_filter,
            join_attributes(
                ["dn"] if options.attributes is None else options.attributes,
                attributes.group,
                attributes.user,
                required_attributes(options.attributes, options.include_membership),
                ["groupType", "objectCategory", "objectClass"],
            ),
        )
        results = await self.execute(request)
        found = FindResult()
        if not results:
            logger.warning("find.not_found filter=%s", truncate_log_output(ldap_filter))
            self.observers.notify("done")
            return found
        wanted = {
            "user": self._wanted(options, attributes.user),
            "group": self._wanted(options, attributes.group),
            "other": self._wanted(options, join_attributes(attributes.user, attributes.group)),
        }
        for entry in results:
            kind = classify(entry)
            record = make_record(project(entry, wanted[kind]), kind)
            if kind != "other":
                await self._with_membership(record, options)
            found.by_kind(kind).append(record)
            self.observers.notify(kind, record)
        logger.info(
            "find.found filter=%s users=%d groups=%d other=%d",
            truncate_log_output(ldap_filter),
            len(found.users),
            len(found.groups),
            len(found.other),
        )
        return found

    async def find_deleted_objects(self, options: SearchOptions | None = None) -> list[Entry]:
        """
        Find tombstoned objects in the ``CN=Deleted Objects`` container.

        Without ``options.basedn`` the container is located through the
        Root DSE's ``defaultNamingContext``.  The search is one level deep and
        sends the ShowDeleted control.

        Returns:
            The deleted entries as plain dictionaries.

        """
        options = (options or SearchOptions()).with_(scope="one")
        basedn = options.basedn
        if not basedn:
            logger.debug("deleted.discover url=%s", self.config.url)
            root = await self.get_root_dse(attributes=["defaultNamingContext"])
            basedn = root.deleted_objects_dn
            if basedn is None:
                msg = f"Root DSE at {self.config.url} has no defaultNamingContext"
                raise DirectoryError(msg)
        options = options.with_(basedn=basedn, include_deleted=True)
        wanted = options.attributes or []
        ldap_filter = options.filter or "(objectClass=*)"
        request = self._request(
            options,
            ldap_filter,
            join_attributes(wanted or self.config.attributes.deleted, ["dn"]),
        )
        results = await self.execute(request)
        if not results:
            logger.warning("deleted.not_found filter=%s", truncate_log_output(ldap_filter))
            self.observers.notify("done")
            return []
        deleted = [project(entry, wanted) for entry in results]
        for entry in deleted:
            self.observers.notify("deleted_entry", entry)
        logger.info(
            "deleted.found base=%s filter=%s count=%d",
            basedn,
            truncate_log_output(ldap_filter),
            len(deleted),
        )
        self.observers.notify("deleted", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def get_group_membership_for_user(
        self, username: str, options: SearchOptions | None = None
    ) -> list[Group]:
        """
        Return every group ``username`` belongs to, directly or through
        nesting, sorted by common name.  Unknown users have no groups.
        """
        options = options or SearchOptions()
        dn = await self.get_user_dn(username, options.with_(filter=None))
        if not dn:
            logger.warning("membership.user_not_found user=%s", username)
            return []
        groups = await self.resolver.groups_containing(dn, options)
        for group in groups:
            self.observers.notify("group", group)
        self.observers.notify("groups", groups)
        return groups

    async def get_group_membership_for_group(
        self, group_name: str, options: SearchOptions | None = None
    ) -> list[Group]:
        """
        Return every group that ``group_name`` is nested in, sorted by common
        name.  Unknown groups have no groups.
        """
        options = options or SearchOptions()
        dn = await self.get_group_dn(group_name, options.with_(filter=None))
        if not dn:
            logger.warning("membership.group_not_found group=%s", group_name)
            return []
        groups = await self.resolver.groups_containing(dn, options)
        for group in groups:
            self.observers.notify("group", group)
        self.observers.notify("groups", groups)
        return groups

    async def get_users_for_group(
        self, group_name: str, options: SearchOptions | None = None
    ) -> list[User]:
        """
        Return the users in ``group_name`` and in every group nested in it.
        """
        users = await self.resolver.members_of(group_name, options)
        for user in users:
            self.observers.notify("user", user)
        self.observers.notify("users", users)
        return users

    async def is_user_member_of(
        self, username: str, group_name: str, options: SearchOptions | None = None
    ) -> bool:
        """
        Return ``True`` if ``username`` belongs to ``group_name`` (a common
        name or DN), directly or through nested groups.
        """
        options = (options or SearchOptions()).with_(attributes=["dn", "cn"])
        groups = await self.get_group_membership_for_user(username, options)
        wanted = (group_name or "").lower()
        is_member = any(
            wanted in (str(group.dn or "").lower(), str(group.cn or "").lower())
            for group in groups
        )
        logger.info(
            "membership.check user=%s group=%s member=%s", username, group_name, is_member
        )
        return is_member

    # ------------------------------------------------------------------
    # Binds
    # ------------------------------------------------------------------

    async def authenticate(self, username: str, password: str) -> AuthenticationResult:
        """
        Check ``username`` and ``password`` by binding with them.

        ``username`` is passed to the server as-is: a DN, a
        ``userPrincipalName`` or ``DOMAIN\\user`` all work with Active
        Directory.  An empty username or password fails without contacting
        the server, since many servers treat it as an anonymous bind.

        Returns:
            Truthy on success; otherwise ``error`` holds the reason.

        """
        if not username or not password:
            error = InvalidCredentials("The supplied credential is invalid")
            logger.warning("auth.empty_credentials user=%s", username)
            return AuthenticationResult(authenticated=False, error=error)
        connection = self.connection_class(self.config)

        async def bind() -> None:
            await connection.bind(username, password)

        try:
            await ConcurrencyLimiter.run(self.config.pool_key, self.config.max_searches, bind)
        except ldap.LDAPError as e:
            error = translate_ldap_error(e)
            logger.warning("auth.failed user=%s url=%s error=%s", username, self.config.url, error)
            self.observers.notify("error", error)
            return AuthenticationResult(authenticated=False, error=error)
        finally:
            await connection.close()
        logger.info("auth.success user=%s url=%s", username, self.config.url)
        return AuthenticationResult(authenticated=True)

    async def get_root_dse(
        self, url: str | None = None, attributes: Sequence[str] | None = None
    ) -> RootDSE:
        """
        Read the Root DSE of ``url`` (default: the configured server) over an
        anonymous bind.

        Keyword Args:
            url: the server to ask
            attributes: which Root DSE attributes to return; all by default

        Raises:
            DirectoryError: the bind or the search failed

        Returns:
            The Root DSE.

        """
        url = url or self.config.url
        attrlist = None if not attributes or "*" in attributes else list(attributes)
        connection = self.connection_class(self.config, url=url)

        async def read() -> Entry:
            entry: Entry = {}
            try:
                await connection.bind_anonymously()
                async for event in connection.search(
                    "",
                    ldap.SCOPE_BASE,
                    "(objectClass=*)",
                    attrlist,
                    page_size=None,
                ):
                    if isinstance(event, SearchEntry) and not entry:
                        entry = decode_entry(event.dn, event.attrs)
            except ldap.LDAPError as e:
                await connection.close()
                if is_connection_reset(e):
                    logger.warning("rootdse.connection_reset url=%s", url)
                    return entry
                raise translate_ldap_error(e) from e
            return entry

        try:
            entry = await ConcurrencyLimiter.run(
                self.config.pool_key,
                self.config.max_searches,
                read,
                FailurePolicy.retry(self.config.search_retries),
            )
        except DirectoryError as e:
            logger.error("rootdse.failed url=%s error=%s", url, e)
            self.observers.notify("error", e)
            raise
        finally:
            await connection.close()
        entry.pop("dn", None)
        root = RootDSE(entry)
        logger.debug("rootdse.read url=%s flavor=%s", url, root.flavor)
        return root
