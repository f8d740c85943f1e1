"""
Execution of one logical search.

A :py:class:`SearchSession` turns a :py:class:`~adsearch.options.SearchRequest`
into as many physical searches as it takes to answer it completely:

* the primary search, one page at a time;
* a follow-up search per entry that came back with range-qualified
  attributes (``member;range=0-1499``), repeated until Active Directory sends
  the final slice;
* a nested search per referral allowed by the configured
  :py:class:`~adsearch.conf.ReferralPolicy`, itself subject to the same range
  and referral handling.

Follow-ups and referrals run as tasks in the session's set of outstanding
operations; the session is done when the primary search has ended and that
set is empty.  Every physical page is admitted separately through
:py:class:`~adsearch.limiter.ConcurrencyLimiter` and no slot is held while
waiting for other admitted work.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any
from urllib.parse import unquote, urlsplit

from ldap.controls import LDAPControl

from adsearch import ldap

from .conf import DirectoryConfig
from .connection import DirectoryConnection, SearchDone, SearchEntry, SearchReference
from .entries import RangedAttribute, as_list, decode_entry, merge_ranges
from .exceptions import (
    DirectoryError,
    ReferralError,
    SearchResults,
    is_connection_reset,
    translate_ldap_error,
)
from .filters import truncate_log_output
from .limiter import ConcurrencyLimiter, FailurePolicy
from .options import SearchRequest
from .typing import Entry, RawAttributes

logger = logging.getLogger("adsearch")

#: LDAP_SERVER_SHOW_DELETED_OID
SHOW_DELETED_OID = "1.2.840.113556.1.4.417"


def split_referral(uri: str) -> tuple[str, str]:
    """
    Split a referral URI into the server URL and the base DN to search.

    ``ldap://dc2.example.com/DC=child,DC=example,DC=com`` becomes
    ``("ldap://dc2.example.com", "DC=child,DC=example,DC=com")``.
    """
    parts = urlsplit(uri)
    return f"{parts.scheme}://{parts.netloc}", unquote(parts.path.lstrip("/"))


class SearchSession:
    """
    Run one :py:class:`~adsearch.options.SearchRequest` to completion.

    Args:
        config: the client configuration
        request: what to search for

    Keyword Args:
        connection_class: factory for connections; called as
            ``connection_class(config, url=...)``

    """

    def __init__(
        self,
        config: DirectoryConfig,
        request: SearchRequest,
        connection_class: Callable[..., DirectoryConnection] = DirectoryConnection,
    ) -> None:
        self.config = config
        self.request = request
        self.connection_class = connection_class
        self.results = SearchResults()
        self._pending: set[asyncio.Task] = set()
        self._connections: list[DirectoryConnection] = []
        self._chased: set[str] = set()
        self._started = 0.0
        self._controls: list[LDAPControl] = list(request.controls)
        if request.include_deleted:
            self._controls.append(LDAPControl(SHOW_DELETED_OID, True, None))  # noqa: FBT003

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    async def execute(self) -> SearchResults:
        """
        Run the search.

        Raises:
            DirectoryError: the primary search, or a range follow-up, failed

        Returns:
            Every entry found, with ``truncated`` set if a size limit cut the
            search short.

        """
        self._started = time.monotonic()
        request = self.request
        logger.debug(
            "search.start base=%s filter=%s",
            request.basedn,
            truncate_log_output(request.filter),
        )
        try:
            connection = await self._connect(self.config.url)
            await self._stream(connection, request.basedn)
            await self._drain()
        except BaseException:
            await self._cancel_pending()
            raise
        finally:
            await self._close_connections()
        logger.info(
            "search.done base=%s filter=%s count=%d truncated=%s elapsed=%.3f",
            request.basedn,
            truncate_log_output(request.filter),
            len(self.results),
            self.results.truncated,
            self.elapsed,
        )
        return self.results

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _admit(self, op: Callable[[], Awaitable[Any]], policy: FailurePolicy) -> Any:
        return await ConcurrencyLimiter.run(
            self.config.pool_key, self.config.max_searches, op, policy
        )

    async def _connect(self, url: str) -> DirectoryConnection:
        connection = self.connection_class(self.config, url=url)
        self._connections.append(connection)

        async def bind() -> None:
            try:
                await connection.bind()
            except ldap.LDAPError as e:
                await connection.close()
                raise translate_ldap_error(e, elapsed=self.elapsed) from e

        await self._admit(bind, FailurePolicy.retry(self.config.search_retries))
        return connection

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def _stream(
        self, connection: DirectoryConnection, basedn: str, *, referral: bool = False
    ) -> None:
        """Read every page of the search on ``connection`` into the results."""
        cookie: bytes | str = ""
        policy = FailurePolicy(timeout=self.config.search_timeout)
        while True:
            done = await self._admit(
                lambda: self._page(connection, basedn, cookie, referral=referral),
                policy,
            )
            if done is None or not done.cookie:
                return
            cookie = done.cookie

    async def _page(
        self,
        connection: DirectoryConnection,
        basedn: str,
        cookie: bytes | str,
        *,
        referral: bool,
    ) -> SearchDone | None:
        request = self.request
        done: SearchDone | None = None
        try:
            async for event in connection.search(
                basedn,
                request.scope,
                request.filter,
                request.attrlist,
                cookie=cookie,
                page_size=self.config.page_size,
                serverctrls=self._controls,
                sizelimit=request.sizelimit,
                timelimit=request.timelimit,
            ):
                if isinstance(event, SearchEntry):
                    self._on_entry(connection, event.dn, event.attrs, referral=referral)
                elif isinstance(event, SearchReference):
                    self._on_reference(event.uris)
                else:
                    done = event
        except ldap.SIZELIMIT_EXCEEDED:
            logger.warning(
                "search.size_limit filter=%s count=%d",
                truncate_log_output(request.filter),
                len(self.results),
            )
            self.results.truncated = True
            return None
        except ldap.LDAPError as e:
            if is_connection_reset(e) and not referral:
                logger.warning("search.connection_reset url=%s", connection.url)
                return None
            raise translate_ldap_error(e, elapsed=self.elapsed) from e
        return done

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        self._pending.add(asyncio.ensure_future(coro))

    async def _drain(self) -> None:
        while self._pending:
            done, _ = await asyncio.wait(
                set(self._pending), return_when=asyncio.FIRST_EXCEPTION
            )
            for task in done:
                self._pending.discard(task)
                task.result()

    async def _cancel_pending(self) -> None:
        tasks = list(self._pending)
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_connections(self) -> None:
        for connection in self._connections:
            await connection.close()
        self._connections.clear()

    # ------------------------------------------------------------------
    # Entries and range retrieval
    # ------------------------------------------------------------------

    def _on_entry(
        self,
        connection: DirectoryConnection,
        dn: str,
        attrs: RawAttributes,
        *,
        referral: bool = False,
    ) -> None:
        entry = decode_entry(dn, attrs)
        pending = merge_ranges(entry)
        if pending:
            logger.debug(
                "search.range dn=%s attributes=%s", dn, ",".join(map(str, pending))
            )
            retrieve = self._retrieve_ranges(connection.url, entry, attrs, pending)
            self._spawn(self._contain_referral(connection.url, retrieve) if referral else retrieve)
        else:
            self._deliver(entry, attrs)

    async def _retrieve_ranges(
        self,
        url: str,
        entry: Entry,
        attrs: RawAttributes,
        pending: list[RangedAttribute],
    ) -> None:
        connection = await self._connect(url)
        try:
            while pending:
                fragments = await self._admit(
                    lambda: self._range_page(connection, entry["dn"], pending),
                    FailurePolicy(timeout=self.config.search_timeout),
                )
                requested = {r.name for r in pending}
                pending = []
                for fragment in fragments:
                    pending.extend(merge_ranges(fragment))
                    for name in requested:
                        if name in fragment:
                            entry[name] = as_list(entry.get(name)) + as_list(fragment[name])
        finally:
            await connection.close()
        self._deliver(entry, attrs)

    async def _range_page(
        self,
        connection: DirectoryConnection,
        dn: str,
        pending: list[RangedAttribute],
    ) -> list[Entry]:
        fragments: list[Entry] = []
        try:
            async for event in connection.search(
                dn,
                ldap.SCOPE_BASE,
                "(objectClass=*)",
                [str(r) for r in pending],
                page_size=None,
                serverctrls=self._controls,
            ):
                if isinstance(event, SearchEntry):
                    fragments.append(decode_entry(event.dn, event.attrs))
        except ldap.LDAPError as e:
            raise translate_ldap_error(e, elapsed=self.elapsed) from e
        return fragments

    def _deliver(self, entry: Entry, attrs: RawAttributes) -> None:
        parser = self.request.entry_parser or self.config.entry_parser
        if parser is not None:
            entry = parser(entry, attrs)
            if entry is None:
                return
        self.results.append(entry)

    # ------------------------------------------------------------------
    # Referrals
    # ------------------------------------------------------------------

    def _on_reference(self, uris: list[str]) -> None:
        for uri in uris:
            if not self.config.referrals.is_allowed(uri):
                logger.debug("search.referral_skipped uri=%s", uri)
                continue
            if uri.lower() in self._chased:
                continue
            self._chased.add(uri.lower())
            self._spawn(self._chase(uri))

    async def _chase(self, uri: str) -> None:
        url, basedn = split_referral(uri)
        logger.debug("search.referral uri=%s", uri)

        async def follow() -> None:
            connection = await self._connect(url)
            await self._stream(connection, basedn, referral=True)

        await self._contain_referral(uri, follow())

    async def _contain_referral(self, uri: str, work: Awaitable[None]) -> None:
        """
        Await ``work`` done on behalf of a referral; a failure is logged and
        the entries it would have produced are dropped.
        """
        try:
            await work
        except DirectoryError as e:
            error = ReferralError(f"Referral {uri} failed: {e}", code=e.code, info=e.info)
            logger.error("search.referral_failed uri=%s error=%s", uri, error)
