"""
The directory connection the search engine is built on.

:py:class:`DirectoryConnection` owns one python-ldap ``LDAPObject``.  Blocking
calls (connecting, StartTLS, binding) run in the event loop's default
executor; searches use python-ldap's asynchronous API and poll
``result3(msgid, all=0, timeout=0)`` so that many searches can be in flight on
one event loop.

python-ldap exceptions are not translated here; the caller decides which of
them are failures.
"""

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from ldap.controls import LDAPControl, SimplePagedResultsControl

from adsearch import ldap

from .conf import DirectoryConfig
from .typing import RawAttributes

logger = logging.getLogger("adsearch")

R = TypeVar("R")


@dataclass(frozen=True)
class SearchEntry:
    dn: str
    attrs: RawAttributes


@dataclass(frozen=True)
class SearchReference:
    uris: list[str]


@dataclass(frozen=True)
class SearchDone:
    #: The paged results cookie; empty when there are no more pages
    cookie: bytes | None = None


SearchEvent = SearchEntry | SearchReference | SearchDone


def _check_file(path: str, label: str) -> None:
    file = Path(path)
    if not file.exists():
        msg = f"{label} file does not exist: {path}"
        raise OSError(msg)
    if not file.is_file():
        msg = f"{label} file is not a file: {path}"
        raise OSError(msg)


class DirectoryConnection:
    """
    One connection to a directory server.

    Args:
        config: the client configuration (TLS, timeouts, credentials)

    Keyword Args:
        url: connect here instead of ``config.url``; used for referrals

    """

    def __init__(self, config: DirectoryConfig, url: str | None = None) -> None:
        self.config = config
        self.url = url or config.url
        self._ldap: Any = None

    def __repr__(self) -> str:
        return f"<DirectoryConnection {self.url}>"

    @property
    def is_open(self) -> bool:
        return self._ldap is not None

    async def _blocking(self, func: Callable[..., R], *args: Any) -> R:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _initialize(self) -> Any:
        config = self.config
        ldap_object = ldap.initialize(self.url)
        # Referrals are chased by SearchSession, never by libldap
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(config.timeout))
        if config.tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        else:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        if config.tls_ca_certfile:
            _check_file(config.tls_ca_certfile, "CA Certificate")
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, config.tls_ca_certfile)
        if config.tls_certfile:
            _check_file(config.tls_certfile, "TLS Certificate")
            ldap_object.set_option(ldap.OPT_X_TLS_CERTFILE, config.tls_certfile)
        if config.tls_keyfile:
            _check_file(config.tls_keyfile, "TLS Key")
            ldap_object.set_option(ldap.OPT_X_TLS_KEYFILE, config.tls_keyfile)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        if config.use_starttls:
            ldap_object.start_tls_s()
        return ldap_object

    async def open(self) -> None:
        """
        Create the underlying ``LDAPObject``.

        Raises:
            OSError: a configured certificate or key file is missing
            ldap.LDAPError: connecting or StartTLS failed

        """
        if self._ldap is None:
            self._ldap = await self._blocking(self._initialize)
            logger.debug("connection.open url=%s", self.url)

    async def bind(self, dn: str | None = None, password: str | None = None) -> None:
        """
        Bind as ``dn``.  Without arguments, bind with the configured service
        account, or anonymously if there is none.

        Raises:
            ldap.INVALID_CREDENTIALS: the server rejected the credentials

        """
        if dn is None and password is None:
            dn, password = self.config.user, self.config.password
        await self.open()
        await self._blocking(self._ldap.simple_bind_s, dn, password)
        logger.debug("connection.bind url=%s dn=%s", self.url, dn or "<anonymous>")

    async def bind_anonymously(self) -> None:
        await self.open()
        await self._blocking(self._ldap.simple_bind_s, None, None)

    async def search(
        self,
        base: str,
        scope: int,
        filterstr: str,
        attrlist: list[str] | None = None,
        *,
        cookie: bytes | str = "",
        page_size: int | None = 1000,
        serverctrls: Sequence[LDAPControl] = (),
        sizelimit: int = 0,
        timelimit: int = 0,
    ) -> AsyncIterator[SearchEvent]:
        """
        Run one page of a search and yield its events.

        Entries and references are yielded as they arrive; the last event is
        always a :py:class:`SearchDone` carrying the cookie for the next page.
        With ``page_size=None`` no paged results control is sent.

        Raises:
            ldap.LDAPError: the search failed, including
                ``ldap.SIZELIMIT_EXCEEDED`` after the entries that fit

        """
        controls = list(serverctrls)
        if page_size:
            # The paged control goes first; python-ldap-faker assumes so
            controls.insert(
                0, SimplePagedResultsControl(True, size=page_size, cookie=cookie)  # noqa: FBT003
            )
        msgid = self._ldap.search_ext(
            base,
            scope,
            filterstr,
            attrlist,
            serverctrls=controls or None,
            timeout=timelimit or -1,
            sizelimit=sizelimit,
        )
        while True:
            rtype, rdata, _, rctrls = self._ldap.result3(msgid, all=0, timeout=0)
            if rtype is None:
                await asyncio.sleep(self.config.poll_interval)
                continue
            for dn, attrs in rdata or []:
                if isinstance(attrs, dict):
                    yield SearchEntry(dn, attrs)
                else:
                    yield SearchReference([str(uri) for uri in attrs])
            if rtype == ldap.RES_SEARCH_RESULT:
                yield SearchDone(cookie=self._get_cookie(rctrls))
                return

    def _get_cookie(self, serverctrls: Sequence[Any] | None) -> bytes | None:
        for control in serverctrls or ():
            if control.controlType == SimplePagedResultsControl.controlType:
                return control.cookie or None
        return None

    async def close(self) -> None:
        if self._ldap is None:
            return
        ldap_object, self._ldap = self._ldap, None
        with suppress(ldap.LDAPError):
            await self._blocking(ldap_object.unbind_s)
        logger.debug("connection.close url=%s", self.url)
