"""
Error taxonomy for directory operations.

python-ldap raises one exception class per LDAP result code.  Callers of
:py:class:`adsearch.client.DirectoryClient` only ever see the handful of
classes below, each carrying the underlying result ``code`` and the server's
diagnostic ``info``.  "Not found" is never an error: lookups return ``None``
or an empty list instead.
"""

import errno
from typing import Any

from adsearch import ldap

#: LDAP result code for invalidCredentials
INVALID_CREDENTIALS_CODE = 49


class DirectoryError(Exception):
    """
    Base class for every error raised by adsearch.

    Args:
        message: human readable description

    Keyword Args:
        code: the LDAP result code, if the server sent one
        info: the server's diagnostic message
        elapsed: seconds spent before the failure, for timeouts

    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        info: str | None = None,
        elapsed: float | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.info = info
        self.elapsed = elapsed


class InvalidCredentials(DirectoryError):
    """The bind identity or password was rejected, or was empty."""

    def __init__(self, message: str = "Invalid credentials", **kwargs: Any) -> None:
        if kwargs.get("code") is None:
            kwargs["code"] = INVALID_CREDENTIALS_CODE
        super().__init__(message, **kwargs)


class DirectoryConnectionError(DirectoryError):
    """The transport failed: refused, reset or unreachable."""


class DirectoryTimeout(DirectoryConnectionError):
    """An operation ran longer than allowed."""


class ProtocolError(DirectoryError):
    """The server answered with an error other than a size limit."""


class ReferralError(DirectoryError):
    """Chasing a referral failed.  Never propagates past the search session."""


class RecursionGuardStop(Exception):  # noqa: N818
    """A DN was already expanded during the current resolution."""

    def __init__(self, dn: str) -> None:
        super().__init__(dn)
        self.dn = dn


def _payload(exc: Exception) -> dict[str, Any]:
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0]
    return {}


def is_connection_reset(exc: Exception) -> bool:
    """
    Return ``True`` if ``exc`` is python-ldap's report of a reset connection.

    Args:
        exc: an exception raised by python-ldap

    """
    if not isinstance(exc, ldap.SERVER_DOWN):
        return False
    return _payload(exc).get("errno") == errno.ECONNRESET


def translate_ldap_error(
    exc: Exception, elapsed: float | None = None
) -> DirectoryError:
    """
    Map a python-ldap exception onto our error taxonomy.

    Args:
        exc: the exception raised by python-ldap

    Keyword Args:
        elapsed: seconds spent in the operation so far; recorded on timeouts

    Returns:
        The :py:class:`DirectoryError` subclass to raise in its place.

    """
    if isinstance(exc, DirectoryError):
        return exc
    payload = _payload(exc)
    code = payload.get("result")
    info = payload.get("info") or None
    desc = payload.get("desc") or str(exc) or exc.__class__.__name__
    message = f"{desc}: {info}" if info else desc
    if isinstance(exc, ldap.INVALID_CREDENTIALS):
        return InvalidCredentials(message, code=code, info=info)
    if isinstance(exc, (ldap.TIMEOUT, ldap.TIMELIMIT_EXCEEDED)):
        return DirectoryTimeout(message, code=code, info=info, elapsed=elapsed)
    if isinstance(exc, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)):
        return DirectoryConnectionError(message, code=code, info=info)
    return ProtocolError(message, code=code, info=info)


class SearchResults(list):
    """
    The entries of one logical search.

    ``truncated`` is set when the server stopped early because of a size
    limit; the entries collected up to that point are still valid.
    """

    def __init__(self, *args: Any, truncated: bool = False) -> None:
        super().__init__(*args)
        self.truncated = truncated
