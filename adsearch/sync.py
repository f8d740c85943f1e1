"""
Blocking access to :py:class:`~adsearch.client.DirectoryClient` for
synchronous code such as ordinary Django views::

    client = SyncDirectoryClient.from_settings()
    if client.authenticate(username, password):
        ...

Each call runs the coroutine to completion with
:py:func:`asgiref.sync.async_to_sync`.
"""

from typing import Any

from asgiref.sync import async_to_sync

from .client import DirectoryClient

#: The coroutine methods of DirectoryClient that get a blocking twin
OPERATIONS: tuple[str, ...] = (
    "search",
    "find_user",
    "find_users",
    "find_group",
    "find_groups",
    "find",
    "find_deleted_objects",
    "user_exists",
    "group_exists",
    "is_user_member_of",
    "get_group_membership_for_user",
    "get_group_membership_for_group",
    "get_users_for_group",
    "get_distinguished_names",
    "get_user_dn",
    "get_group_dn",
    "authenticate",
    "get_root_dse",
)


class SyncDirectoryClient:
    """
    Wrap a :py:class:`~adsearch.client.DirectoryClient`, exposing each of its
    operations as a blocking method of the same name.

    Args:
        client: the asynchronous client to drive

    """

    def __init__(self, client: DirectoryClient) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, name: str = "default", **kwargs: Any) -> "SyncDirectoryClient":
        return cls(DirectoryClient.from_settings(name, **kwargs))

    @property
    def config(self):
        return self.client.config

    @property
    def observers(self):
        return self.client.observers

    def __getattr__(self, name: str) -> Any:
        if name not in OPERATIONS:
            msg = f"{self.__class__.__name__!r} object has no attribute {name!r}"
            raise AttributeError(msg)
        return async_to_sync(getattr(self.client, name))

    def __dir__(self) -> list[str]:
        return sorted(set(super().__dir__()) | set(OPERATIONS))
