"""
Type aliases for the data flowing between python-ldap and adsearch.
"""

from collections.abc import Callable
from typing import Any

#: Attributes exactly as python-ldap returns them
RawAttributes = dict[str, list[bytes]]
#: A decoded entry: attribute name to a scalar or a list of values
Entry = dict[str, Any]
#: Hook applied to every decoded entry; returning ``None`` drops the entry
EntryParser = Callable[[Entry, RawAttributes], "Entry | None"]
