"""
LDAP filter construction for Active Directory lookups.

Constant filters are composed with :py:class:`ldap_filter.Filter`.  Filters
that embed caller-supplied identifiers are assembled as strings so that the
identifier reaches the server exactly as given (apart from the narrow DN
escaping done by :py:func:`escape_dn`).
"""

import re
from collections.abc import Iterable, Sequence

from ldap_filter import Filter

MAX_LOG_OUTPUT = 256

#: One or more ``key=value`` segments joined by commas; commas inside a value
#: must be escaped.
DN_RE = re.compile(
    r"^[^=,()\s][^=,()]*=(?:\\.|[^,\\])+(?:,[^=,()]+=(?:\\.|[^,\\])+)*$"
)

MEMBERSHIP_KINDS = ("all", "user", "group")

USER_CATEGORY = Filter.attribute("objectCategory").equal_to("User")
GROUP_CATEGORY = Filter.attribute("objectCategory").equal_to("Group")

USER_OBJECTS = Filter.AND(
    [
        Filter.OR(
            [
                Filter.attribute("objectClass").equal_to("user"),
                Filter.attribute("objectClass").equal_to("person"),
            ]
        ),
        Filter.NOT(Filter.attribute("objectClass").equal_to("computer")),
        Filter.NOT(Filter.attribute("objectClass").equal_to("group")),
    ]
)

GROUP_OBJECTS = Filter.AND(
    [
        Filter.attribute("objectClass").equal_to("group"),
        Filter.NOT(Filter.attribute("objectClass").equal_to("computer")),
        Filter.NOT(Filter.attribute("objectClass").equal_to("user")),
        Filter.NOT(Filter.attribute("objectClass").equal_to("person")),
    ]
)

USER_OR_GROUP = Filter.OR([USER_CATEGORY, GROUP_CATEGORY])


def is_distinguished_name(value: str | None) -> bool:
    """
    Return ``True`` if the whole of ``value`` looks like a distinguished name,
    e.g. ``cn=foo,dc=bar,dc=com``.
    """
    if not value or not isinstance(value, str):
        return False
    return DN_RE.match(value) is not None


def escape_dn(dn: str) -> str:
    """
    Escape ``dn`` for use as an assertion value in a filter.

    Only double quotes and already escaped commas are touched; this is not a
    full RFC 4514 escape.  Every escaped comma is doubled, not just the first,
    so a DN with several of them (``CN=Smith\\, John,OU=A\\, B``) is escaped
    consistently.

    Args:
        dn: the distinguished name to escape

    Returns:
        The escaped DN.

    """
    if not dn:
        return dn
    return dn.replace('"', '\\"').replace("\\,", "\\\\,")


def compound_filter(ldap_filter: str | None) -> str:
    """
    Wrap ``ldap_filter`` in parentheses unless it already starts with ``(``
    and ends with ``)``.
    """
    if not ldap_filter:
        return ""
    if ldap_filter.startswith("(") and ldap_filter.endswith(")"):
        return ldap_filter
    return f"({ldap_filter})"


def _is_raw_filter(value: str) -> bool:
    return value.startswith("(") and value.endswith(")")


def _single_user_filter(identifier: str) -> str:
    category = USER_CATEGORY.to_string()
    if is_distinguished_name(identifier):
        return f"(&{category}(distinguishedName={escape_dn(identifier)}))"
    return (
        f"(&{category}(|(sAMAccountName={identifier})"
        f"(userPrincipalName={identifier})))"
    )


def build_user_filter(identifier: str | Sequence[str] | None = None) -> str:
    """
    Build the filter that finds users by identifier.

    ``identifier`` may be empty (all users), a distinguished name, a
    ``sAMAccountName`` or ``userPrincipalName``, a list of any of those, or a
    complete filter in parentheses which is restricted to user objects.

    Args:
        identifier: what to look for

    Returns:
        An LDAP filter string.

    """
    if not identifier:
        return USER_CATEGORY.to_string()
    if not isinstance(identifier, str):
        return "(|" + "".join(_single_user_filter(i) for i in identifier) + ")"
    if _is_raw_filter(identifier) and not is_distinguished_name(identifier):
        if "objectCategory=User" in identifier:
            return identifier
        return f"(&{USER_CATEGORY.to_string()}{identifier})"
    return _single_user_filter(identifier)


def build_group_filter(name: str | None = None) -> str:
    """
    Build the filter that finds a group by common name or distinguished name.
    """
    category = GROUP_CATEGORY.to_string()
    if not name:
        return category
    if is_distinguished_name(name):
        return f"(&{category}(distinguishedName={escape_dn(name)}))"
    if _is_raw_filter(name):
        if "objectCategory=Group" in name:
            return name
        return f"(&{category}{name})"
    return f"(&{category}(cn={name}))"


def membership_filter(dn: str) -> str:
    """Filter matching the entries that list ``dn`` as a ``member``."""
    return f"(member={escape_dn(dn)})"


def members_filter(dns: Iterable[str]) -> str:
    """
    Filter matching the users and groups whose DN is one of ``dns``.
    """
    clauses = "".join(f"(distinguishedName={escape_dn(dn)})" for dn in dns)
    return f"(&{USER_OR_GROUP.to_string()}(|{clauses}))"


def _with_extra(base: Filter, extra: str | None) -> str:
    if not extra:
        return base.to_string()
    return f"(&{base.to_string()}{compound_filter(extra)})"


def user_objects_filter(extra: str | None = None) -> str:
    """All user objects, optionally narrowed by ``extra``."""
    return _with_extra(USER_OBJECTS, extra)


def group_objects_filter(extra: str | None = None) -> str:
    """All group objects, optionally narrowed by ``extra``."""
    return _with_extra(GROUP_OBJECTS, extra)


def should_include_all_attributes(attributes: Sequence[str] | None) -> bool:
    """
    ``True`` if ``attributes`` was given and asks for everything: it is empty
    or contains ``*``.
    """
    if attributes is None:
        return False
    return len(attributes) == 0 or "*" in attributes


def join_attributes(*attribute_lists: Sequence[str] | None) -> list[str]:
    """
    Merge attribute lists, preserving first-seen order.

    If any list is empty or contains ``*`` the result is ``[]``, which
    python-ldap treats as "all attributes".
    """
    joined: list[str] = []
    for attributes in attribute_lists:
        attributes = list(attributes or [])
        if should_include_all_attributes(attributes):
            return []
        for attribute in attributes:
            if attribute not in joined:
                joined.append(attribute)
    return joined


def include_membership_for(include_membership: Iterable[str] | None, kind: str) -> bool:
    """
    Return ``True`` if ``include_membership`` asks for the group membership of
    entries of ``kind`` (``user`` or ``group``).  ``all`` matches every kind.
    """
    kind = (kind or "").lower()
    return any(i.lower() in ("all", kind) for i in include_membership or ())


def required_attributes(
    attributes: Sequence[str] | None,
    include_membership: Iterable[str] | None = None,
) -> list[str]:
    """
    Attributes we need from the server no matter what the caller asked for,
    so that membership can be resolved afterwards.
    """
    if should_include_all_attributes(attributes):
        return []
    required = ["dn", "cn"]
    if include_membership_for(include_membership, "user"):
        required.append("member")
    return required


def truncate_log_output(output: object, max_length: int = MAX_LOG_OUTPUT) -> str:
    """
    Shorten ``output`` to about ``max_length`` characters for log messages,
    keeping its head and tail.
    """
    if not output:
        return "" if output is None else str(output)
    text = str(output)
    if len(text) < max_length + 3:
        return text
    prefix = (max_length - 3 + 1) // 2
    suffix = (max_length - 3) // 2
    return text[:prefix] + "..." + text[len(text) - suffix :]
