"""
Per-client configuration.

Each :py:class:`adsearch.client.DirectoryClient` owns one immutable
:py:class:`DirectoryConfig`.  There is no process-wide mutable default: to
change a setting, build a new configuration with :py:meth:`DirectoryConfig.with_`.

In a Django project the configuration usually lives in ``settings.py``::

    LDAP_SERVERS = {
        "default": {
            "url": "ldaps://dc01.example.com",
            "basedn": "dc=example,dc=com",
            "user": "svc-adsearch@example.com",
            "password": "secret",
            "basedns": {"user": "ou=People,dc=example,dc=com"},
            "referrals": {"enabled": False},
            "max_searches": 20,
        }
    }

and is loaded with ``DirectoryConfig.from_settings("default")``.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .typing import EntryParser

DEFAULT_REFERRAL_EXCLUDES: tuple[str, ...] = (
    r"ldaps?://ForestDnsZones\..*/.*",
    r"ldaps?://DomainDnsZones\..*/.*",
    r"ldaps?://.*/CN=Configuration,.*",
)

DEFAULT_USER_ATTRIBUTES: tuple[str, ...] = (
    "dn",
    "userPrincipalName",
    "sAMAccountName",
    "mail",
    "lockoutTime",
    "whenCreated",
    "pwdLastSet",
    "userAccountControl",
    "employeeID",
    "sn",
    "givenName",
    "initials",
    "cn",
    "displayName",
    "comment",
    "description",
)

DEFAULT_GROUP_ATTRIBUTES: tuple[str, ...] = ("dn", "cn", "description")

DEFAULT_DELETED_ATTRIBUTES: tuple[str, ...] = (
    "dn",
    "cn",
    "name",
    "distinguishedName",
    "isDeleted",
    "isRecycled",
    "lastKnownParent",
    "msDS-LastKnownRDN",
    "attributeID",
    "attributeSyntax",
    "dnReferenceUpdate",
    "dNSHostName",
    "flatName",
    "governsID",
    "groupType",
    "instanceType",
    "lDAPDisplayName",
    "legacyExchangeDN",
    "mS-DS-CreatorSID",
    "mSMQOwnerID",
    "nCName",
    "objectClass",
    "objectGUID",
    "objectSid",
    "oMSyntax",
    "proxiedObjectName",
    "replPropertyMetaData",
    "sAMAccountName",
    "securityIdentifier",
    "sIDHistory",
    "subClassOf",
    "systemFlags",
    "trustPartner",
    "trustDirection",
    "trustType",
    "trustAttributes",
    "userAccountControl",
    "uSNChanged",
    "uSNCreated",
    "whenCreated",
    "msDS-AdditionalSamAccountName",
    "msDS-Auxiliary-Classes",
    "msDS-Entry-Time-To-Die",
    "msDS-IntId",
    "msSFU30NisDomain",
    "nTSecurityDescriptor",
    "uid",
)

TLS_VERIFY_CHOICES = ("never", "always")


@dataclass(frozen=True)
class ReferralPolicy:
    """
    Which referrals a search session may chase.

    With ``enabled`` false every referral is rejected.  Otherwise a referral
    is rejected if any of the ``exclude`` regular expressions matches the
    start of its URI, ignoring case.
    """

    enabled: bool = False
    exclude: tuple[str, ...] = DEFAULT_REFERRAL_EXCLUDES

    def is_allowed(self, uri: str) -> bool:
        if not self.enabled or not uri:
            return False
        return not any(re.match(pattern, uri, re.IGNORECASE) for pattern in self.exclude)


@dataclass(frozen=True)
class DefaultAttributes:
    """Attributes returned when a caller does not ask for specific ones."""

    user: tuple[str, ...] = DEFAULT_USER_ATTRIBUTES
    group: tuple[str, ...] = DEFAULT_GROUP_ATTRIBUTES
    deleted: tuple[str, ...] = DEFAULT_DELETED_ATTRIBUTES


@dataclass(frozen=True)
class BaseDNs:
    """Optional narrower search bases for user and group lookups."""

    user: str | None = None
    group: str | None = None
    default: str | None = None


@dataclass(frozen=True)
class DirectoryConfig:
    """
    Everything a :py:class:`~adsearch.client.DirectoryClient` needs to talk
    to one directory.

    ``max_searches`` bounds the number of physical searches in flight on
    ``pool_key`` across the whole process; ``max_chunk_searches`` does the
    same for the member chunks of
    :py:meth:`~adsearch.client.DirectoryClient.get_users_for_group` on
    ``chunk_pool_key``.
    """

    url: str
    basedn: str = ""
    user: str | None = None
    password: str | None = None
    basedns: BaseDNs = field(default_factory=BaseDNs)
    referrals: ReferralPolicy = field(default_factory=ReferralPolicy)
    attributes: DefaultAttributes = field(default_factory=DefaultAttributes)
    use_starttls: bool = False
    tls_verify: str = "never"
    tls_ca_certfile: str | None = None
    tls_certfile: str | None = None
    tls_keyfile: str | None = None
    #: Network timeout in seconds for connecting to the server
    timeout: float = 15.0
    page_size: int = 1000
    chunk_size: int = 1000
    max_searches: int = 20
    max_chunk_searches: int = 20
    #: How many times to retry opening a connection after a transport failure
    search_retries: int = 1
    #: Upper bound in seconds for a single page of results; ``None`` to wait forever
    search_timeout: float | None = None
    pool_key: str = "adsearch.searches"
    chunk_pool_key: str = "adsearch.membership"
    poll_interval: float = 0.01
    entry_parser: EntryParser | None = None

    def __post_init__(self) -> None:
        if not self.url:
            msg = "DirectoryConfig requires a url"
            raise ImproperlyConfigured(msg)
        if self.tls_verify not in TLS_VERIFY_CHOICES:
            msg = f"Invalid tls_verify value: {self.tls_verify}"
            raise ValueError(msg)
        if self.page_size < 1 or self.chunk_size < 1:
            msg = "page_size and chunk_size must be positive"
            raise ImproperlyConfigured(msg)

    def basedn_for(self, kind: str = "default") -> str:
        """
        Return the search base for ``kind`` (``user``, ``group`` or
        ``default``), falling back to ``basedns.default`` and then ``basedn``.
        """
        specific = getattr(self.basedns, kind, None) if kind != "default" else None
        return specific or self.basedns.default or self.basedn

    def with_(self, **changes: Any) -> "DirectoryConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_settings(cls, name: str = "default") -> "DirectoryConfig":
        """
        Build a configuration from ``settings.LDAP_SERVERS[name]``.

        Args:
            name: the key of the server in ``settings.LDAP_SERVERS``

        Raises:
            ImproperlyConfigured: ``LDAP_SERVERS`` is missing, has no entry
                for ``name``, the entry has no ``url``, or it has unknown keys.

        Returns:
            The loaded configuration.

        """
        servers = getattr(settings, "LDAP_SERVERS", None)
        if not servers:
            msg = "settings.LDAP_SERVERS is not defined"
            raise ImproperlyConfigured(msg)
        try:
            server = dict(servers[name])
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no server named '{name}'"
            raise ImproperlyConfigured(msg) from e
        if not server.get("url"):
            msg = f"settings.LDAP_SERVERS['{name}'] has no 'url'"
            raise ImproperlyConfigured(msg)
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(server) - known
        if unknown:
            msg = (
                f"settings.LDAP_SERVERS['{name}'] has unknown keys: "
                f"{', '.join(sorted(unknown))}"
            )
            raise ImproperlyConfigured(msg)
        try:
            if "basedns" in server:
                server["basedns"] = BaseDNs(**server["basedns"])
            if "referrals" in server:
                referrals = dict(server["referrals"])
                if "exclude" in referrals:
                    referrals["exclude"] = tuple(referrals["exclude"])
                server["referrals"] = ReferralPolicy(**referrals)
            if "attributes" in server:
                server["attributes"] = DefaultAttributes(
                    **{key: tuple(value) for key, value in server["attributes"].items()}
                )
            return cls(**server)
        except (TypeError, ValueError) as e:
            msg = f"settings.LDAP_SERVERS['{name}'] is invalid: {e}"
            raise ImproperlyConfigured(msg) from e
