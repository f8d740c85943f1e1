"""
The Root DSE: what a directory server says about itself.
"""

from collections.abc import Sequence
from typing import Any

from .entries import as_list
from .typing import Entry


class RootDSE:
    """
    Decoded Root DSE attributes with a few conveniences.

    Args:
        attributes: the decoded Root DSE entry

    """

    def __init__(self, attributes: Entry) -> None:
        self.attributes = dict(attributes)

    def __getitem__(self, key: str) -> Any:
        return self.attributes[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def __repr__(self) -> str:
        return f"<RootDSE {self.flavor}: {self.default_naming_context}>"

    @property
    def default_naming_context(self) -> str | None:
        return self.attributes.get("defaultNamingContext")

    @property
    def naming_contexts(self) -> list[str]:
        return as_list(self.attributes.get("namingContexts"))

    @property
    def supported_controls(self) -> Sequence[str]:
        return as_list(self.attributes.get("supportedControl"))

    def supports_control(self, oid: str) -> bool:
        return oid in self.supported_controls

    @property
    def deleted_objects_dn(self) -> str | None:
        """
        The ``CN=Deleted Objects`` container of the default naming context,
        or ``None`` if the server did not say what that context is.
        """
        context = self.default_naming_context
        if not context:
            return None
        return f"CN=Deleted Objects,{context}"

    @property
    def flavor(self) -> str:
        """
        Detect the server flavor.

        Priority:

        1. Active Directory (``forestFunctionality`` is definitive)
        2. 389 Directory Server and its descendants, by vendor name
        3. OpenLDAP, by vendor name
        4. ``unknown``
        """
        if "forestFunctionality" in self.attributes:
            return "active_directory"
        vendor = as_list(self.attributes.get("vendorName"))
        if not vendor:
            return "unknown"
        vendor_name = str(vendor[0])
        if any(
            name in vendor_name
            for name in ("Fedora Project", "Red Hat", "Oracle", "ForgeRock", "389")
        ):
            return "389"
        if "OpenLDAP Foundation" in vendor_name:
            return "openldap"
        return "unknown"
