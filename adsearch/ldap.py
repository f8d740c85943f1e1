# Every module in this package talks to python-ldap through this wrapper so
# that python-ldap-faker can patch ``adsearch.ldap`` in the tests.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
