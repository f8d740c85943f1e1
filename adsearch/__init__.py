from .client import DirectoryClient, FindResult  # noqa: F401
from .conf import DirectoryConfig  # noqa: F401
from .options import SearchOptions  # noqa: F401

__version__ = "1.0.0"
