"""Core infrastructure layer.

Exports configuration settings to simplify import paths inside tests
(e.g. `from receiptscan.core import settings`).
"""

from .config import settings  # noqa: F401
