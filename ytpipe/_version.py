"""
Defines the service's version string.

This is the single source of truth for the version number. It is reported by
the health endpoint and used for packaging.
"""

__version__ = "0.4.0"
