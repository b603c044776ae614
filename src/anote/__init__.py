"""
anote - a personal folder/note store backed by a single SQLite file.

The store is shared by one long-lived in-process connection (the interactive
application) and many short-lived bridge processes that each perform one
operation against the same database file and exit.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("anote-store")
except PackageNotFoundError:
    __version__ = "0.4.0"
