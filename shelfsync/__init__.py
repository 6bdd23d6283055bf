"""shelfsync: keeps a local book catalog in sync with a remote shop."""

__version__ = "0.1.0"
