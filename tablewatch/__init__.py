"""tablewatch: watch relational tables and stream their changes to subscribers."""

from importlib import metadata

from tablewatch.app import TableWatch

try:
    __version__ = metadata.version("tablewatch")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["TableWatch", "__version__"]
