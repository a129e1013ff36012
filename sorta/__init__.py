"""
Sorta - file organization with a durable, undoable audit trail.
"""

from .version import __version__

__all__ = ["__version__"]
