"""FieldQueue CLI"""

from fieldqueue import __version__

__all__ = ["__version__"]
