"""Clone a two-partition Linux boot device onto a destination of any size."""

from .__version__ import __version__


__all__ = ["__version__"]
