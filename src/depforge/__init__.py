"""depforge: dependency resolution and installation for Python packages."""

__version__ = "0.3.0"
