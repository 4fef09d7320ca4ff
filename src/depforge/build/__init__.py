"""Isolated PEP 517 builds."""
from .backend import BuildSystem, load_build_system
from .dispatcher import BuildDispatcher

__all__ = ["BuildDispatcher", "BuildSystem", "load_build_system"]
