# pwrd/core/__init__.py
"""Core computational modules for pwrd."""
from . import inference, linalg, sandwich

__all__ = ["inference", "linalg", "sandwich"]
