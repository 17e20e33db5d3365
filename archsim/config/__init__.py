"""
Configuration Package

Environment settings for simulation runs.
"""

from .settings import Settings

__all__ = [
    "Settings",
]
