"""Configuration for the caregate client security layer."""
from .settings import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
