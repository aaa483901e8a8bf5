"""Detect Docker Compose port and network conflicts and resolve them by writing an override file."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "detector",
    "errors",
    "logger",
    "models",
    "network",
    "override",
    "parser",
    "scanner",
    "unified",
]