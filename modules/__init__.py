"""Helper modules for the StitchOrderWeb application."""

__all__ = [
    "pricing",
]
