"""Solo Tutor runtime core package."""

__all__ = [
    "runtime",
]
