"""finchcast: background generation queue for podcast episodes."""

__version__ = "0.1.0"
