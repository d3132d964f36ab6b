"""Widget integration data cache for the signage platform."""

__version__ = "0.1.0"
